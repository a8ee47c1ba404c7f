"""
Diagnostic probes run inside a pod's container.

A probe answers "is this thing present in the container" with FOUND,
NOT_FOUND or ERROR. ERROR covers everything that is not an answer: the exec
channel failed, timed out, or the shell could not run the command.
"""

import logging
import shlex
from dataclasses import dataclass
from enum import Enum

from .config import ScannerConfig
from .k8s_client import ExecChannelError, ExecTimeoutError

# sh exit codes for "cannot execute" and "command not found"
_SHELL_FAILURE_CODES = (126, 127)


class ProbeOutcome(Enum):
    FOUND = "found"
    NOT_FOUND = "not_found"
    ERROR = "error"


@dataclass(frozen=True)
class ProbeResult:
    outcome: ProbeOutcome
    stdout: str = ""
    stderr: str = ""
    detail: str = ""

    @property
    def found(self) -> bool:
        return self.outcome == ProbeOutcome.FOUND

    @property
    def failed(self) -> bool:
        return self.outcome == ProbeOutcome.ERROR


class CommandProbe:
    """Look for a pattern in the container's process list"""

    def __init__(self, name: str, pattern: str, timeout: float = 15.0):
        self.name = name
        self.pattern = pattern
        self.timeout = timeout
        self.logger = logging.getLogger(__name__)
        # ps runs on its own so a missing ps exits 127 instead of taking grep's status
        self.command = [
            "sh",
            "-c",
            f"out=$(ps -ef) || exit 127; printf '%s\\n' \"$out\" | grep -v grep | grep -- {shlex.quote(pattern)}",
        ]

    def __repr__(self):
        return f"CommandProbe({self.name!r}, {self.pattern!r})"

    def run(self, k8s, pod, container: str) -> ProbeResult:
        namespace, pod_name = pod.metadata.namespace, pod.metadata.name
        try:
            result = k8s.exec_command(namespace, pod_name, container, self.command, timeout=self.timeout)
        except ExecTimeoutError as e:
            self.logger.error(f"{self.name} probe timed out on {namespace}/{pod_name}[{container}]: {e}")
            return ProbeResult(ProbeOutcome.ERROR, detail=str(e))
        except ExecChannelError as e:
            self.logger.error(f"{self.name} probe could not exec into {namespace}/{pod_name}[{container}]: {e}")
            return ProbeResult(ProbeOutcome.ERROR, detail=str(e))

        if result.success:
            return ProbeResult(ProbeOutcome.FOUND, result.stdout, result.stderr)
        if result.returncode in _SHELL_FAILURE_CODES:
            detail = f"command could not run (exit {result.returncode}): {result.stderr.strip()}"
            self.logger.error(f"{self.name} probe on {namespace}/{pod_name}[{container}]: {detail}")
            return ProbeResult(ProbeOutcome.ERROR, result.stdout, result.stderr, detail)
        return ProbeResult(ProbeOutcome.NOT_FOUND, result.stdout, result.stderr)


def default_probes(cfg: ScannerConfig):
    """The runtime probe and the agent probe, in that order"""
    return (
        CommandProbe("runtime", cfg.runtime_pattern, timeout=cfg.exec_timeout),
        CommandProbe("agent", cfg.agent_pattern, timeout=cfg.exec_timeout),
    )
