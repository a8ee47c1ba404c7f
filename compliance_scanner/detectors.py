import logging
from dataclasses import dataclass
from typing import Optional

from .config import ScannerConfig
from .filters import get_main_container
from .probes import ProbeResult

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ComplianceVerdict:
    has_managed_runtime: bool
    has_required_agent: bool

    @property
    def compliant(self) -> bool:
        return not (self.has_managed_runtime and not self.has_required_agent)


@dataclass(frozen=True)
class Evaluation:
    """Probe results for one pod; verdict is None when either probe errored"""
    container: Optional[str]
    verdict: Optional[ComplianceVerdict]
    runtime: Optional[ProbeResult] = None
    agent: Optional[ProbeResult] = None

    @property
    def indeterminate(self) -> bool:
        return self.verdict is None

    @property
    def non_compliant(self) -> bool:
        return self.verdict is not None and not self.verdict.compliant


def evaluate_pod(k8s, pod, cfg: ScannerConfig, runtime_probe, agent_probe) -> Evaluation:
    """Probe the pod's main container for the runtime and the agent"""
    key = f"{pod.metadata.namespace}/{pod.metadata.name}"
    container = get_main_container(pod, cfg)
    if container is None:
        logger.warning(f"Pod {key} has no containers to probe")
        return Evaluation(container=None, verdict=None)

    runtime = runtime_probe.run(k8s, pod, container)
    agent = agent_probe.run(k8s, pod, container)

    if runtime.failed or agent.failed:
        logger.warning(
            f"Pod {key}[{container}] could not be evaluated "
            f"(runtime: {runtime.outcome.value}, agent: {agent.outcome.value}), will retry next cycle"
        )
        return Evaluation(container, None, runtime, agent)

    verdict = ComplianceVerdict(has_managed_runtime=runtime.found, has_required_agent=agent.found)
    logger.info(
        f"Pod {key}[{container}] runtime: {verdict.has_managed_runtime}, "
        f"agent: {verdict.has_required_agent}"
    )
    return Evaluation(container, verdict, runtime, agent)
