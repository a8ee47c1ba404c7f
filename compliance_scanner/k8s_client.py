"""
Thin wrapper around the Kubernetes API.

Every call carries an explicit request timeout so a slow API server or a
stuck exec channel cannot stall a scan cycle.
"""

import logging
import threading
import time
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from kubernetes import client, config
from kubernetes.client.rest import ApiException
from kubernetes.config.config_exception import ConfigException
from kubernetes.stream import stream

logger = logging.getLogger(__name__)

# Upper bound for a single websocket poll while waiting on exec output
EXEC_POLL_INTERVAL = 1.0


class ExecChannelError(Exception):
    """The exec channel could not be opened or broke before an exit status arrived"""


class ExecTimeoutError(ExecChannelError):
    """The command did not finish before its deadline"""


@dataclass(frozen=True)
class ExecResult:
    returncode: int
    stdout: str
    stderr: str

    @property
    def success(self) -> bool:
        return self.returncode == 0


def load_cluster_config():
    """Prefer the in-cluster service account, fall back to ~/.kube/config"""
    try:
        config.load_incluster_config()
        logger.info("Loaded in-cluster Kubernetes configuration")
    except ConfigException:
        config.load_kube_config()
        logger.info("Loaded local kube config")


def _close_late_channel(future):
    """Close an exec channel that finished opening after its caller gave up"""
    if future.cancelled() or future.exception() is not None:
        return
    logger.debug("Closing exec channel that opened after its deadline")
    future.result().close()


class KubernetesClient:
    """The handful of API calls the scanner makes"""

    def __init__(self, core_v1=None, apps_v1=None, request_timeout: float = 10.0, max_channels: int = 4):
        if core_v1 is None or apps_v1 is None:
            load_cluster_config()
        self.v1 = core_v1 or client.CoreV1Api()
        self.apps_v1 = apps_v1 or client.AppsV1Api()
        self.request_timeout = request_timeout
        # stream() connects the exec websocket without a timeout, so channels are
        # opened on daemon threads, at most max_channels at once, and abandoned
        # when their deadline passes
        self._channel_slots = threading.BoundedSemaphore(max_channels)

    def list_namespaces(self) -> List[Any]:
        return self.v1.list_namespace(_request_timeout=self.request_timeout).items

    def list_pods(self, namespace: str) -> List[Any]:
        return self.v1.list_namespaced_pod(
            namespace=namespace, _request_timeout=self.request_timeout
        ).items

    def read_replica_set(self, namespace: str, name: str):
        return self.apps_v1.read_namespaced_replica_set(
            name=name, namespace=namespace, _request_timeout=self.request_timeout
        )

    def read_deployment(self, namespace: str, name: str):
        return self.apps_v1.read_namespaced_deployment(
            name=name, namespace=namespace, _request_timeout=self.request_timeout
        )

    def patch_deployment(self, namespace: str, name: str, body: Dict[str, Any], dry_run: bool = False):
        kwargs = {"_request_timeout": self.request_timeout}
        if dry_run:
            kwargs["dry_run"] = "All"
        return self.apps_v1.patch_namespaced_deployment(
            name=name, namespace=namespace, body=body, **kwargs
        )

    def _open_exec_channel(self, future, namespace, pod_name, container, command, timeout):
        try:
            resp = stream(
                self.v1.connect_get_namespaced_pod_exec,
                name=pod_name,
                namespace=namespace,
                container=container,
                command=command,
                stderr=True,
                stdin=False,
                stdout=True,
                tty=False,
                _preload_content=False,
                _request_timeout=timeout,
            )
        except Exception as e:
            future.set_exception(e)
        else:
            future.set_result(resp)
        finally:
            self._channel_slots.release()

    def exec_command(
        self,
        namespace: str,
        pod_name: str,
        container: str,
        command: List[str],
        timeout: Optional[float] = None,
    ) -> ExecResult:
        """Run a command in a container and wait for its exit status"""
        timeout = timeout or self.request_timeout
        target = f"{namespace}/{pod_name}[{container}]"
        deadline = time.monotonic() + timeout

        if not self._channel_slots.acquire(timeout=timeout):
            raise ExecTimeoutError(f"no exec channel slot free for {target} within {timeout}s")
        future = Future()
        threading.Thread(
            target=self._open_exec_channel,
            args=(future, namespace, pod_name, container, command, timeout),
            name=f"exec-open-{pod_name}",
            daemon=True,
        ).start()
        try:
            resp = future.result(timeout=max(deadline - time.monotonic(), 0))
        except FutureTimeoutError:
            future.add_done_callback(_close_late_channel)
            raise ExecTimeoutError(f"opening exec channel to {target} timed out after {timeout}s")
        except ApiException as e:
            raise ExecChannelError(f"exec into {target} failed: {e.status} {e.reason}")
        except Exception as e:
            raise ExecChannelError(f"exec into {target} failed: {e}")

        stdout, stderr = [], []
        try:
            # Bounds reads of partial frames once select() reports data
            resp.sock.settimeout(timeout)
            while resp.is_open():
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise ExecTimeoutError(f"exec into {target} timed out after {timeout}s")
                resp.update(timeout=min(EXEC_POLL_INTERVAL, remaining))
                if resp.peek_stdout():
                    stdout.append(resp.read_stdout())
                if resp.peek_stderr():
                    stderr.append(resp.read_stderr())

            # Output can arrive together with the close frame
            if resp.peek_stdout():
                stdout.append(resp.read_stdout())
            if resp.peek_stderr():
                stderr.append(resp.read_stderr())
            returncode = resp.returncode
        except ExecChannelError:
            raise
        except Exception as e:
            raise ExecChannelError(f"exec stream for {target} broke: {e}")
        finally:
            resp.close()

        if returncode is None:
            raise ExecChannelError(f"exec into {target} ended without an exit status")
        return ExecResult(returncode=returncode, stdout="".join(stdout), stderr="".join(stderr))
