import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from kubernetes.client.rest import ApiException
from urllib3.exceptions import HTTPError

from .config import ScannerConfig
from .owners import NoControllerError, OwnerResolutionError, find_parent_deployment

class RemediationStatus(Enum):
    SCALED = "scaled"
    ALREADY_SCALED = "already_scaled"
    UNRESOLVED = "unresolved"
    FAILED = "failed"


@dataclass(frozen=True)
class RemediationResult:
    status: RemediationStatus
    namespace: str
    deployment: Optional[str] = None
    detail: str = ""

    @property
    def ok(self) -> bool:
        return self.status in (RemediationStatus.SCALED, RemediationStatus.ALREADY_SCALED)


def remediation_timestamp(now: Optional[datetime] = None) -> str:
    """UTC time as 20240131T235959Z, safe for label and annotation values"""
    now = now or datetime.now(timezone.utc)
    stamp = now.astimezone(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
    return stamp.replace(":", "-").replace("+", "-")


class RemediationEngine:
    """Scales the Deployment behind a non-compliant pod to zero"""

    def __init__(self, k8s, cfg: ScannerConfig):
        self.k8s = k8s
        self.cfg = cfg
        self.logger = logging.getLogger(__name__)

    def build_patch(self, replicas: int = 0, now: Optional[datetime] = None) -> dict:
        return {
            "metadata": {
                "annotations": {
                    self.cfg.status_annotation: self.cfg.status_message,
                    self.cfg.timestamp_annotation: remediation_timestamp(now),
                }
            },
            "spec": {"replicas": replicas},
        }

    def remediate_pod(self, pod) -> RemediationResult:
        namespace = pod.metadata.namespace
        try:
            deployment = find_parent_deployment(self.k8s, pod)
        except NoControllerError as e:
            self.logger.info(f"Not remediating {namespace}/{pod.metadata.name}: {e}")
            return RemediationResult(RemediationStatus.UNRESOLVED, namespace, detail=str(e))
        except OwnerResolutionError as e:
            self.logger.error(f"Owner lookup failed for {namespace}/{pod.metadata.name}: {e}")
            return RemediationResult(RemediationStatus.UNRESOLVED, namespace, detail=str(e))
        return self.scale_to_zero(deployment)

    def scale_to_zero(self, deployment) -> RemediationResult:
        namespace = deployment.metadata.namespace
        name = deployment.metadata.name

        # None means the API default of 1
        if deployment.spec is not None and deployment.spec.replicas == 0:
            self.logger.info(f"Deployment {namespace}/{name} is already scaled to zero")
            return RemediationResult(RemediationStatus.ALREADY_SCALED, namespace, name)

        mode = " (dry run)" if self.cfg.dry_run else ""
        self.logger.warning(f"Scaling Deployment {namespace}/{name} to zero and annotating it{mode}")
        try:
            self.k8s.patch_deployment(namespace, name, self.build_patch(), dry_run=self.cfg.dry_run)
        except ApiException as e:
            self.logger.error(f"Error scaling deployment {namespace}/{name}: {e.status} {e.reason}")
            return RemediationResult(RemediationStatus.FAILED, namespace, name, f"{e.status} {e.reason}")
        except (HTTPError, OSError) as e:
            self.logger.error(f"Error scaling deployment {namespace}/{name}: {e!r}")
            return RemediationResult(RemediationStatus.FAILED, namespace, name, repr(e))

        return RemediationResult(RemediationStatus.SCALED, namespace, name)
