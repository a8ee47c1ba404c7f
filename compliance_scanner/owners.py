"""Walk pod -> ReplicaSet -> Deployment owner references."""

from kubernetes.client.rest import ApiException
from urllib3.exceptions import HTTPError

from .filters import replica_set_owner

DEPLOYMENT_KIND = "Deployment"


class OwnerResolutionError(Exception):
    """The owning Deployment of a pod could not be determined"""


class NoControllerError(OwnerResolutionError):
    """The owner chain stops before reaching a Deployment"""


def find_parent_deployment(k8s, pod):
    """
    Return the Deployment that owns ``pod`` through its ReplicaSet.

    Both reads go to the API server on every call; ownership can change
    between cycles.
    """
    namespace = pod.metadata.namespace
    rs_name = replica_set_owner(pod)
    if rs_name is None:
        raise NoControllerError(f"Pod {namespace}/{pod.metadata.name} is not managed by a ReplicaSet")

    try:
        rs = k8s.read_replica_set(namespace, rs_name)
    except ApiException as e:
        raise OwnerResolutionError(f"Cannot read ReplicaSet {namespace}/{rs_name}: {e.status} {e.reason}")
    except (HTTPError, OSError) as e:
        raise OwnerResolutionError(f"Cannot read ReplicaSet {namespace}/{rs_name}: {e!r}")

    deployment_name = None
    for ref in rs.metadata.owner_references or []:
        if ref.kind == DEPLOYMENT_KIND:
            deployment_name = ref.name
            break
    if deployment_name is None:
        raise NoControllerError(f"ReplicaSet {namespace}/{rs_name} is not owned by a Deployment")

    try:
        return k8s.read_deployment(namespace, deployment_name)
    except ApiException as e:
        raise OwnerResolutionError(
            f"Cannot read Deployment {namespace}/{deployment_name}: {e.status} {e.reason}"
        )
    except (HTTPError, OSError) as e:
        raise OwnerResolutionError(f"Cannot read Deployment {namespace}/{deployment_name}: {e!r}")
