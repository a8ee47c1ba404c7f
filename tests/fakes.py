"""In-memory cluster used by the tests in place of KubernetesClient."""

import shlex
import threading
from datetime import datetime, timezone

from kubernetes import client
from kubernetes.client.rest import ApiException

from compliance_scanner.config import ScannerConfig
from compliance_scanner.k8s_client import ExecResult


def make_config(**overrides) -> ScannerConfig:
    values = {"namespace_pattern": "_test"}
    values.update(overrides)
    return ScannerConfig(**values)


def owner_ref(kind: str, name: str) -> client.V1OwnerReference:
    return client.V1OwnerReference(api_version="apps/v1", kind=kind, name=name, uid=f"uid-{name}")


def make_pod(
    name,
    namespace="billing_test",
    containers=("app",),
    labels=None,
    annotations=None,
    owner_kind="ReplicaSet",
    owner_name="web-5d8f7",
    deleting=False,
) -> client.V1Pod:
    owners = [owner_ref(owner_kind, owner_name)] if owner_kind else None
    return client.V1Pod(
        metadata=client.V1ObjectMeta(
            name=name,
            namespace=namespace,
            labels=labels,
            annotations=annotations,
            owner_references=owners,
            deletion_timestamp=datetime(2024, 1, 1, tzinfo=timezone.utc) if deleting else None,
        ),
        spec=client.V1PodSpec(containers=[client.V1Container(name=c) for c in containers]),
    )


def make_replica_set(name, namespace="billing_test", deployment="web") -> client.V1ReplicaSet:
    owners = [owner_ref("Deployment", deployment)] if deployment else None
    return client.V1ReplicaSet(
        metadata=client.V1ObjectMeta(name=name, namespace=namespace, owner_references=owners),
    )


def make_deployment(name, namespace="billing_test", replicas=2) -> client.V1Deployment:
    return client.V1Deployment(
        metadata=client.V1ObjectMeta(name=name, namespace=namespace, annotations={"team": "billing"}),
        spec=client.V1DeploymentSpec(
            replicas=replicas,
            selector=client.V1LabelSelector(match_labels={"app": name}),
            template=client.V1PodTemplateSpec(),
        ),
    )


class FakeCluster:
    """Implements the KubernetesClient methods against dictionaries"""

    def __init__(self):
        self.namespaces = []
        self.pods = {}
        self.replica_sets = {}
        self.deployments = {}
        self.processes = {}
        self.exec_errors = {}
        self.failing_namespaces = set()
        self.namespace_error = None
        self.patch_error = None
        self.read_error = None
        self.patches = []
        self.exec_calls = []
        self.reads = []
        self._lock = threading.Lock()

    def add_workload(self, deployment="web", namespace="billing_test", replicas=2, rs=None):
        """Register a Deployment and its ReplicaSet, return the ReplicaSet name"""
        rs = rs or f"{deployment}-5d8f7"
        if namespace not in self.namespaces:
            self.namespaces.append(namespace)
        self.replica_sets[(namespace, rs)] = make_replica_set(rs, namespace, deployment)
        self.deployments[(namespace, deployment)] = make_deployment(deployment, namespace, replicas)
        return rs

    def add_pod(self, pod, processes=()):
        ns = pod.metadata.namespace
        if ns not in self.namespaces:
            self.namespaces.append(ns)
        self.pods.setdefault(ns, []).append(pod)
        for c in pod.spec.containers:
            self.processes[(ns, pod.metadata.name, c.name)] = list(processes)
        return pod

    def list_namespaces(self):
        if self.namespace_error:
            raise self.namespace_error
        return [client.V1Namespace(metadata=client.V1ObjectMeta(name=n)) for n in self.namespaces]

    def list_pods(self, namespace):
        if namespace in self.failing_namespaces:
            raise ApiException(status=500, reason="Internal Server Error")
        return list(self.pods.get(namespace, []))

    def read_replica_set(self, namespace, name):
        with self._lock:
            self.reads.append(("ReplicaSet", namespace, name))
        if self.read_error:
            raise self.read_error
        try:
            return self.replica_sets[(namespace, name)]
        except KeyError:
            raise ApiException(status=404, reason="Not Found")

    def read_deployment(self, namespace, name):
        with self._lock:
            self.reads.append(("Deployment", namespace, name))
        try:
            return self.deployments[(namespace, name)]
        except KeyError:
            raise ApiException(status=404, reason="Not Found")

    def patch_deployment(self, namespace, name, body, dry_run=False):
        with self._lock:
            self.patches.append((namespace, name, body, dry_run))
        if self.patch_error:
            raise self.patch_error
        deployment = self.read_deployment(namespace, name)
        if not dry_run:
            deployment.spec.replicas = body["spec"]["replicas"]
            annotations = dict(deployment.metadata.annotations or {})
            annotations.update(body["metadata"]["annotations"])
            deployment.metadata.annotations = annotations
        return deployment

    def exec_command(self, namespace, pod_name, container, command, timeout=None):
        with self._lock:
            self.exec_calls.append((namespace, pod_name, container, tuple(command)))
        error = self.exec_errors.get((namespace, pod_name))
        if error:
            raise error
        pattern = shlex.split(command[-1])[-1]
        matches = [p for p in self.processes.get((namespace, pod_name, container), []) if pattern in p]
        return ExecResult(returncode=0 if matches else 1, stdout="\n".join(matches), stderr="")
