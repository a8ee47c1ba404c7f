import unittest

from urllib3.exceptions import ProtocolError, ReadTimeoutError

from compliance_scanner.owners import (
    NoControllerError,
    OwnerResolutionError,
    find_parent_deployment,
)

from tests.fakes import FakeCluster, make_pod


class OwnerChainTests(unittest.TestCase):
    def setUp(self) -> None:
        self.cluster = FakeCluster()
        self.rs = self.cluster.add_workload("web")

    def test_resolves_pod_to_deployment(self) -> None:
        pod = make_pod("web-1", owner_name=self.rs)
        deployment = find_parent_deployment(self.cluster, pod)
        self.assertIs(deployment, self.cluster.deployments[("billing_test", "web")])
        self.assertEqual(
            self.cluster.reads,
            [("ReplicaSet", "billing_test", self.rs), ("Deployment", "billing_test", "web")],
        )

    def test_every_call_reads_the_api(self) -> None:
        pod = make_pod("web-1", owner_name=self.rs)
        find_parent_deployment(self.cluster, pod)
        find_parent_deployment(self.cluster, pod)
        self.assertEqual(len(self.cluster.reads), 4)

    def test_missing_replica_set_is_a_resolution_failure(self) -> None:
        pod = make_pod("web-1", owner_name="web-deleted")
        with self.assertRaises(OwnerResolutionError) as ctx:
            find_parent_deployment(self.cluster, pod)
        self.assertNotIsInstance(ctx.exception, NoControllerError)
        self.assertEqual(self.cluster.reads, [("ReplicaSet", "billing_test", "web-deleted")])

    def test_missing_deployment_is_a_resolution_failure(self) -> None:
        del self.cluster.deployments[("billing_test", "web")]
        with self.assertRaises(OwnerResolutionError):
            find_parent_deployment(self.cluster, make_pod("web-1", owner_name=self.rs))

    def test_transport_error_is_a_resolution_failure(self) -> None:
        self.cluster.read_error = ReadTimeoutError(None, None, "Read timed out.")
        with self.assertRaises(OwnerResolutionError) as ctx:
            find_parent_deployment(self.cluster, make_pod("web-1", owner_name=self.rs))
        self.assertNotIsInstance(ctx.exception, NoControllerError)
        self.assertIn("Read timed out", str(ctx.exception))

    def test_dropped_connection_is_a_resolution_failure(self) -> None:
        self.cluster.read_error = ProtocolError("Connection aborted.", ConnectionResetError(104, "Connection reset by peer"))
        with self.assertRaises(OwnerResolutionError):
            find_parent_deployment(self.cluster, make_pod("web-1", owner_name=self.rs))

    def test_replica_set_without_deployment(self) -> None:
        rs = self.cluster.add_workload("orphan", rs="orphan-rs")
        self.cluster.replica_sets[("billing_test", rs)].metadata.owner_references = None
        with self.assertRaises(NoControllerError):
            find_parent_deployment(self.cluster, make_pod("orphan-1", owner_name=rs))

    def test_pod_without_replica_set(self) -> None:
        with self.assertRaises(NoControllerError):
            find_parent_deployment(self.cluster, make_pod("debug", owner_kind=None))
        self.assertEqual(self.cluster.reads, [])
