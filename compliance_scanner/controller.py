"""
Scan loop: namespaces -> pods -> probes -> owning Deployments -> scale to zero.

One cycle runs at a time. Work inside a cycle is spread over a bounded number
of concurrent API calls, each with its own deadline, and a failure on one
namespace or pod never stops the rest of the cycle.
"""

import asyncio
import functools
import logging
import os
import sys
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from .config import ConfigError, ScannerConfig, load_config, parse_bool
from .detectors import Evaluation, evaluate_pod
from .filters import select_namespaces, skip_reason
from .k8s_client import KubernetesClient
from .owners import NoControllerError, OwnerResolutionError, find_parent_deployment
from .probes import default_probes
from .remediators import RemediationEngine, RemediationStatus

HISTORY_LIMIT = 1000


@dataclass
class CycleReport:
    """Counters for one scan cycle"""
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    namespaces: int = 0
    pods_scanned: int = 0
    pods_skipped: int = 0
    compliant: int = 0
    non_compliant: int = 0
    indeterminate: int = 0
    remediated: int = 0
    already_scaled: int = 0
    unresolved: int = 0
    failures: int = 0
    aborted: bool = False
    duration: float = 0.0
    remediated_deployments: List[str] = field(default_factory=list)

    def summary(self) -> str:
        if self.aborted:
            return f"aborted after {self.duration:.1f}s"
        return (
            f"{self.namespaces} namespaces, {self.pods_scanned} pods scanned, "
            f"{self.pods_skipped} skipped, {self.non_compliant} non-compliant, "
            f"{self.indeterminate} indeterminate, {self.remediated} remediated, "
            f"{self.already_scaled} already scaled, {self.failures} failures "
            f"in {self.duration:.1f}s"
        )


class ScanOrchestrator:
    """Drives scan cycles against one cluster"""

    def __init__(self, k8s, cfg: ScannerConfig, probes=None, engine: Optional[RemediationEngine] = None):
        self.k8s = k8s
        self.cfg = cfg
        self.runtime_probe, self.agent_probe = probes or default_probes(cfg)
        self.engine = engine or RemediationEngine(k8s, cfg)
        self.history: List[CycleReport] = []
        self._running = False
        self._semaphore: Optional[asyncio.Semaphore] = None
        self.logger = logging.getLogger(__name__)

    async def _call(self, fn, *args, timeout: Optional[float] = None):
        """
        Run a blocking client call in a worker thread, bounded and with a deadline.

        The semaphore slot is released when the thread returns, not when the
        caller stops waiting, so abandoned calls still count against max_workers.
        """
        semaphore = self._semaphore
        await semaphore.acquire()
        task = asyncio.ensure_future(asyncio.to_thread(fn, *args))
        task.add_done_callback(functools.partial(self._release_slot, semaphore))
        return await asyncio.wait_for(asyncio.shield(task), timeout=timeout or self.cfg.call_timeout)

    def _release_slot(self, semaphore: asyncio.Semaphore, task):
        semaphore.release()
        if not task.cancelled() and task.exception() is not None:
            self.logger.debug(f"Worker call finished with {task.exception()!r}")

    async def run_cycle(self) -> Optional[CycleReport]:
        """Run one full scan; returns None if a cycle is already in progress"""
        if self._running:
            self.logger.warning("Previous scan cycle is still running, skipping this trigger")
            return None

        self._running = True
        self._semaphore = asyncio.Semaphore(self.cfg.max_workers)
        report = CycleReport()
        started = time.monotonic()
        self.logger.info("Starting scan cycle")
        try:
            await self._scan(report)
        finally:
            self._running = False
            report.duration = time.monotonic() - started

        self._record(report)
        self.logger.info(f"Scan cycle finished: {report.summary()}")
        return report

    async def _scan(self, report: CycleReport):
        try:
            namespaces = await self._call(self.k8s.list_namespaces)
        except Exception as e:
            self.logger.error(f"Cannot list namespaces, aborting scan cycle: {e!r}")
            report.aborted = True
            return

        targets = select_namespaces(namespaces, self.cfg)
        report.namespaces = len(targets)
        self.logger.info(f"Scanning {len(targets)} namespaces: {', '.join(targets) or '-'}")

        pod_lists = await asyncio.gather(*(self._list_pods(ns, report) for ns in targets))
        candidates = [pod for pods in pod_lists for pod in pods if not self._skip(pod, report)]

        evaluations = await asyncio.gather(*(self._evaluate(pod, report) for pod in candidates))
        violators = [
            pod for pod, evaluation in zip(candidates, evaluations)
            if evaluation is not None and evaluation.non_compliant
        ]

        deployments = await self._resolve_targets(violators, report)
        await asyncio.gather(*(self._remediate(d, report) for d in deployments))

    async def _list_pods(self, namespace: str, report: CycleReport) -> List[Any]:
        self.logger.info(f"Scanning namespace: {namespace}")
        try:
            return await self._call(self.k8s.list_pods, namespace)
        except Exception as e:
            self.logger.error(f"Cannot list pods in {namespace}: {e!r}")
            report.failures += 1
            return []

    def _skip(self, pod, report: CycleReport) -> bool:
        reason = skip_reason(pod, self.cfg)
        if reason is None:
            report.pods_scanned += 1
            return False
        self.logger.debug(f"Skipping pod {pod.metadata.namespace}/{pod.metadata.name}: {reason.value}")
        report.pods_skipped += 1
        return True

    async def _evaluate(self, pod, report: CycleReport) -> Optional[Evaluation]:
        key = f"{pod.metadata.namespace}/{pod.metadata.name}"
        try:
            evaluation = await self._call(
                evaluate_pod, self.k8s, pod, self.cfg, self.runtime_probe, self.agent_probe,
                timeout=2 * self.cfg.exec_timeout + self.cfg.call_timeout,
            )
        except Exception as e:
            self.logger.error(f"Evaluating pod {key} failed: {e!r}")
            report.failures += 1
            return None

        if evaluation.indeterminate:
            report.indeterminate += 1
        elif evaluation.non_compliant:
            self.logger.warning(f"Non-compliant pod: {key}")
            report.non_compliant += 1
        else:
            report.compliant += 1
        return evaluation

    async def _resolve_targets(self, pods, report: CycleReport) -> List[Any]:
        """Owning Deployments of the given pods, each listed once"""
        results = await asyncio.gather(*(self._resolve(pod, report) for pod in pods))
        unique: Dict[Tuple[str, str], Any] = {}
        for deployment in results:
            if deployment is None:
                continue
            key = (deployment.metadata.namespace, deployment.metadata.name)
            unique.setdefault(key, deployment)
        return list(unique.values())

    async def _resolve(self, pod, report: CycleReport):
        key = f"{pod.metadata.namespace}/{pod.metadata.name}"
        try:
            return await self._call(find_parent_deployment, self.k8s, pod)
        except NoControllerError as e:
            self.logger.info(f"No Deployment to scale for {key}: {e}")
            report.unresolved += 1
        except OwnerResolutionError as e:
            self.logger.error(f"Owner lookup failed for {key}: {e}")
            report.failures += 1
        except Exception as e:
            self.logger.error(f"Owner lookup failed for {key}: {e!r}")
            report.failures += 1
        return None

    async def _remediate(self, deployment, report: CycleReport):
        key = f"{deployment.metadata.namespace}/{deployment.metadata.name}"
        try:
            result = await self._call(self.engine.scale_to_zero, deployment)
        except Exception as e:
            self.logger.error(f"Remediating Deployment {key} failed: {e!r}")
            report.failures += 1
            return

        if result.status == RemediationStatus.SCALED:
            report.remediated += 1
            report.remediated_deployments.append(key)
        elif result.status == RemediationStatus.ALREADY_SCALED:
            report.already_scaled += 1
        else:
            report.failures += 1

    def _record(self, report: CycleReport):
        self.history.append(report)
        # Keep history manageable
        if len(self.history) > HISTORY_LIMIT:
            self.history = self.history[-HISTORY_LIMIT // 2:]

    async def run_forever(self, stop_event: Optional[asyncio.Event] = None):
        """Run a cycle every scan_interval seconds until stop_event is set"""
        interval = self.cfg.scan_interval
        stop_event = stop_event or asyncio.Event()
        self.logger.info(f"Pod compliance scanner started, interval {interval}s")

        while not stop_event.is_set():
            started = time.monotonic()
            try:
                await self.run_cycle()
            except Exception as e:
                self.logger.exception(f"Unexpected error in scan cycle: {e}")

            elapsed = time.monotonic() - started
            if elapsed > interval:
                self.logger.warning(
                    f"Scan cycle took {elapsed:.1f}s, longer than the {interval}s interval; "
                    f"skipping {int(elapsed // interval)} missed tick(s)"
                )
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval - (elapsed % interval))
            except asyncio.TimeoutError:
                pass

    def get_summary(self) -> Dict[str, Any]:
        """Totals over the recorded cycles"""
        summary = {
            "cycles": len(self.history),
            "aborted_cycles": sum(1 for r in self.history if r.aborted),
            "non_compliant": sum(r.non_compliant for r in self.history),
            "remediated": sum(r.remediated for r in self.history),
            "failures": sum(r.failures for r in self.history),
            "remediated_deployments": {},
        }
        for report in self.history:
            for key in report.remediated_deployments:
                summary["remediated_deployments"][key] = summary["remediated_deployments"].get(key, 0) + 1
        return summary


def main():
    """Console entry point"""
    try:
        cfg = load_config()
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(2)

    logging.basicConfig(
        level=cfg.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    k8s = KubernetesClient(request_timeout=cfg.request_timeout, max_channels=cfg.max_workers)
    scanner = ScanOrchestrator(k8s, cfg)

    if parse_bool(os.getenv("SCANNER_ONCE", "")):
        report = asyncio.run(scanner.run_cycle())
        sys.exit(1 if report is None or report.aborted else 0)

    print("🔍 Pod Compliance Scanner Started")
    if cfg.dry_run:
        print("Dry run: Deployments will not be modified")
    try:
        asyncio.run(scanner.run_forever())
    except KeyboardInterrupt:
        print("\n👋 Shutting down pod compliance scanner")
        summary = scanner.get_summary()
        print(f"Cycles run: {summary['cycles']} ({summary['aborted_cycles']} aborted)")
        print(f"Non-compliant pods seen: {summary['non_compliant']}")
        print(f"Deployments scaled to zero: {summary['remediated']}")


if __name__ == "__main__":
    main()
