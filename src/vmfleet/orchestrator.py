#!/usr/bin/env python3
"""
src/vmfleet/orchestrator.py

Drive a whole batch: read cluster VMIDs once, plan, then clone every entry
on a bounded thread pool. One failed VM never stops the others; the report
lists every planned VM exactly once, in plan order.
"""

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from typing import Callable, Dict, List, Optional

from vmfleet.allocator import ResourceAllocator
from vmfleet.clone_executor import CloneExecutor
from vmfleet.config import FleetConfig
from vmfleet.exceptions import ApiAuthError
from vmfleet.models import (
    BatchReport,
    BatchRequest,
    CloneConfig,
    CloneOutcome,
    CloneStatus,
    VmPlanEntry,
    VmState,
)
from vmfleet.proxmox_api import ProxmoxClient

logger = logging.getLogger(__name__)

CANCELLED_DETAIL = "cancelled before dispatch"


def failed_outcome(entry: VmPlanEntry, detail: str, elapsed: float = 0.0) -> CloneOutcome:
    return CloneOutcome(
        plan_entry=entry,
        status=CloneStatus.FAILED,
        error_detail=detail,
        elapsed=elapsed,
        final_state=VmState.FAILED,
    )


class BatchOrchestrator:
    """
    Provision a batch of VMs from one template.

    Workflow:
    1. Query used VMIDs once (never re-queried mid-batch)
    2. Plan names, VMIDs and addresses
    3. Clone entries concurrently, at most ``parallelism`` at a time
       (each entry gets its own cloud-init snippet when SNIPPET_STORAGE is set)
    4. Collect outcomes back into plan order
    """

    def __init__(
        self,
        client: ProxmoxClient,
        config: FleetConfig,
        executor: Optional[CloneExecutor] = None,
        allocator: Optional[ResourceAllocator] = None,
        on_outcome: Optional[Callable[[CloneOutcome], None]] = None,
    ) -> None:
        self.client = client
        self.config = config
        self.executor = executor or CloneExecutor(client, config)
        self.allocator = allocator or ResourceAllocator(config.vmid_floor, config.vmid_ceiling)
        self.on_outcome = on_outcome
        self._cancelled = threading.Event()

    def cancel(self) -> None:
        """Stop dispatching new entries; in-flight clones run to completion or timeout."""
        if not self._cancelled.is_set():
            logger.warning("Batch cancellation requested; no new clones will be started")
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def plan(self, request: BatchRequest) -> List[VmPlanEntry]:
        """Plan a batch against the current cluster state without cloning anything."""
        existing_vmids = self.client.used_vmids()
        logger.info(f"Found {len(existing_vmids)} VMIDs in use on the cluster")
        return self.allocator.plan(request, frozenset(existing_vmids))

    def _run_entry(self, entry: VmPlanEntry, request: BatchRequest, clone_config: CloneConfig) -> CloneOutcome:
        if self._cancelled.is_set():
            logger.info(f"⏭️  {entry.name!r} not started: batch cancelled")
            return failed_outcome(entry, CANCELLED_DETAIL)

        started = time.monotonic()
        try:
            return self.executor.execute(
                entry,
                request.template_id,
                request.node,
                clone_config,
                timeout=self.config.clone_timeout,
            )
        except ApiAuthError as e:
            logger.error(f"❌ Authentication rejected while provisioning {entry.name!r}: {e}")
            self.cancel()
            return failed_outcome(entry, f"authentication failed: {e}", time.monotonic() - started)
        except Exception as e:
            logger.exception(f"❌ Unexpected error provisioning {entry.name!r}")
            return failed_outcome(entry, f"unexpected error: {e}", time.monotonic() - started)

    def run(self, request: BatchRequest) -> BatchReport:
        """
        Provision every VM of ``request``.

        Raises:
            AllocationError: If the plan cannot be satisfied (nothing is cloned)
            ApiAuthError: If the initial cluster query is rejected
        """
        self._cancelled.clear()
        entries = self.plan(request)
        clone_config = CloneConfig.from_request(request)

        workers = max(1, min(self.config.parallelism, len(entries)))
        logger.info(
            f"🚀 Provisioning {len(entries)} VM(s) from template {request.template_id} "
            f"on {request.node} with {workers} worker(s)"
        )

        outcomes: Dict[int, CloneOutcome] = {}
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="vmfleet") as pool:
            futures: Dict[Future, VmPlanEntry] = {
                pool.submit(self._run_entry, entry, request, clone_config): entry for entry in entries
            }
            for future in as_completed(futures):
                entry = futures[future]
                outcome = future.result()
                outcomes[entry.index] = outcome
                logger.info(
                    f"[{len(outcomes)}/{len(entries)}] {entry.name}: {outcome.status.value}"
                    + (f" ({outcome.error_detail})" if outcome.error_detail else "")
                )
                if self.on_outcome is not None:
                    try:
                        self.on_outcome(outcome)
                    except Exception:
                        logger.exception(f"Outcome callback failed for {entry.name!r}")

        report = BatchReport(outcomes=[outcomes[entry.index] for entry in entries])
        logger.info(
            f"Batch {request.base_name!r} finished: {report.succeeded_count} succeeded, "
            f"{report.failed_count} failed"
        )
        return report
