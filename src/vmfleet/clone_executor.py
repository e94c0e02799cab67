"""
Clone, configure and start a single VM from a template.

Each call walks one plan entry through
PLANNED -> CLONING -> CONFIGURING -> STARTING -> CREATED and always returns a
CloneOutcome. Transient API errors are retried with exponential backoff; a
clone that outlives its timeout is reported as TIMED_OUT and never retried,
since a second clone of a slow copy would consume the storage twice.
"""

import logging
import random
import time
from typing import Any, Callable, Dict, Optional, TypeVar

from vmfleet.cloud_init import SnippetUploader, build_cloud_init_params, render_user_data, snippet_filename
from vmfleet.config import FleetConfig
from vmfleet.exceptions import (
    AlreadyExistsConflict,
    ApiAuthError,
    CloneTimeout,
    NetworkConfigError,
    ProxmoxApiError,
    SnippetUploadError,
    TaskFailedError,
    TransientApiError,
)
from vmfleet.models import CloneConfig, CloneOutcome, StateTracker, VmPlanEntry, VmState
from vmfleet.proxmox_api import ProxmoxClient

logger = logging.getLogger(__name__)

T = TypeVar("T")

POLL_GROWTH = 1.5


def task_succeeded(exitstatus: str) -> bool:
    """Proxmox reports ``OK`` or ``WARNINGS: n`` for tasks that completed."""
    return exitstatus == "OK" or exitstatus.startswith("WARNINGS")


class CloneExecutor:
    """Provision one VM per call against a Proxmox node."""

    def __init__(
        self,
        client: ProxmoxClient,
        config: FleetConfig,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        rng: Optional[random.Random] = None,
        snippet_uploader: Optional[SnippetUploader] = None,
    ) -> None:
        self.client = client
        self.config = config
        self.snippet_uploader = snippet_uploader
        if self.snippet_uploader is None and config.snippet_storage:
            self.snippet_uploader = SnippetUploader(config)
        self._sleep = sleep
        self._clock = clock
        self._rng = rng or random.Random()

    # === RETRY AND POLLING ===

    def backoff_delay(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (0-based), with jitter."""
        base = min(self.config.retry_backoff_base * (2 ** attempt), self.config.retry_backoff_max)
        return base + self._rng.uniform(0, self.config.poll_jitter)

    def _with_retry(self, action: str, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        attempt = 0
        while True:
            try:
                return func(*args, **kwargs)
            except TransientApiError as e:
                if attempt >= self.config.max_retries:
                    logger.error(f"Giving up on {action} after {attempt + 1} attempts: {e}")
                    raise
                delay = self.backoff_delay(attempt)
                logger.warning(f"Transient error during {action} ({e}); retry {attempt + 1} in {delay:.1f}s")
                self._sleep(delay)
                attempt += 1

    def _poll_until(
        self,
        label: str,
        timeout: float,
        check: Callable[[], bool],
    ) -> None:
        """Call ``check`` until it returns True or ``timeout`` seconds pass."""
        deadline = self._clock() + timeout
        interval = self.config.poll_interval
        while True:
            if check():
                return
            remaining = deadline - self._clock()
            if remaining <= 0:
                raise CloneTimeout(label, timeout)
            jitter = self._rng.uniform(0, self.config.poll_jitter)
            self._sleep(min(interval + jitter, remaining))
            interval = min(interval * POLL_GROWTH, self.config.poll_max_interval)

    def wait_for_task(self, node: str, upid: str, timeout: float) -> None:
        """
        Wait for an asynchronous Proxmox task to stop.

        Raises:
            TaskFailedError: If the task stopped with an error exit status
            CloneTimeout: If the task is still running after ``timeout`` seconds
        """

        def _stopped() -> bool:
            status: Dict[str, Any] = self._with_retry(
                f"poll task {upid}", self.client.get_task_status, node, upid
            )
            if status.get("status") != "stopped":
                return False
            exitstatus = str(status.get("exitstatus", "OK"))
            if not task_succeeded(exitstatus):
                raise TaskFailedError(upid, exitstatus)
            return True

        self._poll_until(upid, timeout, _stopped)

    def wait_for_running(self, node: str, vmid: int, timeout: float) -> None:
        """Wait until the VM reports ``running``."""

        def _running() -> bool:
            status = self._with_retry(f"status of VM {vmid}", self.client.get_vm_status, node, vmid)
            return status.get("status") == "running"

        self._poll_until(f"start of VM {vmid}", timeout, _running)

    # === PROVISIONING ===

    def _check_existing(self, entry: VmPlanEntry, node: str) -> None:
        existing = self._with_retry(
            f"existence check for {entry.name}", self.client.find_vm, node, entry.vmid, entry.name
        )
        if existing is not None:
            raise AlreadyExistsConflict(entry.name, int(existing["vmid"]))

    def _upload_snippet(self, entry: VmPlanEntry, node: str, config: CloneConfig) -> str:
        content = render_user_data(
            config.user,
            config.ssh_public_key,
            hostname=entry.hostname,
            search_domain=config.search_domain,
        )
        return self.snippet_uploader.upload(node, snippet_filename(entry), content)

    def _provision(
        self,
        entry: VmPlanEntry,
        template_id: int,
        node: str,
        config: CloneConfig,
        timeout: float,
        tracker: StateTracker,
    ) -> None:
        params = build_cloud_init_params(entry, config)
        self._check_existing(entry, node)
        if self.snippet_uploader is not None:
            # Written only for VMs that are about to be cloned
            params["cicustom"] = self._upload_snippet(entry, node, config)

        tracker.advance(VmState.CLONING)
        logger.info(f"🆕 Cloning template {template_id} -> {entry.name!r} (vmid={entry.vmid}) on {node}")
        upid = self._with_retry(
            f"clone {entry.name}",
            self.client.clone_vm,
            node,
            template_id,
            entry.vmid,
            entry.name,
            full=config.full_clone,
            storage=config.storage,
        )
        self.wait_for_task(node, upid, timeout)

        tracker.advance(VmState.CONFIGURING)
        logger.info(f"🔧 Configuring cloud-init for {entry.name!r}: {params['ipconfig0']}")
        config_upid = self._with_retry(
            f"configure {entry.name}", self.client.update_vm_config, node, entry.vmid, **params
        )
        if config_upid:
            self.wait_for_task(node, config_upid, self.config.start_timeout)

        if not config.auto_start:
            tracker.advance(VmState.CREATED)
            return

        tracker.advance(VmState.STARTING)
        logger.info(f"▶️  Starting VM {entry.name!r} (vmid={entry.vmid})")
        start_upid = self._with_retry(f"start {entry.name}", self.client.start_vm, node, entry.vmid)
        self.wait_for_task(node, start_upid, self.config.start_timeout)
        self.wait_for_running(node, entry.vmid, self.config.start_timeout)
        tracker.advance(VmState.CREATED)

    def execute(
        self,
        entry: VmPlanEntry,
        template_id: int,
        node: str,
        config: CloneConfig,
        timeout: Optional[float] = None,
    ) -> CloneOutcome:
        """
        Clone ``template_id`` into ``entry`` on ``node`` and apply ``config``.

        Args:
            entry: Plan entry to provision
            template_id: VMID of the source template
            node: Target Proxmox node
            config: Cloud-init and hardware settings
            timeout: Seconds to wait for the clone task (defaults to CLONE_TIMEOUT)

        Returns:
            CloneOutcome with a terminal status

        Raises:
            ApiAuthError: Credentials were rejected; the caller should stop the batch
        """
        timeout = self.config.clone_timeout if timeout is None else timeout
        tracker = StateTracker(f"{entry.name} (vmid={entry.vmid})")
        started = self._clock()
        detail: Optional[str] = None

        try:
            self._provision(entry, template_id, node, config, timeout, tracker)
        except AlreadyExistsConflict as e:
            if self.config.name_conflict_policy == "fail":
                logger.error(f"❌ {e}; name conflict policy is 'fail'")
                tracker.advance(VmState.FAILED)
                detail = f"name conflict: {e}"
            else:
                logger.info(f"✅ {e}, skipping")
                tracker.advance(VmState.ALREADY_EXISTS)
                detail = str(e)
        except NetworkConfigError as e:
            logger.error(f"❌ Invalid network configuration for {entry.name!r}: {e}")
            tracker.advance(VmState.FAILED)
            detail = str(e)
        except CloneTimeout as e:
            logger.error(f"⏱️  {entry.name!r} timed out while {tracker.state.value}: {e}")
            tracker.advance(VmState.TIMED_OUT)
            detail = str(e)
        except ApiAuthError:
            raise
        except (ProxmoxApiError, TaskFailedError, SnippetUploadError) as e:
            logger.error(f"❌ {entry.name!r} failed while {tracker.state.value}: {e}")
            tracker.advance(VmState.FAILED)
            detail = f"{tracker.history[-2].value}: {e}"
        else:
            logger.info(f"✅ VM {entry.name!r} (vmid={entry.vmid}) created")

        return CloneOutcome(
            plan_entry=entry,
            status=tracker.state.to_status(),
            error_detail=detail,
            elapsed=self._clock() - started,
            final_state=tracker.state,
        )
