"""Shared test fixtures and configuration for vmfleet tests."""

import threading
from typing import Any, Dict, List, Optional, Set
from unittest import mock

import pytest

from vmfleet.config import FleetConfig
from vmfleet.models import BatchRequest, CloneConfig


@pytest.fixture
def mock_proxmox():
    """Mock Proxmox API client for testing."""
    with mock.patch('vmfleet.proxmox_api.ProxmoxAPI') as mock_api:
        proxmox = mock.MagicMock()
        mock_api.return_value = proxmox

        proxmox.nodes.get.return_value = [
            {"node": "pve", "status": "online"},
            {"node": "still-fawn", "status": "online"},
        ]
        proxmox.nodes.return_value.qemu.get.return_value = []
        proxmox.nodes.return_value.lxc.get.return_value = []
        proxmox.cluster.resources.get.return_value = []

        yield proxmox


@pytest.fixture
def temp_ssh_key(tmp_path, monkeypatch):
    """Create temporary SSH key for testing."""
    key_file = tmp_path / "id_rsa.pub"
    key_file.write_text("ssh-ed25519 AAAAC3NzaC1lZDI1NTE5AAAAITest test@example.com\n")
    monkeypatch.setenv("SSH_PUBKEY_PATH", str(key_file))
    return str(key_file)


@pytest.fixture
def mock_env(monkeypatch, temp_ssh_key):
    """Set up test environment variables."""
    for var in ("PVE_USER", "PVE_PASSWORD", "SNIPPET_STORAGE", "NAME_CONFLICT_POLICY"):
        monkeypatch.delenv(var, raising=False)

    env_vars = {
        "PVE_HOST": "pve.example.lan",
        "API_TOKEN": "root@pam!fleet=secretvalue",
        "PVE_VERIFY_SSL": "false",
        "VMID_FLOOR": "200",
        "FLEET_PARALLELISM": "3",
        "CLONE_TIMEOUT": "600",
        "VM_START_TIMEOUT": "120",
        "API_MAX_RETRIES": "2",
    }
    for key, value in env_vars.items():
        monkeypatch.setenv(key, value)

    return env_vars


@pytest.fixture
def fleet_config() -> FleetConfig:
    """Fleet config with fast, jitter-free polling."""
    return FleetConfig(
        host="pve",
        api_token="root@pam!fleet=secretvalue",
        parallelism=2,
        clone_timeout=300,
        start_timeout=60,
        max_retries=2,
        retry_backoff_base=1.0,
        retry_backoff_max=4.0,
        poll_interval=1.0,
        poll_max_interval=5.0,
        poll_jitter=0.0,
    )


@pytest.fixture
def batch_request() -> BatchRequest:
    return BatchRequest(
        base_name="web",
        template_id=9000,
        node="pve",
        count=3,
        starting_ip_octet=150,
        subnet="192.168.1",
        gateway="192.168.1.1",
        ssh_public_key="ssh-ed25519 AAAAC3 test@example.com",
    )


@pytest.fixture
def clone_config(batch_request) -> CloneConfig:
    return CloneConfig.from_request(batch_request)


class FakeClock:
    """Monotonic clock whose sleep advances time instantly."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start
        self.sleeps: List[float] = []
        self._lock = threading.Lock()

    def __call__(self) -> float:
        with self._lock:
            return self.now

    def sleep(self, seconds: float) -> None:
        with self._lock:
            self.sleeps.append(seconds)
            self.now += seconds


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


class FakeHypervisor:
    """In-memory stand-in for ProxmoxClient.

    Tasks finish on their first poll unless the VM name is listed in
    ``stuck_clones``. ``failures`` maps an operation name ("clone",
    "config", "start", "list") to exceptions raised on successive calls.
    """

    def __init__(self, vms: Optional[List[Dict[str, Any]]] = None) -> None:
        self.vms: List[Dict[str, Any]] = list(vms or [])
        self.stuck_clones: Set[str] = set()
        self.failed_tasks: Set[str] = set()
        self.failures: Dict[str, List[Exception]] = {}
        self.calls: List[tuple] = []
        self.tasks: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()

    def _maybe_fail(self, operation: str, key: str = "") -> None:
        queue = self.failures.get(f"{operation}:{key}") or self.failures.get(operation)
        if queue:
            raise queue.pop(0)

    def _task(self, name: str, kind: str, running: bool = False, exitstatus: str = "OK") -> str:
        upid = f"UPID:pve:{kind}:{name}"
        self.tasks[upid] = {"status": "running" if running else "stopped", "exitstatus": exitstatus}
        return upid

    @property
    def clone_calls(self) -> List[tuple]:
        return [c for c in self.calls if c[0] == "clone"]

    def used_vmids(self) -> Set[int]:
        with self._lock:
            self.calls.append(("used_vmids",))
            return {int(vm["vmid"]) for vm in self.vms}

    def list_vms(self, node: str) -> List[Dict[str, Any]]:
        with self._lock:
            self._maybe_fail("list")
            return list(self.vms)

    def find_vm(self, node: str, vmid: int, name: str) -> Optional[Dict[str, Any]]:
        for vm in self.list_vms(node):
            if int(vm["vmid"]) == vmid or vm.get("name") == name:
                return vm
        return None

    def clone_vm(self, node, template_id, newid, name, full=True, storage=None) -> str:
        with self._lock:
            self.calls.append(("clone", name, newid))
            self._maybe_fail("clone", name)
            self.vms.append({"vmid": newid, "name": name, "status": "stopped"})
            exitstatus = "clone failed: storage full" if name in self.failed_tasks else "OK"
            return self._task(name, "qmclone", running=name in self.stuck_clones, exitstatus=exitstatus)

    def update_vm_config(self, node, vmid, **params) -> Optional[str]:
        with self._lock:
            self.calls.append(("config", vmid, params))
            self._maybe_fail("config")
            return None

    def start_vm(self, node, vmid) -> str:
        with self._lock:
            self.calls.append(("start", vmid))
            self._maybe_fail("start")
            for vm in self.vms:
                if int(vm["vmid"]) == vmid:
                    vm["status"] = "running"
            return self._task(str(vmid), "qmstart")

    def get_task_status(self, node, upid) -> Dict[str, Any]:
        with self._lock:
            return dict(self.tasks[upid])

    def get_vm_status(self, node, vmid) -> Dict[str, Any]:
        with self._lock:
            for vm in self.vms:
                if int(vm["vmid"]) == vmid:
                    return {"status": vm["status"]}
            return {"status": "unknown"}


@pytest.fixture
def hypervisor() -> FakeHypervisor:
    return FakeHypervisor(vms=[
        {"vmid": 100, "name": "dns", "status": "running"},
        {"vmid": 101, "name": "proxy", "status": "running"},
        {"vmid": 9000, "name": "ubuntu-template", "status": "stopped", "template": 1},
    ])
