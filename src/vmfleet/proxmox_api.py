from typing import Any, Callable, Dict, List, Optional, Set, TypeVar
import logging

import requests
from proxmoxer import ProxmoxAPI
from proxmoxer.backends.https import AuthenticationError
from proxmoxer.core import ResourceException

from vmfleet.config import FleetConfig
from vmfleet.exceptions import (
    ApiAuthError,
    ExistenceConflictError,
    ProxmoxApiError,
    TransientApiError,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

AUTH_STATUS_CODES = {401, 403}
TRANSIENT_STATUS_CODES = {423, 429, 502, 503, 504}
TRANSIENT_MARKERS = ("lock", "timeout", "timed out", "try again")


def classify_error(exc: Exception, action: str) -> ProxmoxApiError:
    """Map a proxmoxer/requests exception onto the fleet error taxonomy."""
    if isinstance(exc, ProxmoxApiError):
        return exc

    if isinstance(exc, AuthenticationError):
        return ApiAuthError(f"{action}: authentication failed: {exc}", status_code=401)

    if isinstance(exc, (requests.exceptions.ConnectionError, requests.exceptions.Timeout)):
        return TransientApiError(f"{action}: connection problem: {exc}")

    if isinstance(exc, ResourceException):
        status = exc.status_code
        message = f"{action}: {status} {exc.status_message}: {exc.content}"
        if exc.errors:
            message += f" {exc.errors}"
        lowered = message.lower()

        if status in AUTH_STATUS_CODES:
            return ApiAuthError(message, status_code=status)
        if "already exists" in lowered:
            return ExistenceConflictError(message, status_code=status)
        if status in TRANSIENT_STATUS_CODES:
            return TransientApiError(message, status_code=status)
        if status == 500 and any(marker in lowered for marker in TRANSIENT_MARKERS):
            return TransientApiError(message, status_code=status)
        return ProxmoxApiError(message, status_code=status)

    return ProxmoxApiError(f"{action}: {exc}")


class ProxmoxClient:
    """Wrapper around the Proxmox API exposing the calls the fleet needs.

    Every call translates proxmoxer errors into ApiAuthError,
    TransientApiError, ExistenceConflictError or ProxmoxApiError.
    """

    def __init__(self, config: FleetConfig) -> None:
        self.host = config.host
        self.verify_ssl = config.verify_ssl

        if config.api_token:
            # user@realm!tokenid=secret
            user_token, self.api_token = config.api_token.split("=", 1)
            self.user, self.token_name = user_token.split("!", 1)
            auth: Dict[str, Any] = {
                "user": self.user,
                "token_name": self.token_name,
                "token_value": self.api_token,
            }
        elif config.user and config.password:
            self.user = config.user
            self.token_name = None
            auth = {"user": config.user, "password": config.password}
        else:
            raise ApiAuthError("API_TOKEN or PVE_USER/PVE_PASSWORD must be set")

        try:
            self.proxmox = ProxmoxAPI(self.host, verify_ssl=self.verify_ssl, **auth)
        except Exception as e:
            raise classify_error(e, f"connect to {self.host}")

    def _call(self, action: str, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        try:
            return func(*args, **kwargs)
        except (ResourceException, AuthenticationError, requests.exceptions.RequestException) as e:
            error = classify_error(e, action)
            logger.debug(f"{type(error).__name__} during {action}: {error}")
            raise error

    def list_vms(self, node: str) -> List[Dict[str, Any]]:
        """List QEMU VMs on a node."""
        return self._call(f"list VMs on {node}", self.proxmox.nodes(node).qemu.get)  # type: ignore[no-any-return]

    def find_vm(self, node: str, vmid: int, name: str) -> Optional[Dict[str, Any]]:
        """Return the VM on ``node`` matching ``vmid`` or ``name``, if any."""
        for vm in self.list_vms(node):
            if int(vm.get("vmid", -1)) == vmid or vm.get("name") == name:
                return vm
        return None

    def used_vmids(self) -> Set[int]:
        """Collect VMIDs used anywhere in the cluster (VMs and containers)."""
        used: Set[int] = set()

        # Cluster resources include guests on offline nodes
        try:
            resources = self._call("list cluster resources", self.proxmox.cluster.resources.get, type="vm")
            for resource in resources:
                used.add(int(resource["vmid"]))
            return used
        except ApiAuthError:
            raise
        except ProxmoxApiError as e:
            logger.warning(f"Cluster resource query failed ({e}), falling back to per-node listing")

        for n in self._call("list nodes", self.proxmox.nodes.get):
            nodename = n["node"]
            if n.get("status", "online") != "online":
                continue
            for vm in self._call(f"list VMs on {nodename}", self.proxmox.nodes(nodename).qemu.get):
                used.add(int(vm["vmid"]))
            for ct in self._call(f"list containers on {nodename}", self.proxmox.nodes(nodename).lxc.get):
                used.add(int(ct["vmid"]))
        return used

    def clone_vm(
        self,
        node: str,
        template_id: int,
        newid: int,
        name: str,
        full: bool = True,
        storage: Optional[str] = None,
    ) -> str:
        """Clone a template; returns the task UPID."""
        params: Dict[str, Any] = {"newid": newid, "name": name, "full": int(full)}
        if storage:
            params["storage"] = storage
        return self._call(  # type: ignore[no-any-return]
            f"clone {template_id} -> {newid}",
            self.proxmox.nodes(node).qemu(template_id).clone.post,
            **params,
        )

    def update_vm_config(self, node: str, vmid: int, **params: Any) -> Optional[str]:
        """Apply VM configuration; returns a task UPID when Proxmox runs it async."""
        return self._call(f"configure VM {vmid}", self.proxmox.nodes(node).qemu(vmid).config.post, **params)  # type: ignore[no-any-return]

    def start_vm(self, node: str, vmid: int) -> str:
        """Start a VM; returns the task UPID."""
        return self._call(f"start VM {vmid}", self.proxmox.nodes(node).qemu(vmid).status.start.post)  # type: ignore[no-any-return]

    def get_vm_status(self, node: str, vmid: int) -> Dict[str, Any]:
        """Retrieve the current runtime status of a VM."""
        return self._call(f"status of VM {vmid}", self.proxmox.nodes(node).qemu(vmid).status.current.get)  # type: ignore[no-any-return]

    def get_task_status(self, node: str, upid: str) -> Dict[str, Any]:
        """Retrieve the status of an asynchronous task."""
        return self._call(f"status of task {upid}", self.proxmox.nodes(node).tasks(upid).status.get)  # type: ignore[no-any-return]
