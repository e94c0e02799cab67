"""Exceptions raised while planning and provisioning a VM fleet."""

from typing import Optional


class FleetError(Exception):
    """Base exception for fleet provisioning errors."""

    pass


class RequestValidationError(FleetError):
    """Raised when a batch request is malformed."""

    pass


class NetworkConfigError(RequestValidationError):
    """Raised when a network configuration mixes static and DHCP settings."""

    pass


class AllocationError(FleetError):
    """Raised when the IP or VMID space cannot satisfy a batch."""

    pass


class OctetOverflowError(AllocationError):
    """Raised when sequential addresses would run past the last usable octet."""

    def __init__(self, octet: int, limit: int = 254) -> None:
        self.octet = octet
        self.limit = limit
        super().__init__(f"IP octet {octet} is outside the usable range 1-{limit}")


class VmidExhaustedError(AllocationError):
    """Raised when no free VMID remains below the configured ceiling."""

    pass


AllocationError.OctetOverflow = OctetOverflowError  # type: ignore[attr-defined]
AllocationError.VmidExhausted = VmidExhaustedError  # type: ignore[attr-defined]


class ProxmoxApiError(FleetError):
    """Raised when the Proxmox API rejects a request permanently."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        self.status_code = status_code
        super().__init__(message)


class ApiAuthError(ProxmoxApiError):
    """Raised when authentication against the Proxmox API fails."""

    pass


class TransientApiError(ProxmoxApiError):
    """Raised for errors worth retrying: rate limits, locks, gateway errors."""

    pass


class ExistenceConflictError(ProxmoxApiError):
    """Raised when the hypervisor reports that a target VM already exists."""

    pass


class TaskFailedError(FleetError):
    """Raised when a Proxmox task finishes with a non-OK exit status."""

    def __init__(self, upid: str, exitstatus: str) -> None:
        self.upid = upid
        self.exitstatus = exitstatus
        super().__init__(f"Task {upid} failed: {exitstatus}")


class CloneTimeout(FleetError):
    """Raised when a clone (or start) task does not finish in time."""

    def __init__(self, upid: str, timeout: float) -> None:
        self.upid = upid
        self.timeout = timeout
        super().__init__(f"Task {upid} did not finish within {timeout:.0f}s")


class AlreadyExistsConflict(FleetError):
    """Signals that the target VM is already present; treated as a skip."""

    def __init__(self, name: str, vmid: int) -> None:
        self.name = name
        self.vmid = vmid
        super().__init__(f"VM {name!r} already exists (vmid={vmid})")


class SnippetUploadError(FleetError):
    """Raised when a cloud-init snippet cannot be written to the node."""

    def __init__(self, host: str, filename: str, reason: str) -> None:
        self.host = host
        self.filename = filename
        super().__init__(f"Snippet upload of {filename} to {host} failed: {reason}")


class InvalidTransitionError(FleetError):
    """Raised when a plan entry is moved backwards or out of a terminal state."""

    pass
