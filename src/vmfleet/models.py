"""Data models for fleet provisioning."""

import ipaddress
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, FrozenSet, List, Optional, Tuple

from vmfleet.exceptions import InvalidTransitionError, RequestValidationError

HOSTNAME_RE = re.compile(r"^[a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?$", re.IGNORECASE)

DEFAULT_MEMORY_MB = 4096
DEFAULT_CORES = 2
DEFAULT_STARTING_OCTET = 150
DEFAULT_COUNT = 1
DEFAULT_DNS_SERVERS = ("1.1.1.1", "8.8.8.8")


class CloneStatus(Enum):
    """Terminal status of one requested VM."""

    CREATED = "created"
    ALREADY_EXISTS = "already_exists"
    FAILED = "failed"
    TIMED_OUT = "timed_out"

    @property
    def is_success(self) -> bool:
        return self in (CloneStatus.CREATED, CloneStatus.ALREADY_EXISTS)


class VmState(Enum):
    """Lifecycle of a single plan entry while it is provisioned."""

    PLANNED = "planned"
    CLONING = "cloning"
    CONFIGURING = "configuring"
    STARTING = "starting"
    CREATED = "created"
    ALREADY_EXISTS = "already_exists"
    FAILED = "failed"
    TIMED_OUT = "timed_out"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES

    def can_transition_to(self, target: "VmState") -> bool:
        """Check whether moving from this state to ``target`` is allowed."""
        return target in _TRANSITIONS[self]

    def to_status(self) -> CloneStatus:
        """Map a terminal state onto the reported clone status."""
        if not self.is_terminal:
            raise InvalidTransitionError(f"State {self.value} is not terminal")
        return CloneStatus(self.value)


TERMINAL_STATES: FrozenSet[VmState] = frozenset(
    {VmState.CREATED, VmState.ALREADY_EXISTS, VmState.FAILED, VmState.TIMED_OUT}
)

_ERROR_STATES = frozenset({VmState.FAILED, VmState.TIMED_OUT})

_TRANSITIONS: Dict[VmState, FrozenSet[VmState]] = {
    VmState.PLANNED: frozenset({VmState.CLONING, VmState.ALREADY_EXISTS}) | _ERROR_STATES,
    VmState.CLONING: frozenset({VmState.CONFIGURING}) | _ERROR_STATES,
    VmState.CONFIGURING: frozenset({VmState.STARTING, VmState.CREATED}) | _ERROR_STATES,
    VmState.STARTING: frozenset({VmState.CREATED}) | _ERROR_STATES,
    VmState.CREATED: frozenset(),
    VmState.ALREADY_EXISTS: frozenset(),
    VmState.FAILED: frozenset(),
    VmState.TIMED_OUT: frozenset(),
}


class StateTracker:
    """Tracks forward-only state transitions for one plan entry."""

    def __init__(self, label: str) -> None:
        self.label = label
        self.state = VmState.PLANNED
        self.history: List[VmState] = [VmState.PLANNED]

    def advance(self, target: VmState) -> None:
        if not self.state.can_transition_to(target):
            raise InvalidTransitionError(
                f"{self.label}: cannot move from {self.state.value} to {target.value}"
            )
        self.state = target
        self.history.append(target)


@dataclass(frozen=True)
class BatchRequest:
    """Immutable description of a fleet to provision.

    Built once at the boundary (CLI, request file or code) with defaults
    already merged in. Validation runs on construction; the IP range check
    belongs to the allocator so that it surfaces as an allocation failure.
    """

    base_name: str
    template_id: int
    node: str = "pve"
    count: int = DEFAULT_COUNT
    starting_ip_octet: int = DEFAULT_STARTING_OCTET
    subnet: str = "192.168.1"
    netmask: int = 24
    gateway: str = "192.168.1.1"
    dns_servers: Tuple[str, ...] = DEFAULT_DNS_SERVERS
    memory_mb: int = DEFAULT_MEMORY_MB
    cores: int = DEFAULT_CORES
    default_user: str = "ubuntu"
    ssh_public_key: str = ""
    auto_start: bool = True
    dhcp: bool = False
    search_domain: Optional[str] = None
    full_clone: bool = True
    storage: Optional[str] = None

    def __post_init__(self) -> None:
        # Lists from YAML or CLI input are frozen into tuples
        object.__setattr__(self, "dns_servers", tuple(self.dns_servers))
        self.validate()

    def validate(self) -> None:
        """Raise RequestValidationError if the request is malformed."""
        if self.count < 1:
            raise RequestValidationError(f"count must be at least 1, got {self.count}")
        if not self.base_name or not HOSTNAME_RE.match(self.base_name):
            raise RequestValidationError(f"base_name {self.base_name!r} is not a valid hostname")
        # Batches of more than one VM append "-<n>", so check the longest name
        longest = self.base_name if self.count == 1 else f"{self.base_name}-{self.count}"
        if not HOSTNAME_RE.match(longest):
            raise RequestValidationError(
                f"VM name {longest!r} would exceed 63 characters; shorten base_name"
            )
        if self.template_id < 1:
            raise RequestValidationError(f"template_id must be positive, got {self.template_id}")
        if not self.node:
            raise RequestValidationError("node must not be empty")
        if self.memory_mb < 16:
            raise RequestValidationError(f"memory_mb too small: {self.memory_mb}")
        if self.cores < 1:
            raise RequestValidationError(f"cores must be at least 1, got {self.cores}")
        if not 1 <= self.netmask <= 32:
            raise RequestValidationError(f"netmask must be a prefix length 1-32, got {self.netmask}")
        for server in self.dns_servers:
            _check_ipv4(server, "dns server")

        if self.dhcp:
            return

        parts = self.subnet.split(".")
        if len(parts) != 3 or not all(p.isdigit() and 0 <= int(p) <= 255 for p in parts):
            raise RequestValidationError(f"subnet must be three octets like '192.168.1', got {self.subnet!r}")
        _check_ipv4(self.gateway, "gateway")


def _check_ipv4(value: str, what: str) -> None:
    try:
        ipaddress.IPv4Address(value)
    except ValueError:
        raise RequestValidationError(f"{what} {value!r} is not a valid IPv4 address")


@dataclass(frozen=True)
class VmPlanEntry:
    """One planned VM; immutable once produced by the allocator."""

    index: int
    name: str
    vmid: int
    ip_address: Optional[str]
    hostname: str


@dataclass(frozen=True)
class CloneConfig:
    """Per-VM settings applied after the clone finishes."""

    memory_mb: int
    cores: int
    user: str
    ssh_public_key: str
    dns_servers: Tuple[str, ...] = ()
    netmask: int = 24
    gateway: Optional[str] = None
    dhcp: bool = False
    search_domain: Optional[str] = None
    auto_start: bool = True
    full_clone: bool = True
    storage: Optional[str] = None
    cicustom: Optional[str] = None

    @classmethod
    def from_request(cls, request: BatchRequest, cicustom: Optional[str] = None) -> "CloneConfig":
        return cls(
            memory_mb=request.memory_mb,
            cores=request.cores,
            user=request.default_user,
            ssh_public_key=request.ssh_public_key,
            dns_servers=request.dns_servers,
            netmask=request.netmask,
            gateway=None if request.dhcp else request.gateway,
            dhcp=request.dhcp,
            search_domain=request.search_domain,
            auto_start=request.auto_start,
            full_clone=request.full_clone,
            storage=request.storage,
            cicustom=cicustom,
        )


@dataclass(frozen=True)
class CloneOutcome:
    """Terminal result for one plan entry."""

    plan_entry: VmPlanEntry
    status: CloneStatus
    error_detail: Optional[str] = None
    elapsed: float = 0.0
    final_state: Optional[VmState] = None

    @property
    def is_success(self) -> bool:
        return self.status.is_success


@dataclass
class BatchReport:
    """Outcomes of a batch run, in plan order."""

    outcomes: List[CloneOutcome] = field(default_factory=list)

    @property
    def succeeded_count(self) -> int:
        return sum(1 for o in self.outcomes if o.is_success)

    @property
    def failed_count(self) -> int:
        return sum(1 for o in self.outcomes if not o.is_success)

    @property
    def created(self) -> List[CloneOutcome]:
        return [o for o in self.outcomes if o.status == CloneStatus.CREATED]

    @property
    def skipped(self) -> List[CloneOutcome]:
        return [o for o in self.outcomes if o.status == CloneStatus.ALREADY_EXISTS]

    @property
    def failed(self) -> List[CloneOutcome]:
        return [o for o in self.outcomes if not o.is_success]

    @property
    def all_succeeded(self) -> bool:
        return self.failed_count == 0
