"""
Configuration for fleet provisioning.

Connection and runtime settings come from environment variables (and a
``.env`` file when present). Batch requests can be loaded from YAML files;
explicit overrides win over file values, which win over defaults.
"""

import logging
import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml
from dotenv import load_dotenv

from vmfleet.exceptions import RequestValidationError
from vmfleet.models import BatchRequest

logger = logging.getLogger(__name__)

NAME_CONFLICT_POLICIES = ("skip", "fail")

# Keys accepted in a request file that map onto BatchRequest fields under a different name
_REQUEST_ALIASES = {
    "name": "base_name",
    "vm_name": "base_name",
    "template": "template_id",
    "template_vmid": "template_id",
    "memory": "memory_mb",
    "start_ip": "starting_ip_octet",
    "dns": "dns_servers",
    "user": "default_user",
    "ssh_key": "ssh_public_key",
}


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class FleetConfig:
    """Connection and runtime settings for a provisioning run."""

    # Proxmox connection
    host: str = "pve"
    api_token: Optional[str] = None
    user: Optional[str] = None
    password: Optional[str] = None
    verify_ssl: bool = False

    # VMID allocation
    vmid_floor: int = 100
    vmid_ceiling: int = 999_999_999

    # Scheduling
    parallelism: int = 2
    clone_timeout: float = 900.0
    start_timeout: float = 180.0

    # Retry and polling
    max_retries: int = 3
    retry_backoff_base: float = 2.0
    retry_backoff_max: float = 30.0
    poll_interval: float = 2.0
    poll_max_interval: float = 15.0
    poll_jitter: float = 1.0

    # Existing VMs with a requested name: "skip" or "fail"
    name_conflict_policy: str = "skip"

    # Cloud-init snippet upload (disabled unless snippet_storage is set)
    snippet_storage: Optional[str] = None
    snippet_dir: str = "/var/lib/vz/snippets"
    ssh_user: str = "root"
    ssh_key_path: str = "~/.ssh/id_rsa"
    ssh_pubkey_path: str = "~/.ssh/id_rsa.pub"

    @classmethod
    def from_environment(cls) -> "FleetConfig":
        """Load configuration from environment variables."""
        load_dotenv()

        return cls(
            host=os.getenv("PVE_HOST", "pve"),
            api_token=os.getenv("API_TOKEN") or None,
            user=os.getenv("PVE_USER") or None,
            password=os.getenv("PVE_PASSWORD") or None,
            verify_ssl=_env_bool("PVE_VERIFY_SSL", False),
            vmid_floor=int(os.getenv("VMID_FLOOR", "100")),
            vmid_ceiling=int(os.getenv("VMID_CEILING", "999999999")),
            parallelism=int(os.getenv("FLEET_PARALLELISM", "2")),
            clone_timeout=float(os.getenv("CLONE_TIMEOUT", "900")),
            start_timeout=float(os.getenv("VM_START_TIMEOUT", "180")),
            max_retries=int(os.getenv("API_MAX_RETRIES", "3")),
            retry_backoff_base=float(os.getenv("RETRY_BACKOFF_BASE", "2")),
            retry_backoff_max=float(os.getenv("RETRY_BACKOFF_MAX", "30")),
            poll_interval=float(os.getenv("TASK_POLL_INTERVAL", "2")),
            poll_max_interval=float(os.getenv("TASK_POLL_MAX_INTERVAL", "15")),
            poll_jitter=float(os.getenv("TASK_POLL_JITTER", "1")),
            name_conflict_policy=os.getenv("NAME_CONFLICT_POLICY", "skip").strip().lower(),
            snippet_storage=os.getenv("SNIPPET_STORAGE") or None,
            snippet_dir=os.getenv("SNIPPET_DIR", "/var/lib/vz/snippets"),
            ssh_user=os.getenv("SSH_USER", "root"),
            ssh_key_path=os.getenv("SSH_KEY_PATH", "~/.ssh/id_rsa"),
            ssh_pubkey_path=os.getenv("SSH_PUBKEY_PATH", "~/.ssh/id_rsa.pub"),
        )

    def validate(self) -> None:
        """Validate configuration settings."""
        if not self.api_token and not (self.user and self.password):
            raise ValueError("Set API_TOKEN or both PVE_USER and PVE_PASSWORD")

        if self.api_token and ("!" not in self.api_token or "=" not in self.api_token):
            raise ValueError("API_TOKEN must look like 'user@realm!tokenid=secret'")

        if not 100 <= self.vmid_floor <= self.vmid_ceiling:
            raise ValueError(
                f"VMID range invalid: floor={self.vmid_floor}, ceiling={self.vmid_ceiling}"
            )

        if self.parallelism < 1:
            raise ValueError("Parallelism must be at least 1")

        if self.max_retries < 0:
            raise ValueError("Max retries cannot be negative")

        if self.clone_timeout <= 0 or self.start_timeout <= 0:
            raise ValueError("Timeouts must be positive")

        if self.name_conflict_policy not in NAME_CONFLICT_POLICIES:
            raise ValueError(
                f"Name conflict policy must be one of {NAME_CONFLICT_POLICIES}, "
                f"got {self.name_conflict_policy!r}"
            )

    def read_ssh_pubkey(self) -> str:
        """Read the SSH public key deployed to new VMs.

        Raises:
            FileNotFoundError: If the key file does not exist
        """
        path = os.path.expanduser(self.ssh_pubkey_path)
        try:
            with open(path) as f:
                return f.read().strip()
        except FileNotFoundError:
            raise FileNotFoundError(
                f"SSH public key not found at {path}. "
                f"Please set SSH_PUBKEY_PATH environment variable or create the key file."
            )


def build_request(values: Dict[str, Any]) -> BatchRequest:
    """Build a BatchRequest from loosely named values, applying defaults."""
    known = {f.name for f in fields(BatchRequest)}
    kwargs: Dict[str, Any] = {}
    for key, value in values.items():
        if value is None:
            continue
        target = _REQUEST_ALIASES.get(key, key)
        if target not in known:
            raise RequestValidationError(f"Unknown request field: {key!r}")
        kwargs[target] = value

    for required in ("base_name", "template_id"):
        if required not in kwargs:
            raise RequestValidationError(f"Missing required request field: {required!r}")

    if isinstance(kwargs.get("dns_servers"), str):
        kwargs["dns_servers"] = [s.strip() for s in kwargs["dns_servers"].split(",") if s.strip()]

    try:
        return BatchRequest(**kwargs)
    except TypeError as e:
        raise RequestValidationError(f"Invalid request: {e}")


def load_request(path: Optional[Union[str, Path]] = None, **overrides: Any) -> BatchRequest:
    """
    Load a batch request from a YAML file and merge explicit overrides.

    The file may hold the fields at the top level or under a ``batch`` key.
    Overrides set to None are ignored so unset CLI options fall through.
    """
    values: Dict[str, Any] = {}
    if path is not None:
        path = Path(path)
        if not path.exists():
            raise RequestValidationError(f"Request file not found: {path}")
        with open(path) as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise RequestValidationError(f"Request file {path} must contain a mapping")
        values.update(data.get("batch", data))
        logger.info(f"Loaded batch request from {path}")

    values.update({k: v for k, v in overrides.items() if v is not None})
    return build_request(values)
