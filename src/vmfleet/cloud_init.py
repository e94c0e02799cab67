"""
Cloud-init configuration for cloned VMs.

Builds the ipconfig/nameserver/user parameters Proxmox feeds to its
cloud-init drive, and optionally renders a user-data snippet that is
uploaded to the node's snippet storage and referenced through ``cicustom``.
"""

import io
import logging
import os
import posixpath
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import paramiko
import yaml

from vmfleet.config import FleetConfig
from vmfleet.exceptions import NetworkConfigError, SnippetUploadError
from vmfleet.models import CloneConfig, VmPlanEntry

logger = logging.getLogger(__name__)

SUDO_RULE = "ALL=(ALL) NOPASSWD:ALL"


def build_ipconfig(
    ip_address: Optional[str],
    netmask: int,
    gateway: Optional[str],
    dhcp: bool = False,
) -> str:
    """
    Build the ``ipconfig0`` value for one VM.

    Static and DHCP modes are mutually exclusive: passing an address
    together with ``dhcp=True`` is rejected.

    Returns:
        ``ip=<addr>/<prefix>,gw=<gateway>`` or ``ip=dhcp``

    Raises:
        NetworkConfigError: If the combination of settings is invalid
    """
    if dhcp:
        if ip_address or gateway:
            raise NetworkConfigError(
                f"DHCP mode cannot be combined with a static address ({ip_address}) or gateway ({gateway})"
            )
        return "ip=dhcp"

    if not ip_address:
        raise NetworkConfigError("Static network mode requires an IP address")
    if not gateway:
        raise NetworkConfigError(f"Static address {ip_address} requires a gateway")
    return f"ip={ip_address}/{netmask},gw={gateway}"


def build_cloud_init_params(entry: VmPlanEntry, config: CloneConfig) -> Dict[str, Any]:
    """Parameters for ``POST /nodes/{node}/qemu/{vmid}/config`` after a clone."""
    params: Dict[str, Any] = {
        "cores": config.cores,
        "memory": config.memory_mb,
        "ciuser": config.user,
        "ipconfig0": build_ipconfig(entry.ip_address, config.netmask, config.gateway, config.dhcp),
    }
    if config.ssh_public_key:
        # Proxmox expects the key list URL-encoded
        params["sshkeys"] = quote(config.ssh_public_key.strip(), safe="")
    if config.dns_servers:
        params["nameserver"] = " ".join(config.dns_servers)
    if config.search_domain:
        params["searchdomain"] = config.search_domain
    if config.cicustom:
        params["cicustom"] = config.cicustom
    return params


def render_user_data(
    user: str,
    ssh_public_key: str,
    packages: Optional[List[str]] = None,
    hostname: Optional[str] = None,
    search_domain: Optional[str] = None,
) -> str:
    """
    Render a cloud-config document with one sudo user and its key.

    A custom user-data snippet replaces the one Proxmox generates, so the
    VM's hostname has to be set here too; render one document per VM.
    """
    packages = packages if packages is not None else ["qemu-guest-agent"]
    document: Dict[str, Any] = {}
    if hostname:
        document["hostname"] = hostname
        if search_domain:
            document["fqdn"] = f"{hostname}.{search_domain}"
        document["manage_etc_hosts"] = True
    document["users"] = [
        "default",
        {
            "name": user,
            "groups": ["sudo"],
            "shell": "/bin/bash",
            "sudo": SUDO_RULE,
            "lock_passwd": True,
            "ssh_authorized_keys": [ssh_public_key.strip()] if ssh_public_key else [],
        },
    ]
    document["package_update"] = True
    document["packages"] = packages
    if "qemu-guest-agent" in packages:
        document["runcmd"] = [["systemctl", "enable", "--now", "qemu-guest-agent"]]
    return "#cloud-config\n" + yaml.safe_dump(document, sort_keys=False)


def snippet_filename(entry: VmPlanEntry) -> str:
    return f"{entry.name}-user-data.yaml"


class SnippetUploader:
    """Uploads rendered cloud-init snippets to a Proxmox node over SFTP."""

    def __init__(self, config: FleetConfig) -> None:
        self.config = config

    def upload(self, host: str, filename: str, content: str) -> str:
        """
        Write ``content`` to the node's snippet directory.

        Returns:
            The ``cicustom`` reference, e.g. ``user=local:snippets/web-1-user-data.yaml``

        Raises:
            SnippetUploadError: If the SSH connection or the SFTP write fails
        """
        if not self.config.snippet_storage:
            raise ValueError("SNIPPET_STORAGE is not configured")

        remote_path = posixpath.join(self.config.snippet_dir, filename)
        ssh_key = os.path.expanduser(self.config.ssh_key_path)

        logger.info(f"Uploading cloud-init snippet {filename} to {host}:{remote_path}")
        ssh = paramiko.SSHClient()
        ssh.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        try:
            ssh.connect(hostname=host, username=self.config.ssh_user, key_filename=ssh_key)
            sftp = ssh.open_sftp()
            try:
                sftp.putfo(io.BytesIO(content.encode("utf-8")), remote_path)
            finally:
                sftp.close()
        except (OSError, paramiko.SSHException) as e:
            raise SnippetUploadError(host, filename, str(e) or type(e).__name__) from e
        finally:
            ssh.close()

        return f"user={self.config.snippet_storage}:snippets/{filename}"
