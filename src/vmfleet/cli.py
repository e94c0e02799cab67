#!/usr/bin/env python3
"""
Command-line interface for fleet provisioning.

    vmfleet plan -f batch.yaml                # Show names, VMIDs and IPs
    vmfleet provision -f batch.yaml --count 3 # Clone, configure and start
"""

import dataclasses
import logging
import signal
from pathlib import Path
from typing import List, Optional

import typer
from rich.console import Console
from rich.table import Table

from vmfleet.config import FleetConfig, load_request
from vmfleet.exceptions import FleetError
from vmfleet.models import BatchReport, BatchRequest, CloneOutcome, CloneStatus, VmPlanEntry
from vmfleet.orchestrator import BatchOrchestrator
from vmfleet.proxmox_api import ProxmoxClient
from vmfleet.reporter import ReconciliationReporter

app = typer.Typer(
    name="vmfleet",
    help="Clone Proxmox templates into fleets of cloud-init VMs",
    add_completion=False,
)
console = Console()

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)8s] %(name)s: %(message)s"
)
logger = logging.getLogger(__name__)

STATUS_ICONS = {
    CloneStatus.CREATED: "✅",
    CloneStatus.ALREADY_EXISTS: "⏭️ ",
    CloneStatus.FAILED: "❌",
    CloneStatus.TIMED_OUT: "⏱️ ",
}

# Shared request options
RequestFile = typer.Option(None, "--file", "-f", help="YAML batch request file")
Name = typer.Option(None, "--name", "-n", help="Base VM name")
Count = typer.Option(None, "--count", help="Number of VMs (default 1)")
Template = typer.Option(None, "--template", "-t", help="Template VMID to clone")
Node = typer.Option(None, "--node", help="Target Proxmox node (default pve)")
StartIp = typer.Option(None, "--start-ip", help="Last octet of the first address (default 150)")
Subnet = typer.Option(None, "--subnet", help="First three octets, e.g. 192.168.1")
Netmask = typer.Option(None, "--netmask", help="Prefix length (default 24)")
Gateway = typer.Option(None, "--gateway", help="Default gateway")
Dns = typer.Option(None, "--dns", help="DNS server (repeatable)")
Memory = typer.Option(None, "--memory", help="Memory in MB (default 4096)")
Cores = typer.Option(None, "--cores", help="CPU cores (default 2)")
User = typer.Option(None, "--user", help="Initial cloud-init user (default ubuntu)")
SshKeyFile = typer.Option(None, "--ssh-key-file", help="Public key to deploy (default SSH_PUBKEY_PATH)")
Dhcp = typer.Option(None, "--dhcp/--static", help="Use DHCP instead of sequential static addresses")
Start = typer.Option(None, "--start/--no-start", help="Start VMs after configuring them")


def build_request_from_options(
    config: FleetConfig,
    request_file: Optional[Path],
    ssh_key_file: Optional[Path],
    **overrides: object,
) -> BatchRequest:
    """Merge file values and CLI overrides into a BatchRequest, filling in the SSH key."""
    if not overrides.get("dns_servers"):
        overrides["dns_servers"] = None
    if ssh_key_file is not None:
        overrides["ssh_public_key"] = ssh_key_file.read_text().strip()

    request = load_request(request_file, **overrides)
    if not request.ssh_public_key:
        try:
            request = dataclasses.replace(request, ssh_public_key=config.read_ssh_pubkey())
        except FileNotFoundError as e:
            logger.warning(f"{e} VMs will be created without an SSH key.")
    return request


def get_orchestrator(config: FleetConfig) -> BatchOrchestrator:
    """Create an orchestrator connected to the configured Proxmox host."""
    try:
        config.validate()
        client = ProxmoxClient(config)
    except (ValueError, FleetError) as e:
        console.print(f"❌ Failed to connect to Proxmox: {e}")
        raise typer.Exit(1)
    return BatchOrchestrator(client, config)


def plan_table(request: BatchRequest, entries: List[VmPlanEntry]) -> Table:
    table = Table(title=f"Plan: {request.count} x template {request.template_id} on {request.node}")
    table.add_column("#", style="dim")
    table.add_column("Name", style="cyan")
    table.add_column("VMID", style="blue")
    table.add_column("IP", style="green")
    for entry in entries:
        table.add_row(str(entry.index + 1), entry.name, str(entry.vmid), entry.ip_address or "dhcp")
    return table


def report_table(report: BatchReport) -> Table:
    table = Table(title="Provisioning Results")
    table.add_column("Name", style="cyan")
    table.add_column("VMID", style="blue")
    table.add_column("IP", style="green")
    table.add_column("Status", style="yellow")
    table.add_column("Time", justify="right")
    table.add_column("Detail")
    for outcome in report.outcomes:
        entry = outcome.plan_entry
        table.add_row(
            entry.name,
            str(entry.vmid),
            entry.ip_address or "dhcp",
            f"{STATUS_ICONS[outcome.status]} {outcome.status.value}",
            f"{outcome.elapsed:.0f}s",
            outcome.error_detail or "",
        )
    return table


@app.command("plan")
def plan_batch(
    request_file: Optional[Path] = RequestFile,
    name: Optional[str] = Name,
    count: Optional[int] = Count,
    template: Optional[int] = Template,
    node: Optional[str] = Node,
    start_ip: Optional[int] = StartIp,
    subnet: Optional[str] = Subnet,
    netmask: Optional[int] = Netmask,
    gateway: Optional[str] = Gateway,
    dns: Optional[List[str]] = Dns,
    memory: Optional[int] = Memory,
    cores: Optional[int] = Cores,
    user: Optional[str] = User,
    ssh_key_file: Optional[Path] = SshKeyFile,
    dhcp: Optional[bool] = Dhcp,
) -> None:
    """Show the names, VMIDs and addresses a batch would use, without cloning."""
    config = FleetConfig.from_environment()
    try:
        request = build_request_from_options(
            config, request_file, ssh_key_file,
            base_name=name, count=count, template_id=template, node=node,
            starting_ip_octet=start_ip, subnet=subnet, netmask=netmask, gateway=gateway,
            dns_servers=dns, memory_mb=memory, cores=cores, default_user=user, dhcp=dhcp,
        )
        orchestrator = get_orchestrator(config)
        entries = orchestrator.plan(request)
    except FleetError as e:
        console.print(f"❌ {e}")
        raise typer.Exit(1)

    console.print(plan_table(request, entries))


@app.command("provision")
def provision_batch(
    request_file: Optional[Path] = RequestFile,
    name: Optional[str] = Name,
    count: Optional[int] = Count,
    template: Optional[int] = Template,
    node: Optional[str] = Node,
    start_ip: Optional[int] = StartIp,
    subnet: Optional[str] = Subnet,
    netmask: Optional[int] = Netmask,
    gateway: Optional[str] = Gateway,
    dns: Optional[List[str]] = Dns,
    memory: Optional[int] = Memory,
    cores: Optional[int] = Cores,
    user: Optional[str] = User,
    ssh_key_file: Optional[Path] = SshKeyFile,
    dhcp: Optional[bool] = Dhcp,
    start: Optional[bool] = Start,
    parallel: Optional[int] = typer.Option(None, "--parallel", "-p", help="Concurrent clones (default FLEET_PARALLELISM)"),
    timeout: Optional[float] = typer.Option(None, "--timeout", help="Clone timeout in seconds (default CLONE_TIMEOUT)"),
    on_conflict: Optional[str] = typer.Option(None, "--on-conflict", help="Existing VM with a requested name: skip or fail"),
    inventory: Optional[Path] = typer.Option(None, "--inventory", "-i", help="Write a YAML inventory of the new VMs"),
    group: str = typer.Option("new_vms", "--group", help="Inventory group name"),
) -> None:
    """Clone, configure and start a batch of VMs (like 'terraform apply' for one fleet)."""
    config = FleetConfig.from_environment()
    if parallel is not None:
        config.parallelism = parallel
    if timeout is not None:
        config.clone_timeout = timeout
    if on_conflict is not None:
        config.name_conflict_policy = on_conflict.strip().lower()

    try:
        request = build_request_from_options(
            config, request_file, ssh_key_file,
            base_name=name, count=count, template_id=template, node=node,
            starting_ip_octet=start_ip, subnet=subnet, netmask=netmask, gateway=gateway,
            dns_servers=dns, memory_mb=memory, cores=cores, default_user=user, dhcp=dhcp,
            auto_start=start,
        )
    except FleetError as e:
        console.print(f"❌ Invalid request: {e}")
        raise typer.Exit(1)

    orchestrator = get_orchestrator(config)

    def _print_outcome(outcome: CloneOutcome) -> None:
        console.print(f"{STATUS_ICONS[outcome.status]} {outcome.plan_entry.name}: {outcome.status.value}")

    orchestrator.on_outcome = _print_outcome

    # Ctrl-C stops new clones but lets running ones finish
    previous_handler = signal.signal(signal.SIGINT, lambda signum, frame: orchestrator.cancel())
    console.print(f"🚀 Provisioning {request.count} VM(s) named {request.base_name!r} on {request.node}")
    try:
        report = orchestrator.run(request)
    except FleetError as e:
        console.print(f"❌ Provisioning aborted: {e}")
        raise typer.Exit(1)
    finally:
        signal.signal(signal.SIGINT, previous_handler)

    console.print(report_table(report))

    summary = ReconciliationReporter.summarize(report)
    console.print(
        f"Created: {len(summary['created'])}  Skipped: {len(summary['skipped'])}  "
        f"Failed: {len(summary['failed'])}"
    )

    if inventory is not None:
        inventory.write_text(ReconciliationReporter.render_inventory_yaml(report, group))
        console.print(f"✅ Inventory written to {inventory}")

    if not report.all_succeeded:
        raise typer.Exit(2)


def main() -> None:
    """Entry point for console script."""
    app()


if __name__ == "__main__":
    main()
