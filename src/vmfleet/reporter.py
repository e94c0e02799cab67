"""Summaries and inventory handoff for finished batches."""

from typing import Any, Dict, List, Optional, Tuple

import yaml

from vmfleet.models import BatchReport, CloneStatus


class ReconciliationReporter:
    """Pure views over a BatchReport; nothing here touches the hypervisor."""

    @staticmethod
    def summarize(report: BatchReport) -> Dict[str, List[Tuple[str, Optional[str]]]]:
        """
        Group outcomes by result.

        Returns:
            ``created`` and ``skipped`` as (name, ip) pairs, ``failed`` as
            (name, reason) pairs, each in plan order
        """
        created = [(o.plan_entry.name, o.plan_entry.ip_address) for o in report.created]
        skipped = [(o.plan_entry.name, o.plan_entry.ip_address) for o in report.skipped]
        failed = [
            (o.plan_entry.name, o.error_detail or o.status.value)
            for o in report.failed
        ]
        return {"created": created, "skipped": skipped, "failed": failed}

    @staticmethod
    def to_inventory_fragment(report: BatchReport) -> List[Dict[str, Any]]:
        """Name/address pairs for every VM that is now present."""
        return [
            {
                "name": o.plan_entry.name,
                "address": o.plan_entry.ip_address,
                "status": o.status.value,
            }
            for o in report.outcomes
            if o.status in (CloneStatus.CREATED, CloneStatus.ALREADY_EXISTS)
        ]

    @classmethod
    def render_inventory_yaml(cls, report: BatchReport, group: str = "new_vms") -> str:
        """Render an Ansible-style YAML inventory for downstream configuration.

        DHCP-addressed VMs are listed by name only.
        """
        hosts: Dict[str, Dict[str, Any]] = {}
        for item in cls.to_inventory_fragment(report):
            hosts[item["name"]] = {"ansible_host": item["address"]} if item["address"] else {}
        return yaml.safe_dump({group: {"hosts": hosts}}, sort_keys=False)
