"""Deterministic allocation of names, VMIDs and addresses for a batch."""

import logging
from typing import AbstractSet, Iterator, List, Optional

from vmfleet.exceptions import OctetOverflowError, VmidExhaustedError
from vmfleet.models import BatchRequest, VmPlanEntry

logger = logging.getLogger(__name__)

MAX_OCTET = 254
MIN_VMID = 100
MAX_VMID = 999_999_999


class ResourceAllocator:
    """Handles VMID, hostname and IP allocation for a batch request.

    The same request and the same set of existing VMIDs always produce the
    same plan, so a re-run of a failed batch targets the same names and
    addresses.
    """

    def __init__(self, vmid_floor: int = MIN_VMID, vmid_ceiling: int = MAX_VMID) -> None:
        self.vmid_floor = max(MIN_VMID, vmid_floor)
        self.vmid_ceiling = min(MAX_VMID, vmid_ceiling)

    @staticmethod
    def entry_name(base_name: str, index: int, count: int) -> str:
        """Single VMs keep the bare name; batches get a 1-based suffix."""
        if count == 1:
            return base_name
        return f"{base_name}-{index + 1}"

    @staticmethod
    def ip_for(request: BatchRequest, index: int) -> Optional[str]:
        if request.dhcp:
            return None
        octet = request.starting_ip_octet + index
        if not 1 <= octet <= MAX_OCTET:
            raise OctetOverflowError(octet, MAX_OCTET)
        return f"{request.subnet}.{octet}"

    def _free_vmids(self, existing_vmids: AbstractSet[int]) -> Iterator[int]:
        candidate = self.vmid_floor
        while candidate <= self.vmid_ceiling:
            if candidate not in existing_vmids:
                yield candidate
            candidate += 1

    def plan(self, request: BatchRequest, existing_vmids: AbstractSet[int]) -> List[VmPlanEntry]:
        """
        Compute the plan for a batch.

        Args:
            request: Validated batch request
            existing_vmids: VMIDs already in use on the cluster

        Returns:
            One VmPlanEntry per requested VM, ordered by index

        Raises:
            OctetOverflowError: If the last address would exceed .254
            VmidExhaustedError: If fewer than ``count`` VMIDs are free
        """
        if not request.dhcp:
            last_octet = request.starting_ip_octet + request.count - 1
            if request.starting_ip_octet < 1:
                raise OctetOverflowError(request.starting_ip_octet, MAX_OCTET)
            if last_octet > MAX_OCTET:
                raise OctetOverflowError(last_octet, MAX_OCTET)

        free = self._free_vmids(existing_vmids)
        entries: List[VmPlanEntry] = []
        for index in range(request.count):
            vmid = next(free, None)
            if vmid is None:
                raise VmidExhaustedError(
                    f"Only {index} free VMIDs in {self.vmid_floor}-{self.vmid_ceiling}, "
                    f"{request.count} requested"
                )
            name = self.entry_name(request.base_name, index, request.count)
            entries.append(
                VmPlanEntry(
                    index=index,
                    name=name,
                    vmid=vmid,
                    ip_address=self.ip_for(request, index),
                    hostname=name,
                )
            )

        logger.info(
            f"Planned {len(entries)} VM(s) for {request.base_name!r}: "
            f"vmids {entries[0].vmid}-{entries[-1].vmid}"
        )
        return entries
