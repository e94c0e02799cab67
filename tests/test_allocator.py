"""Tests for allocator module."""

import pytest

from vmfleet.allocator import ResourceAllocator
from vmfleet.exceptions import AllocationError, OctetOverflowError, VmidExhaustedError
from vmfleet.models import BatchRequest


def make_request(**overrides):
    values = {"base_name": "web", "template_id": 9000}
    values.update(overrides)
    return BatchRequest(**values)


def test_single_vm_keeps_bare_name():
    """A batch of one uses the base name without a suffix."""
    entries = ResourceAllocator().plan(make_request(count=1), set())

    assert len(entries) == 1
    assert entries[0].name == "web"
    assert entries[0].hostname == "web"


def test_batch_names_are_suffixed_from_one():
    entries = ResourceAllocator().plan(make_request(count=3), set())

    assert [e.name for e in entries] == ["web-1", "web-2", "web-3"]
    assert [e.index for e in entries] == [0, 1, 2]


def test_addresses_increase_from_starting_octet():
    entries = ResourceAllocator().plan(make_request(count=4, starting_ip_octet=10, subnet="10.0.5"), set())

    assert [e.ip_address for e in entries] == ["10.0.5.10", "10.0.5.11", "10.0.5.12", "10.0.5.13"]


def test_vmids_skip_existing_first_fit():
    """Free VMIDs are taken in ascending order around used ones."""
    existing = {100, 101, 103, 106}
    entries = ResourceAllocator().plan(make_request(count=4), existing)

    vmids = [e.vmid for e in entries]
    assert vmids == [102, 104, 105, 107]
    assert len(set(vmids)) == 4
    assert not set(vmids) & existing


def test_vmid_floor_respected():
    entries = ResourceAllocator(vmid_floor=500).plan(make_request(count=2), {500})

    assert [e.vmid for e in entries] == [501, 502]


def test_vmid_floor_never_below_proxmox_minimum():
    allocator = ResourceAllocator(vmid_floor=5)

    assert allocator.vmid_floor == 100


def test_octet_overflow():
    """252 + 5 - 1 = 256 runs past .254."""
    with pytest.raises(AllocationError.OctetOverflow) as exc_info:
        ResourceAllocator().plan(make_request(count=5, starting_ip_octet=252), set())

    assert isinstance(exc_info.value, OctetOverflowError)
    assert exc_info.value.octet == 256


def test_octet_254_is_last_usable():
    entries = ResourceAllocator().plan(make_request(count=3, starting_ip_octet=252), set())

    assert entries[-1].ip_address == "192.168.1.254"


def test_octet_zero_rejected():
    with pytest.raises(OctetOverflowError):
        ResourceAllocator().plan(make_request(starting_ip_octet=0), set())


def test_dhcp_plan_has_no_addresses_and_no_octet_limit():
    entries = ResourceAllocator().plan(make_request(count=5, starting_ip_octet=252, dhcp=True), set())

    assert all(e.ip_address is None for e in entries)


def test_vmid_exhausted():
    allocator = ResourceAllocator(vmid_floor=100, vmid_ceiling=104)

    with pytest.raises(AllocationError.VmidExhausted) as exc_info:
        allocator.plan(make_request(count=3), {100, 102, 103})

    assert isinstance(exc_info.value, VmidExhaustedError)


def test_plan_is_deterministic():
    """Identical inputs always produce identical plans."""
    request = make_request(count=5, starting_ip_octet=200)
    existing = {100, 102, 104}
    allocator = ResourceAllocator()

    assert allocator.plan(request, existing) == allocator.plan(request, set(existing))


@pytest.mark.parametrize("count,start", [(1, 150), (10, 1), (54, 200), (100, 100)])
def test_plan_properties(count, start):
    existing = set(range(100, 140, 3))
    entries = ResourceAllocator().plan(make_request(count=count, starting_ip_octet=start), existing)

    assert len(entries) == count
    octets = [int(e.ip_address.rsplit(".", 1)[1]) for e in entries]
    assert octets[0] == start
    assert all(b == a + 1 for a, b in zip(octets, octets[1:]))
    vmids = [e.vmid for e in entries]
    assert len(set(vmids)) == count
    assert not set(vmids) & existing
