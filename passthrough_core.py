#!/usr/bin/env python3

import re
from collections import namedtuple
from enum import Enum


class PassthroughError(Exception):
    """Base class for recoverable errors reported back to the menu."""


class RetrievalFailure(PassthroughError):
    """A VM config or a host device listing could not be obtained at all."""


class InvalidSelection(PassthroughError):
    """The user picked something that is not on offer."""


class NotFound(PassthroughError):
    """A lookup in already captured enumeration data missed."""


class ControllerPrefix(Enum):
    IDE = ('ide', 3, True)
    SATA = ('sata', 5, True)
    SCSI = ('scsi', 30, True)
    VIRTIO = ('virtio', 15, True)
    HOSTPCI = ('hostpci', 15, False)
    USB = ('usb', 14, False)

    def __init__(self, tag, max_index, is_disk):
        self.tag = tag
        self.max_index = max_index
        self.is_disk = is_disk

    def __str__(self):
        return self.tag

    @classmethod
    def parse(cls, text):
        """Maps a tag such as 'scsi' onto its member."""
        for member in cls:
            if member.tag == str(text).strip().lower():
                return member
        raise ValueError(f"Unknown controller type '{text}'. Expected one of: {', '.join(m.tag for m in cls)}")

    @classmethod
    def disk_buses(cls):
        return [m for m in cls if m.is_disk]


PciDevice = namedtuple('PciDevice', ['number', 'bus_id', 'iommu_group', 'description', 'driver'], defaults=('', None))

Disk = namedtuple('Disk', ['number', 'disk_id', 'target', 'description'], defaults=('',))

UsbDevice = namedtuple('UsbDevice', ['number', 'usb_id', 'description'])

# '<tag><n>' at the start of a line; the tag is the whole leading run of letters
_LINE_START_SLOT = re.compile(r'^([A-Za-z]+)(\d+)(?!\w)', re.MULTILINE)
# hostpci only: up to two marker characters may precede the tag
_MARKED_HOSTPCI_SLOT = re.compile(r'^[^\w\s]{1,2}hostpci(\d+)(?!\w)', re.MULTILINE)

_DECIMAL = re.compile(r'[0-9]+')

VMID_MIN = 100
VMID_MAX = 999999999


def _prefix_tag(prefix):
    if isinstance(prefix, ControllerPrefix):
        return prefix.tag
    if not isinstance(prefix, str) or not prefix.strip():
        raise ValueError("Controller prefix must be a non-empty tag")
    return prefix.strip()


def used_indices(config_text, prefix):
    """
    Collects every slot index already taken for a controller prefix.

    Args:
        config_text (str): Raw 'qm config' output, one directive per line.
        prefix (ControllerPrefix or str): Controller tag to search for.

    Returns:
        list: Matched integer indices in the order they appear.
    """
    tag = _prefix_tag(prefix)
    indices = [int(m.group(2)) for m in _LINE_START_SLOT.finditer(config_text) if m.group(1) == tag]
    if tag == ControllerPrefix.HOSTPCI.tag:
        # Command-line style ('-hostpci0', '--hostpci1') and commented entries
        indices.extend(int(m.group(1)) for m in _MARKED_HOSTPCI_SLOT.finditer(config_text))
    return indices


def next_index(config_text, prefix):
    """
    Returns the next unused slot index for a controller prefix.

    A config that could not be retrieved (None) is a RetrievalFailure, never
    slot 0; an empty config means the VM has no such devices yet.
    """
    if config_text is None:
        raise RetrievalFailure(f"No VM configuration available to allocate a '{_prefix_tag(prefix)}' slot")
    indices = used_indices(config_text, prefix)
    if not indices:
        return 0
    return max(indices) + 1


def check_slot_limit(prefix, index):
    """Rejects an index beyond what the platform accepts for this controller."""
    if not isinstance(prefix, ControllerPrefix):
        prefix = ControllerPrefix.parse(prefix)
    if index > prefix.max_index:
        raise InvalidSelection(
            f"All {prefix.tag} slots are in use (next would be {prefix.tag}{index}, maximum is {prefix.tag}{prefix.max_index})")


def resolve_group(enumeration, chosen):
    """
    Replays captured enumeration data to find the chosen device's IOMMU group.

    The group id is the one recorded when the device was discovered; it is
    never recomputed from the bus id.

    Args:
        enumeration (iterable): PciDevice entries or (index, bus_id, group_id) tuples.
        chosen (int): Display index picked by the user.

    Returns:
        tuple: (group_id, list of bus ids sharing that group, in enumeration order)

    Raises:
        NotFound: If no entry carries the chosen display index.
    """
    entries = [(entry[0], entry[1], entry[2]) for entry in enumeration]
    group_id = None
    for number, _bus_id, entry_group in entries:
        if number == chosen:
            group_id = entry_group
            break
    else:
        raise NotFound(f"No PCI device with number {chosen} in the current listing")

    members = [bus_id for _number, bus_id, entry_group in entries if entry_group == group_id]
    return group_id, members


def select_entry(entries, choice):
    """Resolves a typed menu answer to the entry with that display index."""
    text = str(choice).strip()
    if not _DECIMAL.fullmatch(text):
        raise InvalidSelection(f"'{text}' is not a number")
    wanted = int(text)
    for entry in entries:
        if entry.number == wanted:
            return entry
    raise InvalidSelection(f"{wanted} is not in the list, choose a listed number")


def parse_vmid(text):
    text = str(text).strip()
    if not _DECIMAL.fullmatch(text):
        raise InvalidSelection(f"VM id '{text}' must be a number")
    vmid = int(text)
    if not VMID_MIN <= vmid <= VMID_MAX:
        raise InvalidSelection(f"VM id {vmid} is outside the valid range {VMID_MIN}-{VMID_MAX}")
    return vmid
