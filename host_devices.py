#!/usr/bin/env python3

import os
import re
import subprocess
import sys

from passthrough_core import Disk, PciDevice, RetrievalFailure, UsbDevice

DEFAULT_BY_ID_DIR = "/dev/disk/by-id"
DEFAULT_DISK_ID_PREFIXES = ('ata-', 'nvme-')
DEFAULT_IOMMU_BASE = "/sys/kernel/iommu_groups"
PCI_DEVICES_DIR = "/sys/bus/pci/devices"
USB_ROOT_HUB_VENDOR = '1d6b'

BDF_RE = re.compile(r'^[0-9a-fA-F]{4}:[0-9a-fA-F]{2}:[0-9a-fA-F]{2}\.[0-9a-fA-F]$')
LSUSB_LINE_RE = re.compile(r'^Bus\s+(\d+)\s+Device\s+(\d+):\s+ID\s+([0-9a-fA-F]{4}:[0-9a-fA-F]{4})\s*(.*)$')


def get_disk_description(target):
    """Returns 'SIZE MODEL' from lsblk for a block device, or '' if unavailable."""
    try:
        output = subprocess.check_output(['lsblk', '-dno', 'SIZE,MODEL', target], text=True, errors='replace', stderr=subprocess.DEVNULL)
    except (subprocess.CalledProcessError, OSError):
        print(f"Warning: Could not read size/model for {target} with lsblk", file=sys.stderr)
        return ''
    return ' '.join(output.split())


def list_disks(by_id_dir=DEFAULT_BY_ID_DIR, id_prefixes=DEFAULT_DISK_ID_PREFIXES):
    """
    Lists whole disks under /dev/disk/by-id.

    Partitions ('-part' links) are skipped; only names starting with one of
    id_prefixes are kept.

    Returns:
        list: Disk entries sorted by id, numbered from 1.

    Raises:
        RetrievalFailure: If the by-id directory cannot be read.
    """
    try:
        names = sorted(os.listdir(by_id_dir))
    except OSError as e:
        raise RetrievalFailure(f"Cannot read disk ids from {by_id_dir}: {e}") from e

    disks = []
    for name in names:
        path = os.path.join(by_id_dir, name)
        if not os.path.islink(path):
            continue
        if '-part' in name or not name.startswith(tuple(id_prefixes)):
            continue
        target = os.path.realpath(path)
        disks.append(Disk(len(disks) + 1, name, target, get_disk_description(target)))
    return disks


def get_pci_description(bdf):
    """Get the lspci one-line description for a given PCI BDF."""
    try:
        output = subprocess.check_output(['lspci', '-s', bdf], text=True, errors='replace', stderr=subprocess.DEVNULL).strip()
    except subprocess.CalledProcessError:
        print(f"Warning: Failed to execute lspci for BDF {bdf}", file=sys.stderr)
        return ''
    except OSError as e:
        print(f"Warning: Could not run lspci for BDF {bdf}: {e}", file=sys.stderr)
        return ''
    # 'lspci -s' prints the short address first ('01:00.0 VGA compatible ...')
    parts = output.split(' ', 1)
    return parts[1] if len(parts) == 2 else output


def get_pci_driver(bdf, devices_dir=PCI_DEVICES_DIR):
    driver_link = os.path.join(devices_dir, bdf, "driver")
    try:
        if os.path.islink(driver_link):
            return os.path.basename(os.readlink(driver_link))
    except OSError as e:
        # Ignore if path doesn't exist or permission error, means no driver or inaccessible
        if e.errno != 2 and e.errno != 13:
            print(f"Warning: Error checking driver for {bdf}: {e}", file=sys.stderr)
    return None


def list_pci_devices(iommu_base=DEFAULT_IOMMU_BASE, devices_dir=PCI_DEVICES_DIR):
    """
    Enumerates PCI devices through /sys/kernel/iommu_groups in a single pass.

    Each device's group id is taken from the group directory it was found in
    and stored with the entry; nothing later re-derives it.

    Returns:
        list: PciDevice entries, groups in numeric order, numbered from 1.

    Raises:
        RetrievalFailure: If the IOMMU group directory is missing or unreadable.
    """
    if not os.path.isdir(iommu_base):
        raise RetrievalFailure(f"IOMMU directory not found at {iommu_base}. Is IOMMU enabled?")

    try:
        group_ids = sorted([d for d in os.listdir(iommu_base) if os.path.isdir(os.path.join(iommu_base, d)) and d.isdigit()], key=int)
    except OSError as e:
        raise RetrievalFailure(f"Error reading IOMMU groups directory {iommu_base}: {e}") from e

    devices = []
    for group_id in group_ids:
        group_path = os.path.join(iommu_base, group_id, "devices")
        if not os.path.isdir(group_path):
            continue
        try:
            bdfs = sorted(os.listdir(group_path))
        except OSError as e:
            print(f"Warning: Could not read devices for IOMMU group {group_id}: {e}", file=sys.stderr)
            continue
        for bdf in bdfs:
            if not BDF_RE.match(bdf):
                continue
            devices.append(PciDevice(len(devices) + 1, bdf, group_id,
                                     get_pci_description(bdf), get_pci_driver(bdf, devices_dir)))
    return devices


def passthrough_members(enumeration, group_id, bus_ids):
    """
    Drops PCIe bridges/switches (driver 'pcieport') from a group's members.

    Returns:
        list: Bus ids to hand to the VM, order preserved.
    """
    drivers = {entry.bus_id: entry.driver for entry in enumeration}
    kept = []
    for bus_id in bus_ids:
        if drivers.get(bus_id) == 'pcieport':
            print(f"    - Skipping {bus_id} (driver: pcieport) as it's likely a bridge/switch.")
            continue
        kept.append(bus_id)
    if bus_ids and not kept:
        print(f"Warning: All devices in IOMMU group {group_id} were skipped (likely bridges/switches).", file=sys.stderr)
    return kept


def parse_lsusb(output, skip_root_hubs=True):
    devices = []
    for line in output.splitlines():
        match = LSUSB_LINE_RE.match(line.strip())
        if not match:
            continue
        usb_id = match.group(3).lower()
        if skip_root_hubs and usb_id.startswith(USB_ROOT_HUB_VENDOR + ':'):
            continue
        description = match.group(4).strip() or f"Bus {match.group(1)} Device {match.group(2)}"
        devices.append(UsbDevice(len(devices) + 1, usb_id, description))
    return devices


def list_usb_devices(skip_root_hubs=True):
    """Lists USB devices reported by lsusb, numbered from 1."""
    try:
        output = subprocess.check_output(['lsusb'], text=True, errors='replace', stderr=subprocess.DEVNULL)
    except subprocess.CalledProcessError as e:
        raise RetrievalFailure(f"lsusb failed with exit status {e.returncode}") from e
    except OSError as e:
        raise RetrievalFailure(f"Could not run lsusb: {e}. Is usbutils installed?") from e
    return parse_lsusb(output, skip_root_hubs)
