#!/usr/bin/env python3

import argparse
import copy
import difflib
import sys

import yaml

import host_devices
from passthrough_core import (ControllerPrefix, PassthroughError, check_slot_limit, next_index,
                              parse_vmid, resolve_group, select_entry)
from qm_client import DEFAULT_QM_PATH, QmClient

DEFAULT_CONFIG_FILE = 'passthrough_config.yaml'

DEFAULT_SETTINGS = {
    'qm_path': DEFAULT_QM_PATH,
    'disk': {
        'bus': 'sata',
        'id_prefixes': list(host_devices.DEFAULT_DISK_ID_PREFIXES),
        'by_id_dir': host_devices.DEFAULT_BY_ID_DIR,
    },
    'pci': {
        'iommu_base': host_devices.DEFAULT_IOMMU_BASE,
        'pcie': False,
        'skip_bridges': True,
    },
    'usb': {
        'usb3': False,
        'skip_root_hubs': True,
    },
}

MENU = """
Choose an action:
  1 - Disks
  2 - PCIe devices
  3 - USB devices
  0 - Exit"""


class ConfigError(Exception):
    pass


def load_config(config_file, required=False):
    """
    Loads the YAML settings file.

    Returns:
        dict: Parsed mapping, or {} if the default file does not exist.

    Raises:
        ConfigError: On a missing explicit file, unreadable file or bad YAML.
    """
    try:
        with open(config_file, 'r') as f:
            config = yaml.safe_load(f)
    except FileNotFoundError:
        if required:
            raise ConfigError(f"Configuration file '{config_file}' not found.")
        return {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Failed to parse configuration file '{config_file}': {e}")
    except PermissionError:
        raise ConfigError(f"Permission denied reading config file '{config_file}'.")
    except OSError as e:
        raise ConfigError(f"Could not read config file '{config_file}': {e}")

    if config is None:
        return {}
    if not isinstance(config, dict):
        raise ConfigError(f"Configuration file '{config_file}' is invalid. It must contain a top-level mapping.")
    return config


def merge_settings(config):
    """Overlays a loaded config onto DEFAULT_SETTINGS and validates the result."""
    settings = copy.deepcopy(DEFAULT_SETTINGS)
    for key, value in config.items():
        if key not in settings:
            print(f"Warning: Ignoring unknown configuration key '{key}'", file=sys.stderr)
            continue
        if isinstance(settings[key], dict):
            if not isinstance(value, dict):
                raise ConfigError(f"'{key}' must be a mapping")
            for sub_key, sub_value in value.items():
                if sub_key not in settings[key]:
                    print(f"Warning: Ignoring unknown configuration key '{key}.{sub_key}'", file=sys.stderr)
                    continue
                settings[key][sub_key] = sub_value
        else:
            settings[key] = value

    try:
        bus = ControllerPrefix.parse(settings['disk']['bus'])
    except ValueError as e:
        raise ConfigError(str(e))
    if not bus.is_disk:
        raise ConfigError(f"'disk.bus' must be a disk controller ({', '.join(b.tag for b in ControllerPrefix.disk_buses())}), not '{bus.tag}'")
    settings['disk']['bus'] = bus

    prefixes = settings['disk']['id_prefixes']
    if isinstance(prefixes, str):
        prefixes = [prefixes]
    if not isinstance(prefixes, list) or not all(isinstance(p, str) and p for p in prefixes):
        raise ConfigError("'disk.id_prefixes' must be a list of non-empty strings")
    settings['disk']['id_prefixes'] = prefixes

    for section, flag in (('pci', 'pcie'), ('pci', 'skip_bridges'), ('usb', 'usb3'), ('usb', 'skip_root_hubs')):
        if not isinstance(settings[section][flag], bool):
            raise ConfigError(f"'{section}.{flag}' must be true or false")
    return settings


def ask(message):
    return input(message).strip()


def print_numbered(entries, describe):
    for entry in entries:
        print(f"  {entry.number} - {describe(entry)}")


def describe_disk(disk):
    details = f" [{disk.description}]" if disk.description else ''
    return f"{disk.disk_id} -> {disk.target}{details}"


def describe_pci(device):
    driver = device.driver or 'no driver'
    return f"{device.bus_id} (IOMMU group {device.iommu_group}, {driver}) {device.description}".rstrip()


def describe_usb(device):
    return f"{device.usb_id} {device.description}"


def choose_vm(client, preset_vmid):
    if preset_vmid is not None:
        return parse_vmid(preset_vmid)
    vms = client.list_vms()
    if vms:
        print("Virtual machines on this host:")
        for vmid, name, status in vms:
            print(f"  {vmid} - {name} ({status})")
    return parse_vmid(ask("Enter the target VM id: "))


def format_config_diff(vmid, config_text, new_line):
    """Unified diff between the current config and the config with new_line added."""
    current = config_text if not config_text or config_text.endswith('\n') else config_text + '\n'
    proposed = current + new_line + '\n'
    diff_lines = difflib.unified_diff(
        current.splitlines(keepends=True),
        proposed.splitlines(keepends=True),
        fromfile=f'{vmid}-current.conf',
        tofile=f'{vmid}-proposed.conf',
        lineterm='\n'
    )
    return "".join(diff_lines)


def attach(client, vmid, prefix, value, non_interactive=False, dry_run=False):
    """
    Allocates the next free slot for prefix on a VM and runs 'qm set'.

    Returns:
        bool: True if the command ran and succeeded, False otherwise
              (dry run, user abort or a failed command).
    """
    config_text = client.get_config(vmid)
    index = next_index(config_text, prefix)
    check_slot_limit(prefix, index)

    command = client.build_set_command(vmid, prefix, index, value)
    print(f"\nCommand: {' '.join(command)}")
    diff_result = format_config_diff(vmid, config_text, f"{prefix.tag}{index}: {value}")
    print("-" * 15 + f" Proposed change for VM {vmid} " + "-" * 15)
    for line in diff_result.splitlines():
        print(line)
    print("-" * (30 + len(f" Proposed change for VM {vmid} ")))

    if dry_run:
        print("Dry run requested. No changes will be applied.")
        return False

    if non_interactive:
        print("Non-interactive mode: Assuming Yes.")
        confirm = 'y'
    else:
        try:
            confirm = ask("Apply this change? [y/N]: ").lower()
        except EOFError:
            confirm = 'n'
            print("\nNo input detected, assuming No.", file=sys.stderr)

    if confirm != 'y':
        print(f"Change for VM {vmid} aborted by user.")
        return False

    status, output = client.run(command)
    if output.strip():
        print(output.rstrip())
    if status != 0:
        print(f"Error: '{' '.join(command)}' failed with exit status {status}", file=sys.stderr)
        return False
    print(f"Attached as {prefix.tag}{index} on VM {vmid}.")
    return True


def disk_flow(client, settings, args):
    disks = host_devices.list_disks(settings['disk']['by_id_dir'], settings['disk']['id_prefixes'])
    if not disks:
        print("No disks found.")
        return False
    print("Available disks:")
    print_numbered(disks, describe_disk)
    disk = select_entry(disks, ask("Enter the disk number: "))
    print(f"Selected disk: {disk.disk_id}")
    vmid = choose_vm(client, args.vm)
    value = f"{settings['disk']['by_id_dir'].rstrip('/')}/{disk.disk_id}"
    return attach(client, vmid, settings['disk']['bus'], value, args.yes, args.dry_run)


def pci_flow(client, settings, args):
    devices = host_devices.list_pci_devices(settings['pci']['iommu_base'])
    if not devices:
        print("No PCI devices found in any IOMMU group.")
        return False
    print("Available PCI devices:")
    print_numbered(devices, describe_pci)
    device = select_entry(devices, ask("Enter the PCI device number: "))
    group_id, members = resolve_group(devices, device.number)
    print(f"Device {device.bus_id} is in IOMMU Group {group_id}: {', '.join(members)}")
    if len(members) > 1:
        print("All devices of an IOMMU group are passed through together.")
    if settings['pci']['skip_bridges']:
        members = host_devices.passthrough_members(devices, group_id, members)
        if not members:
            return False
    vmid = choose_vm(client, args.vm)
    value = ';'.join(members)
    if settings['pci']['pcie']:
        value += ',pcie=1'
    return attach(client, vmid, ControllerPrefix.HOSTPCI, value, args.yes, args.dry_run)


def usb_flow(client, settings, args):
    devices = host_devices.list_usb_devices(settings['usb']['skip_root_hubs'])
    if not devices:
        print("No USB devices found.")
        return False
    print("Available USB devices:")
    print_numbered(devices, describe_usb)
    device = select_entry(devices, ask("Enter the USB device number: "))
    print(f"Selected USB device: {describe_usb(device)}")
    vmid = choose_vm(client, args.vm)
    value = f"host={device.usb_id}"
    if settings['usb']['usb3']:
        value += ',usb3=1'
    return attach(client, vmid, ControllerPrefix.USB, value, args.yes, args.dry_run)


FLOWS = {
    '1': disk_flow,
    '2': pci_flow,
    '3': usb_flow,
}


def list_devices(kind, settings):
    """Prints one enumeration for --list."""
    if kind == 'disk':
        print_numbered(host_devices.list_disks(settings['disk']['by_id_dir'], settings['disk']['id_prefixes']), describe_disk)
    elif kind == 'pci':
        print_numbered(host_devices.list_pci_devices(settings['pci']['iommu_base']), describe_pci)
    else:
        print_numbered(host_devices.list_usb_devices(settings['usb']['skip_root_hubs']), describe_usb)


def run_menu(client, settings, args):
    while True:
        print(MENU)
        try:
            choice = ask("Enter your choice (0-3): ")
        except EOFError:
            print("\nExiting.")
            return 0
        if not choice.isdigit():
            print("Invalid input, please enter a number.")
            continue
        if choice == '0':
            print("Exiting.")
            return 0
        flow = FLOWS.get(choice)
        if flow is None:
            print("Invalid choice, please enter a number from 0 to 3.")
            continue
        try:
            flow(client, settings, args)
        except PassthroughError as e:
            print(f"Error: {e}", file=sys.stderr)
        except EOFError:
            print("\nNo input detected, returning to menu.", file=sys.stderr)


def build_parser():
    parser = argparse.ArgumentParser(description="Attach host disks, PCIe and USB devices to Proxmox VE virtual machines with 'qm set'.")
    parser.add_argument('--config', default=None,
                        help=f"Path to the YAML configuration file (default: {DEFAULT_CONFIG_FILE} if present)")
    parser.add_argument('--vm', metavar='VMID',
                        help="Target VM id. If omitted, it is asked for interactively.")
    parser.add_argument('--bus', choices=[b.tag for b in ControllerPrefix.disk_buses()],
                        help="Disk controller type for disk passthrough (overrides 'disk.bus').")
    parser.add_argument('--pcie', action='store_true', default=None,
                        help="Add 'pcie=1' to PCI passthrough entries (q35 machines).")
    parser.add_argument('--usb3', action='store_true', default=None,
                        help="Add 'usb3=1' to USB passthrough entries.")
    parser.add_argument('--yes', '-y', action='store_true',
                        help="Assume yes to confirmation prompts (non-interactive mode).")
    parser.add_argument('--dry-run', action='store_true',
                        help="Show the command and config change but do not run it.")
    parser.add_argument('--list', choices=['disk', 'pci', 'usb'], dest='list_kind',
                        help="Print one device listing and exit.")
    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)

    try:
        config = load_config(args.config or DEFAULT_CONFIG_FILE, required=args.config is not None)
        settings = merge_settings(config)
    except ConfigError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    if args.bus:
        settings['disk']['bus'] = ControllerPrefix.parse(args.bus)
    if args.pcie:
        settings['pci']['pcie'] = True
    if args.usb3:
        settings['usb']['usb3'] = True
    if args.vm is not None:
        try:
            parse_vmid(args.vm)
        except PassthroughError as e:
            print(f"Error: {e}", file=sys.stderr)
            return 1

    if args.list_kind:
        try:
            list_devices(args.list_kind, settings)
        except PassthroughError as e:
            print(f"Error: {e}", file=sys.stderr)
            return 1
        return 0

    print("Proxmox VE Device Passthrough")
    print("=" * 55)
    client = QmClient(settings['qm_path'])
    return run_menu(client, settings, args)


if __name__ == "__main__":
    sys.exit(main())
