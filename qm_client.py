#!/usr/bin/env python3

import subprocess

from passthrough_core import ControllerPrefix, RetrievalFailure

DEFAULT_QM_PATH = "/usr/sbin/qm"


class QmClient:
    """Thin wrapper around the Proxmox 'qm' command."""

    def __init__(self, qm_path=DEFAULT_QM_PATH):
        self.qm_path = qm_path

    def get_config(self, vmid):
        """
        Returns the raw 'qm config' text for a VM.

        Raises:
            RetrievalFailure: If the VM does not exist or qm cannot be run.
                A VM without devices returns its (device-less) config instead.
        """
        try:
            result = subprocess.run([self.qm_path, 'config', str(vmid)],
                                    stdout=subprocess.PIPE, stderr=subprocess.PIPE, text=True, errors='replace')
        except FileNotFoundError as e:
            raise RetrievalFailure(f"'{self.qm_path}' not present. Is this a Proxmox VE host?") from e
        except OSError as e:
            raise RetrievalFailure(f"Could not run '{self.qm_path}': {e}") from e
        if result.returncode != 0:
            detail = result.stderr.strip() or f"exit status {result.returncode}"
            raise RetrievalFailure(f"Cannot read configuration of VM {vmid}: {detail}")
        return result.stdout

    def list_vms(self):
        """
        Parses 'qm list' into (vmid, name, status) tuples.

        Best effort: returns an empty list when qm is unavailable.
        """
        try:
            output = subprocess.check_output([self.qm_path, 'list'], text=True, errors='replace', stderr=subprocess.DEVNULL)
        except (subprocess.CalledProcessError, OSError):
            return []
        vms = []
        for line in output.splitlines()[1:]:
            fields = line.split()
            if len(fields) >= 3 and fields[0].isdecimal():
                vms.append((int(fields[0]), fields[1], fields[2]))
        return vms

    def build_set_command(self, vmid, prefix, index, value):
        if not isinstance(prefix, ControllerPrefix):
            prefix = ControllerPrefix.parse(prefix)
        return [self.qm_path, 'set', str(vmid), f'-{prefix.tag}{index}', value]

    def run(self, argv):
        """Executes a command and returns (exit status, combined stdout/stderr)."""
        try:
            result = subprocess.run(argv, stdout=subprocess.PIPE, stderr=subprocess.STDOUT, text=True, errors='replace')
        except FileNotFoundError as e:
            return 127, str(e)
        except OSError as e:
            # not executable, or exec failed for another reason
            return 126, str(e)
        return result.returncode, result.stdout
