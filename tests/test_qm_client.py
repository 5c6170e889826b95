import subprocess
import sys

import pytest

import qm_client
from passthrough_core import ControllerPrefix, RetrievalFailure
from qm_client import QmClient

QM_LIST = """      VMID NAME                 STATUS     MEM(MB)    BOOTDISK(GB) PID
       100 pfsense              running    2048              16.00 1234
       101 nas                  stopped    8192              32.00 0
"""


class FakeCompleted:
    def __init__(self, returncode, stdout='', stderr=''):
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr


def test_get_config_returns_text(monkeypatch):
    calls = []

    def fake_run(cmd, **kwargs):
        calls.append(cmd)
        return FakeCompleted(0, "memory: 2048\nsata0: local-lvm:vm-100-disk-0\n")

    monkeypatch.setattr(qm_client.subprocess, 'run', fake_run)
    text = QmClient('/usr/sbin/qm').get_config(100)
    assert text.startswith('memory: 2048')
    assert calls == [['/usr/sbin/qm', 'config', '100']]


def test_get_config_for_vm_without_devices_is_not_a_failure(monkeypatch):
    monkeypatch.setattr(qm_client.subprocess, 'run', lambda cmd, **kwargs: FakeCompleted(0, ''))
    assert QmClient().get_config(100) == ''


def test_get_config_unknown_vm(monkeypatch):
    monkeypatch.setattr(qm_client.subprocess, 'run',
                        lambda cmd, **kwargs: FakeCompleted(2, '', "Configuration file 'nodes/pve/qemu-server/999.conf' does not exist\n"))
    with pytest.raises(RetrievalFailure, match='999.conf'):
        QmClient().get_config(999)


def test_get_config_without_qm(monkeypatch):
    def missing(cmd, **kwargs):
        raise FileNotFoundError(2, 'No such file or directory', cmd[0])
    monkeypatch.setattr(qm_client.subprocess, 'run', missing)
    with pytest.raises(RetrievalFailure, match='Proxmox VE host'):
        QmClient('/nonexistent/qm').get_config(100)


def test_list_vms(monkeypatch):
    monkeypatch.setattr(qm_client.subprocess, 'check_output', lambda cmd, **kwargs: QM_LIST)
    assert QmClient().list_vms() == [(100, 'pfsense', 'running'), (101, 'nas', 'stopped')]


def test_list_vms_best_effort(monkeypatch):
    def failing(cmd, **kwargs):
        raise subprocess.CalledProcessError(1, cmd)
    monkeypatch.setattr(qm_client.subprocess, 'check_output', failing)
    assert QmClient().list_vms() == []


def test_build_set_command():
    client = QmClient('/usr/sbin/qm')
    assert client.build_set_command(101, ControllerPrefix.SATA, 3, '/dev/disk/by-id/ata-X') == [
        '/usr/sbin/qm', 'set', '101', '-sata3', '/dev/disk/by-id/ata-X']
    assert client.build_set_command(101, 'hostpci', 0, '0000:01:00.0;0000:01:00.1')[3] == '-hostpci0'


def test_run_captures_status_and_output(monkeypatch):
    captured = {}

    def fake_run(cmd, **kwargs):
        captured.update(kwargs)
        return FakeCompleted(0, 'update VM 101: -sata3 /dev/disk/by-id/ata-X\n')

    monkeypatch.setattr(qm_client.subprocess, 'run', fake_run)
    status, output = QmClient().run(['/usr/sbin/qm', 'set', '101', '-sata3', '/dev/disk/by-id/ata-X'])
    assert status == 0
    assert 'update VM 101' in output
    assert captured['stderr'] is subprocess.STDOUT


def test_run_missing_binary():
    status, output = QmClient().run(['/nonexistent/qm-binary', 'set'])
    assert status == 127
    assert output


def test_run_non_executable_binary(tmp_path):
    qm = tmp_path / 'qm'
    qm.write_text('#!/bin/sh\necho never\n')
    qm.chmod(0o644)
    status, output = QmClient(str(qm)).run([str(qm), 'set', '101'])
    assert status == 126
    assert 'Permission denied' in output


def test_run_replaces_undecodable_output():
    status, output = QmClient().run([sys.executable, '-c', "import sys; sys.stdout.buffer.write(b'caf\\xe9\\n')"])
    assert status == 0
    assert output == 'caf�\n'


def test_get_config_decodes_leniently(monkeypatch):
    captured = {}

    def fake_run(cmd, **kwargs):
        captured.update(kwargs)
        return FakeCompleted(0, 'name: caf�\n')

    monkeypatch.setattr(qm_client.subprocess, 'run', fake_run)
    QmClient().get_config(100)
    assert captured['errors'] == 'replace'
