import json
import os
import subprocess
from pathlib import Path

import pytest

import mongodb_backup
from mongodb_backup import CommandError


NODE = 'mongo-2.internal:27017'


class FakeCommands:
    """Stands in for run_command: records every call and answers like the real tools."""

    def __init__(self):
        self.calls = []
        self.identity = NODE
        self.states = ['completed']
        self.snapshots = []
        self.mounted = set()
        self.failures = {}
        self.next_snapshot_id = 'snap-new'

    @staticmethod
    def key(cmd):
        name = os.path.basename(cmd[0])
        if name == 'aws':
            return cmd[2]
        return name

    def keys(self):
        return [self.key(cmd) for cmd in self.calls]

    def __call__(self, cmd, timeout=900):
        cmd = [str(c) for c in cmd]
        self.calls.append(cmd)
        key = self.key(cmd)

        if key in self.failures:
            raise self.failures[key]

        handler = getattr(self, '_' + key.replace('-', '_'), None)
        stdout = handler(cmd) if handler else ''
        return subprocess.CompletedProcess(cmd, 0, stdout=stdout or '', stderr='')

    def _mongosh(self, cmd):
        return json.dumps({'isWritablePrimary': False, 'secondary': True, 'me': self.identity})

    def _mount(self, cmd):
        self.mounted.add(cmd[-1])

    def _umount(self, cmd):
        self.mounted.discard(cmd[-1])

    def _mongodump(self, cmd):
        out = Path(cmd[cmd.index('--out') + 1])
        (out / 'admin').mkdir(parents=True)
        (out / 'oplog.bson').write_bytes(b'')

    def _create_snapshot(self, cmd):
        return json.dumps({'SnapshotId': self.next_snapshot_id, 'State': 'pending'})

    def _describe_snapshots(self, cmd):
        if '--snapshot-ids' in cmd:
            state = self.states.pop(0)
            if isinstance(state, Exception):
                raise state
            return state + '\n'
        return json.dumps(self.snapshots)

    def _delete_snapshot(self, cmd):
        snapshot_id = cmd[cmd.index('--snapshot-id') + 1]
        remaining = [s for s in self.snapshots if s['SnapshotId'] != snapshot_id]
        if len(remaining) == len(self.snapshots):
            raise CommandError(
                'aws exited with status 254',
                returncode=254,
                stderr=f"An error occurred (InvalidSnapshot.NotFound) when calling the "
                       f"DeleteSnapshot operation: The snapshot '{snapshot_id}' does not exist.",
            )
        self.snapshots = remaining


@pytest.fixture
def commands(monkeypatch):
    fake = FakeCommands()
    monkeypatch.setattr(mongodb_backup, 'run_command', fake)
    monkeypatch.setattr(mongodb_backup, 'is_mounted', lambda path: str(path) in fake.mounted)
    return fake


@pytest.fixture
def sleeps(monkeypatch):
    calls = []
    monkeypatch.setattr(mongodb_backup.time, 'sleep', calls.append)
    return calls


@pytest.fixture(autouse=True)
def aws_environment(monkeypatch):
    for name in ('AWS_ACCESS_KEY_ID', 'AWS_SECRET_ACCESS_KEY', 'AWS_DEFAULT_REGION'):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def raw_config(tmp_path):
    return {
        'device': '/dev/nvme1n1',
        'volume_id': 'vol-0123456789abcdef0',
        'mount_path': str(tmp_path / 'mnt'),
        'designated_node': NODE,
        'database': 'admin',
        'auth_database': 'admin',
        'admin_user': 'backup',
        'admin_password': 's3cret',
        'aws_access_key_id': 'AKIATEST',
        'aws_secret_access_key': 'secret-key',
        'aws_region': 'eu-west-1',
        'snapshot_description': 'mongodb-backup-test',
    }


@pytest.fixture
def config(raw_config):
    return mongodb_backup.build_config(raw_config)


@pytest.fixture
def lock_path(tmp_path):
    path = tmp_path / 'backup.lock'
    path.write_text('')
    return path
