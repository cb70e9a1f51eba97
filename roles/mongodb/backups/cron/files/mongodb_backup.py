#!/usr/bin/env python3
"""
MongoDB replica set backup script with EBS snapshot and retention
Loads configuration from YAML file

Usage: mongodb_backup.py --config /path/to/config.yaml [OPTIONS]

OPTIONS:
  --config PATH      Configuration file (required)
  --dry-run          Show what would be done without making changes
  --timeout SECONDS  Overall script timeout (default: disabled)
  --verbose          Log every command before it runs

Workflow:
  validate config -> check designated node -> lock -> mount volume ->
  clean + mongodump -> sync + unmount -> EBS snapshot (wait for completion) ->
  prune old snapshots -> healthcheck ping

Exit codes:
  0 - Success, or this host is not the designated backup node
  1 - Fatal error (backup failed)
  2 - Missing or invalid configuration
  3 - Another backup is already running
"""

import argparse
import enum
import fcntl
import json
import logging
import os
import shutil
import signal
import subprocess
import sys
import time
import traceback
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Iterator, List, Optional, Tuple

import requests
import yaml


DEFAULT_POLL_INTERVAL = 60
DEFAULT_MOUNT_OPTIONS = 'discard,noatime'
HEALTHCHECK_TIMEOUT = 10

# Required key -> purpose, reported verbatim when the key is missing
REQUIRED_FIELDS = {
    'device': 'block device to mount for backup storage',
    'volume_id': 'EBS volume id of the backup device',
    'mount_path': 'local directory where the backup device is mounted',
    'designated_node': 'replica set member (host:port) allowed to run backups',
    'database': 'database used for the replica set identity query',
    'auth_database': 'authentication database for the admin user',
    'admin_user': 'MongoDB admin user for mongodump',
    'admin_password': 'MongoDB admin password for mongodump',
    'aws_access_key_id': 'AWS access key id for snapshot management',
    'aws_secret_access_key': 'AWS secret access key for snapshot management',
    'aws_region': 'AWS region of the backup volume',
    'snapshot_description': 'description tag applied to snapshots and used for retention',
}


class BackupError(Exception):
    """Custom exception for backup errors"""
    pass


class CommandError(BackupError):
    """An external command exited non-zero or timed out"""

    def __init__(self, message: str, returncode: Optional[int] = None, stderr: str = ''):
        super().__init__(message)
        self.returncode = returncode
        self.stderr = stderr or ''


class ConfigError(BackupError):
    """Configuration is missing required keys or holds invalid values"""

    def __init__(self, message: str, missing: Optional[List[str]] = None,
                 invalid: Optional[List[str]] = None):
        super().__init__(message)
        self.missing = list(missing or [])
        self.invalid = list(invalid or [])


class NotDesignatedNode(BackupError):
    """This host is not the replica set member configured to run backups"""

    def __init__(self, identity: str, expected: str):
        super().__init__(f"This node is {identity!r}, backups run on {expected!r}")
        self.identity = identity
        self.expected = expected


class AlreadyRunning(BackupError):
    """Another invocation holds the backup lock"""
    pass


class Outcome(enum.Enum):
    SUCCESS = 'success'
    NOT_DESIGNATED_NODE = 'not-designated-node'
    FAILED = 'failed'
    CONFIG_ERROR = 'config-error'
    ALREADY_RUNNING = 'already-running'

    @property
    def exit_code(self) -> int:
        return EXIT_CODES[self]


EXIT_CODES = {
    Outcome.SUCCESS: 0,
    Outcome.NOT_DESIGNATED_NODE: 0,
    Outcome.FAILED: 1,
    Outcome.CONFIG_ERROR: 2,
    Outcome.ALREADY_RUNNING: 3,
}


logger = logging.getLogger('mongodb-backup')


def setup_logging(verbose: bool = False) -> logging.Logger:
    """Setup logging configuration with unbuffered output"""
    if hasattr(sys.stdout, 'reconfigure'):
        sys.stdout.reconfigure(line_buffering=True)

    level = logging.DEBUG if verbose else logging.INFO
    logger.setLevel(level)

    if not logger.handlers:
        formatter = logging.Formatter(
            '[%(asctime)s] [%(levelname)s] %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(formatter)
        logger.addHandler(handler)

    for handler in logger.handlers:
        handler.setLevel(level)

    return logger


def banner(message: str, level: int = logging.INFO) -> None:
    logger.log(level, "=" * 72)
    logger.log(level, message)
    logger.log(level, "=" * 72)


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class BackupConfig:
    device: str
    volume_id: str
    mount_path: Path
    designated_node: str
    database: str
    auth_database: str
    admin_user: str
    admin_password: str
    aws_access_key_id: str
    aws_secret_access_key: str
    aws_region: str
    snapshot_description: str
    retention_cutoff: Optional[datetime] = None
    healthcheck_url: Optional[str] = None
    dump_dir_name: str = 'dump'
    bin_dir: Optional[Path] = None
    mongo_host: str = 'localhost'
    poll_interval_seconds: int = DEFAULT_POLL_INTERVAL
    snapshot_timeout_minutes: Optional[int] = None
    mount_options: str = DEFAULT_MOUNT_OPTIONS

    @property
    def dump_root(self) -> Path:
        return self.mount_path / self.dump_dir_name

    def tool(self, name: str) -> str:
        """Path of an external binary, from bin_dir when configured"""
        if self.bin_dir:
            return str(self.bin_dir / name)
        return name


def load_config(config_path: str) -> dict:
    """Load configuration from YAML file"""
    try:
        with open(config_path, 'r') as f:
            config = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Failed to load configuration from {config_path}: {e}")

    if config is None:
        config = {}
    if not isinstance(config, dict):
        raise ConfigError(f"Configuration in {config_path} must be a mapping")

    logger.info(f"Configuration loaded from: {config_path}")
    return config


def _is_blank(value) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def parse_timestamp(value) -> datetime:
    """Parse an ISO-8601 date or datetime; naive values are taken as UTC"""
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        # yaml turns bare dates into datetime.date
        parsed = datetime(value.year, value.month, value.day)
    else:
        text = str(value).strip()
        if text.endswith('Z'):
            text = text[:-1] + '+00:00'
        parsed = datetime.fromisoformat(text)

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def resolve_retention_cutoff(raw: dict, now: Optional[datetime] = None) -> Optional[datetime]:
    """Absolute cutoff from retention_cutoff, else from retention_days, else None"""
    cutoff = raw.get('retention_cutoff')
    if not _is_blank(cutoff):
        try:
            return parse_timestamp(cutoff)
        except ValueError as e:
            raise ConfigError(f"Invalid retention_cutoff {cutoff!r}: {e}")

    days = raw.get('retention_days')
    if _is_blank(days):
        return None
    try:
        days = int(days)
    except (TypeError, ValueError):
        raise ConfigError(f"Invalid retention_days {days!r}: expected an integer")
    # Anything below one day would prune the snapshot this run just took
    if days < 1:
        raise ConfigError(f"Invalid retention_days {days}: must be at least 1")

    now = now or datetime.now(timezone.utc)
    return now - timedelta(days=days)


def _optional_int(raw: dict, key: str, default: Optional[int], minimum: int,
                  problems: List[str]) -> Optional[int]:
    value = raw.get(key)
    if _is_blank(value):
        return default
    try:
        number = int(value)
    except (TypeError, ValueError):
        problems.append(f"Invalid {key} {value!r}: expected an integer")
        return default
    if number < minimum:
        problems.append(f"Invalid {key} {number}: must be at least {minimum}")
        return default
    return number


def _dump_dir_problem(name: str) -> Optional[str]:
    """dump_dir_name is wiped recursively, so it must stay a plain child of mount_path"""
    if name in ('.', '..') or '/' in name or os.sep in name:
        return f"Invalid dump_dir_name {name!r}: must be a single directory name inside mount_path"
    return None


def validate_config(raw: dict, now: Optional[datetime] = None) -> dict:
    """
    Check the whole configuration and report every problem at once.

    Returns:
        Parsed optional values (poll interval, snapshot timeout, retention
        cutoff, dump directory name) ready for BackupConfig
    """
    missing = [key for key in REQUIRED_FIELDS if _is_blank(raw.get(key))]
    for key in missing:
        logger.error(f"Missing configuration '{key}': {REQUIRED_FIELDS[key]}")

    problems = []
    values = {
        'poll_interval_seconds': _optional_int(
            raw, 'poll_interval_seconds', DEFAULT_POLL_INTERVAL, 0, problems),
        'snapshot_timeout_minutes': _optional_int(
            raw, 'snapshot_timeout_minutes', None, 1, problems),
        'dump_dir_name': str(raw.get('dump_dir_name') or 'dump'),
    }

    try:
        values['retention_cutoff'] = resolve_retention_cutoff(raw, now=now)
    except ConfigError as e:
        problems.append(str(e))

    dump_dir_problem = _dump_dir_problem(values['dump_dir_name'])
    if dump_dir_problem:
        problems.append(dump_dir_problem)

    for problem in problems:
        logger.error(problem)

    if missing or problems:
        summary = []
        if missing:
            summary.append(f"{len(missing)} required configuration value(s) missing: {', '.join(missing)}")
        summary.extend(problems)
        raise ConfigError('; '.join(summary), missing=missing, invalid=problems)

    return values


def build_config(raw: dict, now: Optional[datetime] = None) -> BackupConfig:
    """Validate raw YAML values and freeze them into a BackupConfig"""
    values = validate_config(raw, now=now)

    bin_dir = raw.get('bin_dir')
    healthcheck_url = raw.get('healthcheck_url')

    return BackupConfig(
        device=str(raw['device']),
        volume_id=str(raw['volume_id']),
        mount_path=Path(raw['mount_path']),
        designated_node=str(raw['designated_node']),
        database=str(raw['database']),
        auth_database=str(raw['auth_database']),
        admin_user=str(raw['admin_user']),
        admin_password=str(raw['admin_password']),
        aws_access_key_id=str(raw['aws_access_key_id']),
        aws_secret_access_key=str(raw['aws_secret_access_key']),
        aws_region=str(raw['aws_region']),
        snapshot_description=str(raw['snapshot_description']),
        retention_cutoff=values['retention_cutoff'],
        healthcheck_url=None if _is_blank(healthcheck_url) else str(healthcheck_url),
        dump_dir_name=values['dump_dir_name'],
        bin_dir=None if _is_blank(bin_dir) else Path(bin_dir),
        mongo_host=str(raw.get('mongo_host') or 'localhost'),
        poll_interval_seconds=values['poll_interval_seconds'],
        snapshot_timeout_minutes=values['snapshot_timeout_minutes'],
        mount_options=str(raw.get('mount_options') or DEFAULT_MOUNT_OPTIONS),
    )


def export_aws_credentials(config: BackupConfig) -> None:
    """Expose AWS credentials to the aws CLI through the environment"""
    os.environ['AWS_ACCESS_KEY_ID'] = config.aws_access_key_id
    os.environ['AWS_SECRET_ACCESS_KEY'] = config.aws_secret_access_key
    os.environ['AWS_DEFAULT_REGION'] = config.aws_region


# ---------------------------------------------------------------------------
# Command execution
# ---------------------------------------------------------------------------

def _printable(cmd: list) -> str:
    parts = []
    hide_next = False
    for part in cmd:
        parts.append('****' if hide_next else str(part))
        hide_next = str(part) == '--password'
    return ' '.join(parts)


def run_command(cmd: list, timeout: Optional[int] = 900) -> subprocess.CompletedProcess:
    """Run a command and return the result, raising CommandError on failure"""
    printable = _printable(cmd)
    logger.debug(f"Running command: {printable}")
    sys.stdout.flush()

    try:
        return subprocess.run(
            [str(c) for c in cmd],
            check=True,
            capture_output=True,
            text=True,
            timeout=timeout
        )
    except subprocess.TimeoutExpired:
        logger.error(f"Command timed out after {timeout}s: {printable}")
        raise CommandError(f"Command timed out after {timeout}s: {cmd[0]}")
    except subprocess.CalledProcessError as e:
        logger.error(f"Command failed: {printable}")
        logger.error(f"Exit code: {e.returncode}")
        if e.stderr:
            logger.error(f"Error output: {e.stderr.strip()}")
        raise CommandError(
            f"{cmd[0]} exited with status {e.returncode}",
            returncode=e.returncode,
            stderr=e.stderr,
        )
    except FileNotFoundError:
        logger.error(f"Command not found: {cmd[0]}")
        raise CommandError(f"Command not found: {cmd[0]}")


# ---------------------------------------------------------------------------
# Designated node check
# ---------------------------------------------------------------------------

def normalize_identity(value: str) -> str:
    return str(value).strip().strip('"\'').strip()


def query_node_identity(config: BackupConfig) -> str:
    """Return the host:port this member reports as its own replica set address"""
    result = run_command([
        config.tool('mongosh'),
        f"mongodb://{config.mongo_host}/{config.database}",
        '--quiet',
        '--json=relaxed',
        '--username', config.admin_user,
        '--password', config.admin_password,
        '--authenticationDatabase', config.auth_database,
        '--eval', 'db.hello()',
    ], timeout=120)

    try:
        response = json.loads(result.stdout)
    except json.JSONDecodeError as e:
        raise BackupError(f"Unreadable response from hello command: {e}")

    identity = response.get('me') if isinstance(response, dict) else None
    if not identity:
        raise BackupError("hello response has no 'me' field (is this member part of a replica set?)")
    return normalize_identity(identity)


def check_designated_node(config: BackupConfig) -> None:
    """Raise NotDesignatedNode unless this member is the configured backup node"""
    logger.info("Checking replica set identity...")
    identity = query_node_identity(config)
    expected = normalize_identity(config.designated_node)

    if identity != expected:
        raise NotDesignatedNode(identity, expected)
    logger.info(f"✓ This node ({identity}) is the designated backup node")


# ---------------------------------------------------------------------------
# Locking
# ---------------------------------------------------------------------------

@contextmanager
def exclusion_lock(lock_path: Path) -> Iterator[None]:
    """
    Hold an exclusive flock on lock_path for the duration of the block.

    Acquisition never waits: a held lock raises AlreadyRunning immediately.
    The kernel drops the lock when the descriptor is closed, which includes
    the process being killed.
    """
    handle = open(lock_path, 'r')
    try:
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            raise AlreadyRunning(f"Another backup is already running (lock held on {lock_path})")
        logger.info(f"✓ Acquired backup lock: {lock_path}")
        yield
    finally:
        handle.close()


# ---------------------------------------------------------------------------
# Volume handling
# ---------------------------------------------------------------------------

def is_mounted(path: Path) -> bool:
    return os.path.ismount(path)


def mount_volume(config: BackupConfig, dry_run: bool = False) -> bool:
    """Mount the backup device unless it is already mounted; True if a mount happened"""
    mount_path = config.mount_path

    if dry_run:
        logger.info(f"[DRY-RUN] Would mount {config.device} at {mount_path} ({config.mount_options})")
        return False

    mount_path.mkdir(parents=True, exist_ok=True)
    if is_mounted(mount_path):
        logger.info(f"{mount_path} is already mounted, skipping mount")
        return False

    logger.info(f"Mounting {config.device} at {mount_path}...")
    run_command(['mount', '-o', config.mount_options, config.device, mount_path], timeout=120)
    logger.info(f"✓ Mounted {config.device}")
    return True


def clean_dump_root(config: BackupConfig, dry_run: bool = False) -> Path:
    """Remove the previous dump and leave an empty dump directory behind"""
    dump_root = config.dump_root

    if dry_run:
        logger.info(f"[DRY-RUN] Would remove previous dump under {dump_root}")
        return dump_root

    logger.info(f"Removing previous dump under {dump_root}...")
    try:
        if dump_root.exists():
            shutil.rmtree(dump_root)
        dump_root.mkdir(parents=True)
    except OSError as e:
        raise BackupError(f"Failed to clean {dump_root}: {e}")

    logger.info(f"✓ {dump_root} is empty")
    return dump_root


def unmount_volume(config: BackupConfig, dry_run: bool = False) -> None:
    """Flush pending writes and unmount the backup device"""
    if dry_run:
        logger.info(f"[DRY-RUN] Would sync and unmount {config.mount_path}")
        return

    logger.info("Flushing filesystem buffers...")
    run_command(['sync'], timeout=None)
    logger.info(f"Unmounting {config.mount_path}...")
    run_command(['umount', config.mount_path], timeout=300)
    logger.info(f"✓ Unmounted {config.mount_path}")


# ---------------------------------------------------------------------------
# Dump
# ---------------------------------------------------------------------------

def archive_name(now: Optional[datetime] = None) -> str:
    now = now or datetime.now(timezone.utc)
    return now.strftime('%Y-%m-%d_%H-%M-%S')


def run_dump(config: BackupConfig, archive: str, dry_run: bool = False) -> Path:
    """Run an oplog-consistent, gzip-compressed mongodump into dump_root/archive"""
    output_dir = config.dump_root / archive

    if dry_run:
        logger.info(f"[DRY-RUN] Would run mongodump --oplog --gzip into {output_dir}")
        return output_dir

    logger.info(f"Starting mongodump into {output_dir}...")
    run_command([
        config.tool('mongodump'),
        '--host', config.mongo_host,
        '--oplog',
        '--gzip',
        '--username', config.admin_user,
        '--password', config.admin_password,
        '--authenticationDatabase', config.auth_database,
        '--out', output_dir,
    ], timeout=None)
    logger.info(f"✓ Dump completed: {output_dir}")
    return output_dir


# ---------------------------------------------------------------------------
# Snapshots
# ---------------------------------------------------------------------------

class Poller:
    """Call a probe at a fixed interval until it reports completion."""

    def __init__(self, interval: float, max_duration: Optional[float] = None,
                 sleep: Optional[Callable[[float], None]] = None,
                 clock: Optional[Callable[[], float]] = None,
                 transient: Tuple[type, ...] = (CommandError,)):
        self.interval = interval
        self.max_duration = max_duration
        self.sleep = sleep or time.sleep
        self.clock = clock or time.monotonic
        self.transient = transient

    def wait(self, probe: Callable[[], bool], description: str) -> int:
        """Sleep, probe, repeat; returns the number of probes made"""
        started = self.clock()
        attempts = 0
        while True:
            self.sleep(self.interval)
            attempts += 1
            try:
                done = probe()
            except self.transient as e:
                logger.warning(f"Checking {description} failed (attempt {attempts}), will retry: {e}")
                done = False

            if done:
                return attempts

            if self.max_duration is not None and self.clock() - started >= self.max_duration:
                raise BackupError(
                    f"Gave up waiting for {description} after {attempts} checks "
                    f"({self.max_duration:.0f}s)"
                )


def create_snapshot(config: BackupConfig) -> str:
    """Request an EBS snapshot of the backup volume and return its id"""
    logger.info(f"Creating snapshot of {config.volume_id} ({config.snapshot_description})...")
    result = run_command([
        config.tool('aws'), 'ec2', 'create-snapshot',
        '--volume-id', config.volume_id,
        '--description', config.snapshot_description,
        '--output', 'json'
    ], timeout=300)

    try:
        snapshot_id = json.loads(result.stdout)['SnapshotId']
    except (json.JSONDecodeError, KeyError, TypeError) as e:
        raise BackupError(f"create-snapshot returned no snapshot id: {e}")

    logger.info(f"✓ Snapshot requested: {snapshot_id}")
    return snapshot_id


def describe_snapshot_state(config: BackupConfig, snapshot_id: str) -> str:
    result = run_command([
        config.tool('aws'), 'ec2', 'describe-snapshots',
        '--snapshot-ids', snapshot_id,
        '--query', 'Snapshots[0].State',
        '--output', 'text'
    ], timeout=120)
    return result.stdout.strip()


def wait_for_snapshot(config: BackupConfig, snapshot_id: str,
                      sleep: Optional[Callable[[float], None]] = None) -> int:
    """
    Block until the snapshot reaches the 'completed' state.

    Failed status queries are retried on the next tick. A snapshot in the
    'error' state, or one still pending after snapshot_timeout_minutes, fails
    the backup. Without snapshot_timeout_minutes the wait is unbounded.

    Returns:
        Number of status queries made
    """
    def probe() -> bool:
        state = describe_snapshot_state(config, snapshot_id)
        logger.info(f"Snapshot {snapshot_id} state: {state or 'unknown'}")
        if state == 'error':
            raise BackupError(f"Snapshot {snapshot_id} entered the 'error' state")
        return state == 'completed'

    max_duration = None
    if config.snapshot_timeout_minutes:
        max_duration = config.snapshot_timeout_minutes * 60

    logger.info(f"Waiting for snapshot {snapshot_id} (checking every {config.poll_interval_seconds}s)...")
    poller = Poller(config.poll_interval_seconds, max_duration=max_duration, sleep=sleep)
    attempts = poller.wait(probe, f"snapshot {snapshot_id}")
    logger.info(f"✓ Snapshot {snapshot_id} completed after {attempts} check(s)")
    return attempts


def list_tagged_snapshots(config: BackupConfig) -> List[dict]:
    """All snapshots owned by this account carrying the job's description"""
    filters = json.dumps([{'Name': 'description', 'Values': [config.snapshot_description]}])
    result = run_command([
        config.tool('aws'), 'ec2', 'describe-snapshots',
        '--owner-ids', 'self',
        '--filters', filters,
        '--query', 'Snapshots[].{SnapshotId:SnapshotId,StartTime:StartTime}',
        '--output', 'json'
    ], timeout=300)

    try:
        snapshots = json.loads(result.stdout) or []
    except json.JSONDecodeError as e:
        raise BackupError(f"Unreadable describe-snapshots output: {e}")
    return snapshots


def delete_snapshot(config: BackupConfig, snapshot_id: str) -> None:
    run_command([
        config.tool('aws'), 'ec2', 'delete-snapshot',
        '--snapshot-id', snapshot_id
    ], timeout=120)


def prune_snapshots(config: BackupConfig, dry_run: bool = False) -> List[str]:
    """
    Delete tagged snapshots created strictly before the retention cutoff.

    Each deletion is independent: a snapshot that is already gone counts as
    pruned, and other failures are collected and raised after every eligible
    snapshot has been tried.

    Returns:
        Ids of the snapshots deleted (or that would be deleted in dry-run)
    """
    cutoff = config.retention_cutoff
    if cutoff is None:
        logger.info("No retention cutoff configured, skipping snapshot cleanup")
        return []

    logger.info(f"Cleaning up snapshots '{config.snapshot_description}' older than {cutoff.isoformat()}...")
    pruned = []
    failed = []

    for snapshot in list_tagged_snapshots(config):
        snapshot_id = snapshot.get('SnapshotId')
        try:
            started = parse_timestamp(snapshot.get('StartTime'))
        except (TypeError, ValueError):
            logger.warning(f"Skipping snapshot {snapshot_id}: unreadable StartTime {snapshot.get('StartTime')!r}")
            continue

        if started >= cutoff:
            continue

        if dry_run:
            logger.info(f"[DRY-RUN] Would delete snapshot {snapshot_id} ({started.isoformat()})")
            pruned.append(snapshot_id)
            continue

        logger.info(f"Deleting old snapshot: {snapshot_id} ({started.isoformat()})")
        try:
            delete_snapshot(config, snapshot_id)
        except CommandError as e:
            if 'InvalidSnapshot.NotFound' in e.stderr:
                logger.info(f"Snapshot {snapshot_id} is already gone")
                pruned.append(snapshot_id)
            else:
                failed.append(snapshot_id)
            continue
        pruned.append(snapshot_id)

    logger.info(f"Deleted {len(pruned)} old snapshot(s)")
    if failed:
        raise BackupError(f"Failed to delete snapshot(s): {', '.join(failed)}")
    return pruned


# ---------------------------------------------------------------------------
# Healthcheck
# ---------------------------------------------------------------------------

def send_healthcheck_ping(config: BackupConfig, dry_run: bool = False) -> bool:
    """Send healthcheck ping if configured; failures are logged, never raised"""
    if not config.healthcheck_url:
        return False

    if dry_run:
        logger.info(f"[DRY-RUN] Would ping {config.healthcheck_url}")
        return False

    logger.info("Sending healthcheck ping...")
    try:
        response = requests.get(config.healthcheck_url, timeout=HEALTHCHECK_TIMEOUT)
        response.raise_for_status()
    except requests.RequestException as e:
        logger.warning(f"Healthcheck ping failed (non-fatal): {e}")
        return False

    logger.info("✓ Healthcheck ping successful")
    return True


# ---------------------------------------------------------------------------
# Workflow
# ---------------------------------------------------------------------------

@dataclass
class BackupRun:
    """Everything one invocation of the workflow produces along the way"""
    config: BackupConfig
    dry_run: bool = False
    archive: str = field(default_factory=archive_name)
    dump_path: Optional[Path] = None
    snapshot_id: Optional[str] = None
    poll_count: int = 0
    pruned: List[str] = field(default_factory=list)
    notified: bool = False
    failed_stage: Optional[str] = None


def _stage_mount(run: BackupRun) -> None:
    mount_volume(run.config, dry_run=run.dry_run)


def _stage_clean(run: BackupRun) -> None:
    clean_dump_root(run.config, dry_run=run.dry_run)


def _stage_dump(run: BackupRun) -> None:
    run.dump_path = run_dump(run.config, run.archive, dry_run=run.dry_run)


def _stage_unmount(run: BackupRun) -> None:
    unmount_volume(run.config, dry_run=run.dry_run)


def _stage_snapshot(run: BackupRun) -> None:
    if run.dry_run:
        logger.info(f"[DRY-RUN] Would snapshot {run.config.volume_id} and wait for completion")
        return
    run.snapshot_id = create_snapshot(run.config)
    run.poll_count = wait_for_snapshot(run.config, run.snapshot_id)


def _stage_prune(run: BackupRun) -> None:
    run.pruned = prune_snapshots(run.config, dry_run=run.dry_run)


def _stage_notify(run: BackupRun) -> None:
    run.notified = send_healthcheck_ping(run.config, dry_run=run.dry_run)


# Order is load-bearing: the volume must be unmounted before it is snapshotted
STAGES: List[Tuple[str, Callable[[BackupRun], None]]] = [
    ('mount', _stage_mount),
    ('clean', _stage_clean),
    ('dump', _stage_dump),
    ('unmount', _stage_unmount),
    ('snapshot', _stage_snapshot),
    ('prune', _stage_prune),
    ('notify', _stage_notify),
]


def run_stages(run: BackupRun) -> None:
    """Run every stage in order, stopping at the first one that raises"""
    for name, stage in STAGES:
        logger.info(f"--- {name} ---")
        try:
            stage(run)
        except Exception:
            run.failed_stage = name
            raise


def run_backup(raw_config: dict, lock_path: Optional[Path] = None, dry_run: bool = False) -> Outcome:
    """
    Run the whole backup workflow and report how it ended.

    Args:
        raw_config: Configuration mapping as loaded from YAML
        lock_path: File to lock against concurrent runs (default: this script)
        dry_run: Log mutating actions instead of performing them

    Returns:
        The Outcome of the run; nothing is raised for expected failures
    """
    try:
        config = build_config(raw_config)
    except ConfigError as e:
        banner(f"Configuration error: {e}", logging.ERROR)
        return Outcome.CONFIG_ERROR

    export_aws_credentials(config)
    lock_path = lock_path or Path(__file__).resolve()
    run = BackupRun(config=config, dry_run=dry_run)

    banner("MongoDB Backup Starting")
    logger.info(f"Designated node: {config.designated_node}")
    logger.info(f"Device: {config.device} -> {config.mount_path}")
    logger.info(f"Volume: {config.volume_id} ({config.aws_region})")
    logger.info(f"Snapshot description: {config.snapshot_description}")
    logger.info(f"Archive: {run.archive}")
    logger.info(f"Dry run: {dry_run}")

    try:
        check_designated_node(config)
        with exclusion_lock(lock_path):
            run_stages(run)
    except NotDesignatedNode as e:
        banner(f"Not the designated backup node, nothing to do: {e}")
        return Outcome.NOT_DESIGNATED_NODE
    except AlreadyRunning as e:
        banner(f"MongoDB Backup SKIPPED: {e}", logging.ERROR)
        return Outcome.ALREADY_RUNNING
    except BackupError as e:
        stage = f" during {run.failed_stage}" if run.failed_stage else ''
        banner(f"MongoDB Backup FAILED{stage}: {e}", logging.ERROR)
        return Outcome.FAILED
    except Exception as e:
        logger.error("=" * 72)
        logger.error(f"Unexpected error: {e}")
        logger.error(f"Type: {type(e).__name__}")
        logger.error("Stack trace:")
        for line in traceback.format_exc().split('\n'):
            if line:
                logger.error(line)
        logger.error("=" * 72)
        return Outcome.FAILED

    summary = f"Snapshot: {run.snapshot_id}" if run.snapshot_id else "No snapshot taken (dry run)"
    banner(f"MongoDB Backup Completed Successfully. {summary}")
    return Outcome.SUCCESS


def main(argv: Optional[List[str]] = None) -> int:
    """Parse arguments, run the backup, return the process exit code"""
    parser = argparse.ArgumentParser(
        description='MongoDB replica set backup script',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__
    )
    parser.add_argument('--config', required=True,
                        help='Path to configuration YAML file')
    parser.add_argument('--dry-run', action='store_true',
                        help='Show what would be done without making changes')
    parser.add_argument('--timeout', type=int, default=0,
                        help='Overall script timeout in seconds (default: 0 = disabled)')
    parser.add_argument('--verbose', action='store_true',
                        help='Enable debug logging')

    args = parser.parse_args(argv)
    setup_logging(args.verbose)

    if args.timeout > 0:
        def timeout_handler(signum, frame):
            banner(f"SCRIPT TIMEOUT: Exceeded {args.timeout}s overall execution time", logging.ERROR)
            sys.stdout.flush()
            sys.exit(Outcome.FAILED.exit_code)

        signal.signal(signal.SIGALRM, timeout_handler)
        signal.alarm(args.timeout)

    try:
        raw_config = load_config(args.config)
    except ConfigError as e:
        logger.error(str(e))
        return Outcome.CONFIG_ERROR.exit_code

    outcome = run_backup(raw_config, dry_run=args.dry_run)
    logger.info(f"Outcome: {outcome.value}")
    return outcome.exit_code


if __name__ == '__main__':
    sys.exit(main())
