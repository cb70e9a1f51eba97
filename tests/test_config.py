import os
from datetime import date, datetime, timedelta, timezone
from pathlib import Path

import pytest

from mongodb_backup import (
    DEFAULT_POLL_INTERVAL,
    REQUIRED_FIELDS,
    ConfigError,
    build_config,
    export_aws_credentials,
    load_config,
    parse_timestamp,
    resolve_retention_cutoff,
    validate_config,
)


def test_validate_config_reports_every_missing_field(raw_config, caplog):
    del raw_config['device']
    raw_config['volume_id'] = ''
    raw_config['admin_password'] = '   '
    raw_config['aws_region'] = None

    with pytest.raises(ConfigError) as excinfo:
        validate_config(raw_config)

    assert excinfo.value.missing == ['device', 'volume_id', 'admin_password', 'aws_region']
    for key in excinfo.value.missing:
        assert f"Missing configuration '{key}': {REQUIRED_FIELDS[key]}" in caplog.text


def test_validate_config_with_empty_mapping_lists_all_required_fields():
    with pytest.raises(ConfigError) as excinfo:
        validate_config({})

    assert excinfo.value.missing == list(REQUIRED_FIELDS)


def test_build_config_applies_defaults(raw_config, tmp_path):
    config = build_config(raw_config)

    assert config.mount_path == tmp_path / 'mnt'
    assert config.dump_root == tmp_path / 'mnt' / 'dump'
    assert config.poll_interval_seconds == DEFAULT_POLL_INTERVAL
    assert config.mount_options == 'discard,noatime'
    assert config.mongo_host == 'localhost'
    assert config.retention_cutoff is None
    assert config.healthcheck_url is None
    assert config.snapshot_timeout_minutes is None
    assert config.tool('aws') == 'aws'


def test_build_config_is_immutable(config):
    with pytest.raises(AttributeError):
        config.device = '/dev/sdz'


def test_build_config_uses_bin_dir_for_tools(raw_config):
    raw_config['bin_dir'] = '/opt/mongo/bin'

    config = build_config(raw_config)

    assert config.tool('mongodump') == str(Path('/opt/mongo/bin') / 'mongodump')


def test_build_config_rejects_non_numeric_interval(raw_config):
    raw_config['poll_interval_seconds'] = 'soon'

    with pytest.raises(ConfigError, match='poll_interval_seconds'):
        build_config(raw_config)


def test_retention_cutoff_takes_precedence_over_days():
    cutoff = resolve_retention_cutoff({'retention_cutoff': '2026-01-01', 'retention_days': 3})

    assert cutoff == datetime(2026, 1, 1, tzinfo=timezone.utc)


def test_retention_days_is_relative_to_now():
    now = datetime(2026, 10, 19, 3, 0, tzinfo=timezone.utc)

    cutoff = resolve_retention_cutoff({'retention_days': '7'}, now=now)

    assert cutoff == now - timedelta(days=7)


def test_retention_cutoff_invalid_value_is_config_error():
    with pytest.raises(ConfigError, match='retention_cutoff'):
        resolve_retention_cutoff({'retention_cutoff': 'last tuesday'})


@pytest.mark.parametrize('value, expected', [
    ('2026-05-01T12:30:00.000Z', datetime(2026, 5, 1, 12, 30, tzinfo=timezone.utc)),
    ('2026-05-01T12:30:00+02:00', datetime(2026, 5, 1, 10, 30, tzinfo=timezone.utc)),
    ('2026-05-01', datetime(2026, 5, 1, tzinfo=timezone.utc)),
    (date(2026, 5, 1), datetime(2026, 5, 1, tzinfo=timezone.utc)),
])
def test_parse_timestamp_normalizes_to_aware_datetimes(value, expected):
    assert parse_timestamp(value) == expected


def test_load_config_reads_yaml_mapping(tmp_path):
    path = tmp_path / 'config.yaml'
    path.write_text("device: /dev/nvme1n1\nretention_cutoff: 2026-01-01\n")

    config = load_config(str(path))

    assert config == {'device': '/dev/nvme1n1', 'retention_cutoff': date(2026, 1, 1)}


def test_load_config_missing_file_is_config_error(tmp_path):
    with pytest.raises(ConfigError, match='Failed to load configuration'):
        load_config(str(tmp_path / 'missing.yaml'))


def test_load_config_rejects_non_mapping(tmp_path):
    path = tmp_path / 'config.yaml'
    path.write_text("- just\n- a list\n")

    with pytest.raises(ConfigError, match='must be a mapping'):
        load_config(str(path))


def test_export_aws_credentials_sets_cli_environment(config):
    export_aws_credentials(config)

    assert os.environ['AWS_ACCESS_KEY_ID'] == 'AKIATEST'
    assert os.environ['AWS_SECRET_ACCESS_KEY'] == 'secret-key'
    assert os.environ['AWS_DEFAULT_REGION'] == 'eu-west-1'


@pytest.mark.parametrize('days', [0, -7, '-1'])
def test_retention_days_below_one_is_rejected(raw_config, days):
    raw_config['retention_days'] = days

    with pytest.raises(ConfigError, match='retention_days'):
        build_config(raw_config)


@pytest.mark.parametrize('minutes', [0, -1])
def test_snapshot_timeout_must_be_positive(raw_config, minutes):
    raw_config['snapshot_timeout_minutes'] = minutes

    with pytest.raises(ConfigError, match='snapshot_timeout_minutes'):
        build_config(raw_config)


def test_snapshot_timeout_accepts_positive_minutes(raw_config):
    raw_config['snapshot_timeout_minutes'] = '240'

    assert build_config(raw_config).snapshot_timeout_minutes == 240


@pytest.mark.parametrize('name', ['/var', '.', '..', 'dump/../..', '../outside'])
def test_dump_dir_name_must_stay_inside_mount(raw_config, name):
    raw_config['dump_dir_name'] = name

    with pytest.raises(ConfigError, match='dump_dir_name'):
        build_config(raw_config)


def test_absolute_dump_dir_name_never_reaches_clean_phase(raw_config, tmp_path):
    victim = tmp_path / 'victim'
    victim.mkdir()
    (victim / 'keep').write_text('precious')
    raw_config['dump_dir_name'] = str(victim)

    with pytest.raises(ConfigError):
        build_config(raw_config)

    assert (victim / 'keep').read_text() == 'precious'


def test_validate_config_reports_missing_and_invalid_values_together(raw_config, caplog):
    del raw_config['device']
    raw_config['poll_interval_seconds'] = 'soon'
    raw_config['retention_cutoff'] = 'last tuesday'
    raw_config['snapshot_timeout_minutes'] = -5
    raw_config['dump_dir_name'] = '..'

    with pytest.raises(ConfigError) as excinfo:
        validate_config(raw_config)

    assert excinfo.value.missing == ['device']
    assert len(excinfo.value.invalid) == 4
    for key in ('poll_interval_seconds', 'retention_cutoff', 'snapshot_timeout_minutes', 'dump_dir_name'):
        assert key in str(excinfo.value)
        assert key in caplog.text
    assert "Missing configuration 'device'" in caplog.text
