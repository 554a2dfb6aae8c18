"""
Unit tests for the command line interface (dvom/cli.py).

Commands run through click's CliRunner against local storage and the fake
engine from conftest.
"""

import pytest
from click.testing import CliRunner

from dvom import __version__
from dvom import cli as cli_module
from dvom.cli import cli


@pytest.fixture
def runner():
    """Click CLI test runner."""
    return CliRunner()


@pytest.fixture
def invoke(runner, engine, clock, tmp_path, monkeypatch):
    """
    Invoke the CLI with local storage under tmp_path and the fake engine.

    Snapshot versions come from a one-minute step clock so repeated backups
    never collide.
    """
    monkeypatch.setattr(cli_module, 'create_engine', lambda: engine)
    monkeypatch.setattr(cli_module.settings, 'LOG_DIR', str(tmp_path / 'logs'))
    monkeypatch.setattr('dvom.backup.snapshots.utcnow', clock)
    backup_dir = str(tmp_path / 'backups')

    def run(*args, input=None, env=None):
        return runner.invoke(cli, ['--storage', 'local', '--backup-dir', backup_dir, *args],
                             input=input, env=env)

    return run


@pytest.fixture
def target(engine):
    return engine.add_volume('restored', {'stale.txt': 'old'})


class TestGlobalOptions:
    """Test group level options."""

    def test_version(self, runner):
        result = runner.invoke(cli, ['--version'])
        assert result.exit_code == 0
        assert __version__ in result.output

    def test_verbose_and_quiet_conflict(self, invoke):
        result = invoke('-v', '-q', 'list')
        assert result.exit_code == 2

    def test_unknown_storage(self, runner):
        result = runner.invoke(cli, ['--storage', 'ftp', 'list'])
        assert result.exit_code == 2

    def test_s3_requires_bucket(self, runner, monkeypatch, tmp_path):
        monkeypatch.setattr(cli_module.settings, 'LOG_DIR', str(tmp_path / 'logs'))
        result = runner.invoke(cli, ['list'], env={'DVOM_STORAGE': 's3', 'DVOM_S3_BUCKET': ''})

        assert result.exit_code == 1
        assert 'Error: S3 bucket is required' in result.output


class TestBackupCommand:
    """Test dvom backup."""

    def test_backup(self, invoke):
        result = invoke('backup', '--volume', 'app_data', '--name', 'nightly')

        assert result.exit_code == 0, result.output
        assert 'Backup created: nightly@20240115-120000' in result.output

    def test_backup_quiet(self, invoke):
        result = invoke('-q', 'backup', '--volume', 'app_data', '-n', 'nightly')

        assert result.exit_code == 0
        assert result.output == ''

    def test_encrypted_backup_prompts(self, invoke):
        result = invoke('backup', '--volume', 'app_data', '-n', 'nightly', '--encrypt',
                        input='pw\npw\n')

        assert result.exit_code == 0, result.output
        assert 'encrypted' in result.output

    def test_password_requires_encrypt(self, invoke):
        result = invoke('backup', '--volume', 'app_data', '-n', 'nightly', '--password', 'pw')
        assert result.exit_code == 2

    def test_missing_volume(self, invoke):
        result = invoke('backup', '--volume', 'nope', '-n', 'nightly')

        assert result.exit_code == 1
        assert 'Error: Volume not found: nope' in result.output

    def test_stop_containers_split(self, invoke, engine):
        result = invoke('backup', '--volume', 'app_data', '-n', 'nightly',
                        '--stop-containers', 'web, worker')

        assert result.exit_code == 0, result.output
        assert engine.calls[0] == ('stop', 'a1b2c3d4e5f6a1b2c3d4')
        assert engine.containers['a1b2c3d4e5f6a1b2c3d4']['running'] is True


class TestRestoreCommand:
    """Test dvom restore."""

    def test_dry_run(self, invoke, engine, target):
        invoke('backup', '--volume', 'app_data', '-n', 'nightly')

        result = invoke('restore', '-s', 'nightly', '--target-volume', 'restored', '--dry-run')

        assert result.exit_code == 0, result.output
        assert 'Dry run - no changes made' in result.output
        assert engine.read_volume('restored') == {'stale.txt': b'old'}

    def test_confirmed_restore(self, invoke, engine, target):
        invoke('backup', '--volume', 'app_data', '-n', 'nightly')

        result = invoke('restore', '-s', 'nightly', '--target-volume', 'restored', input='y\n')

        assert result.exit_code == 0, result.output
        assert engine.read_volume('restored') == engine.read_volume('app_data')

    def test_declined_restore(self, invoke, engine, target):
        invoke('backup', '--volume', 'app_data', '-n', 'nightly')

        result = invoke('restore', '-s', 'nightly', '--target-volume', 'restored', input='n\n')

        assert result.exit_code == 0
        assert 'Restore cancelled' in result.output
        assert engine.read_volume('restored') == {'stale.txt': b'old'}

    def test_restore_version_option(self, invoke, engine, target):
        invoke('backup', '--volume', 'app_data', '-n', 'nightly')

        result = invoke('restore', '-s', 'nightly', '--version', '20240115-120000',
                        '--target-volume', 'restored', '--force')

        assert result.exit_code == 0, result.output
        assert 'Restored nightly@20240115-120000' in result.output

    def test_version_given_twice(self, invoke, target):
        result = invoke('restore', '-s', 'nightly@20240115-120000', '--version', '20240115-120000',
                        '--target-volume', 'restored')
        assert result.exit_code == 2

    def test_wrong_password(self, invoke, engine, target):
        invoke('backup', '--volume', 'app_data', '-n', 'nightly', '--encrypt', '--password', 'right')

        result = invoke('restore', '-s', 'nightly', '--target-volume', 'restored',
                        '--password', 'wrong', '--force')

        assert result.exit_code == 1
        assert 'Error: Authentication failed' in result.output
        assert engine.read_volume('restored') == {'stale.txt': b'old'}

    def test_missing_snapshot(self, invoke, target):
        result = invoke('restore', '-s', 'nothing', '--target-volume', 'restored', '--force')

        assert result.exit_code == 1
        assert 'Error: Snapshot not found: nothing' in result.output


class TestSnapshotCommands:
    """Test list, info, versions and delete."""

    def test_list_empty(self, invoke):
        result = invoke('list')
        assert result.exit_code == 0
        assert 'No snapshots found' in result.output

    def test_list(self, invoke):
        invoke('backup', '--volume', 'app_data', '-n', 'nightly')
        invoke('backup', '--volume', 'app_data', '-n', 'nightly', '--encrypt', '--password', 'pw')

        result = invoke('list')

        assert result.exit_code == 0
        lines = result.output.splitlines()
        assert lines[0].startswith('BACKUP NAME')
        row = lines[2].split()
        assert row[0] == 'nightly'
        assert row[1] == '20240115-120100'
        assert 'Yes' in row
        assert row[-1] == 'app_data'

    def test_info(self, invoke):
        invoke('backup', '--volume', 'app_data', '-n', 'nightly')

        result = invoke('info', 'nightly')

        assert result.exit_code == 0
        assert 'Snapshot: nightly' in result.output
        assert 'Version: 20240115-120000' in result.output
        assert '  - app_data' in result.output

    def test_versions(self, invoke):
        invoke('backup', '--volume', 'app_data', '-n', 'nightly')
        invoke('backup', '--volume', 'app_data', '-n', 'nightly')

        result = invoke('versions', 'nightly')

        assert result.exit_code == 0
        older = result.output.index('20240115-120000')
        newer = result.output.index('20240115-120100')
        assert older < newer

    def test_versions_unknown_name(self, invoke):
        result = invoke('versions', 'nothing')

        assert result.exit_code == 0
        assert "No versions found for snapshot 'nothing'" in result.output

    def test_versions_after_delete_all(self, invoke):
        invoke('backup', '--volume', 'app_data', '-n', 'nightly')
        invoke('delete', 'nightly', '--force')

        result = invoke('versions', 'nightly')

        assert result.exit_code == 0
        assert "No versions found for snapshot 'nightly'" in result.output

    def test_raw_name_round_trip(self, invoke, engine, target):
        """Test the name given to backup works unchanged for info and restore."""
        invoke('backup', '--volume', 'app_data', '-n', 'team/db.tar.gz')

        info = invoke('info', 'team/db.tar.gz')
        assert info.exit_code == 0, info.output
        assert 'Snapshot: team-db' in info.output

        result = invoke('restore', '-s', 'team/db.tar.gz', '--target-volume', 'restored', '--force')
        assert result.exit_code == 0, result.output
        assert engine.read_volume('restored') == engine.read_volume('app_data')

    def test_delete_declined(self, invoke):
        invoke('backup', '--volume', 'app_data', '-n', 'nightly')

        result = invoke('delete', 'nightly', input='n\n')

        assert 'ALL 1 version(s)' in result.output
        assert 'Delete cancelled' in result.output
        assert 'nightly' in invoke('list').output

    def test_delete_version_forced(self, invoke):
        invoke('backup', '--volume', 'app_data', '-n', 'nightly')
        invoke('backup', '--volume', 'app_data', '-n', 'nightly')

        result = invoke('delete', 'nightly', '--version', '20240115-120000', '--force')

        assert result.exit_code == 0
        assert 'Deleted 1 version(s)' in result.output
        versions = invoke('versions', 'nightly').output
        assert '20240115-120000' not in versions
        assert '20240115-120100' in versions
        assert 'Version: 20240115-120100' in invoke('info', 'nightly').output

    def test_delete_empty_version_deletes_nothing(self, invoke):
        invoke('backup', '--volume', 'app_data', '-n', 'nightly')
        invoke('backup', '--volume', 'app_data', '-n', 'nightly')

        result = invoke('delete', 'nightly', '--version', '', '--force')

        assert result.exit_code == 1
        assert 'Error: Snapshot version cannot be empty' in result.output
        versions = invoke('versions', 'nightly').output
        assert '20240115-120000' in versions
        assert '20240115-120100' in versions

    def test_restore_empty_version_rejected(self, invoke, engine, target):
        invoke('backup', '--volume', 'app_data', '-n', 'nightly')

        result = invoke('restore', '-s', 'nightly', '--version', '', '--target-volume', 'restored',
                        '--force')

        assert result.exit_code == 1
        assert 'Error: Snapshot version cannot be empty' in result.output
        assert engine.read_volume('restored') == {'stale.txt': b'old'}

    def test_delete_missing(self, invoke):
        result = invoke('delete', 'nothing', '--force')

        assert result.exit_code == 1
        assert 'Error: Snapshot not found' in result.output


class TestVolumesCommand:
    """Test dvom volumes."""

    def test_volumes(self, invoke):
        result = invoke('volumes')

        assert result.exit_code == 0
        assert 'VOLUME NAME' in result.output
        assert 'app_data' in result.output
