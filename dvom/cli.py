"""
Command line interface.

    dvom [global options] backup  --volume V --name N [--encrypt]
    dvom [global options] restore --snapshot N --target-volume V [--dry-run]
    dvom [global options] list | info | versions | delete | volumes
"""

import functools
import logging
from typing import List, Optional

import click

from dvom import __version__, configure_logging
from dvom.config import RunConfig, StorageConfig, StorageKind, get_config
from dvom.backup.compression import CompressionError, format_size
from dvom.backup.executor import BackupExecutor, OperationCancelled, deadline_check
from dvom.backup.snapshots import SnapshotNotFoundError, SnapshotStorage, parse_snapshot_ref
from dvom.backup.storage import StorageError, create_storage
from dvom.backup.volumes import DockerEngine, EngineError
from dvom.utils.crypto import EncryptionError
from dvom.utils.prompt import PromptError, TerminalPrompter


logger = logging.getLogger(__name__)

# Environment defaults (DVOM_ENV selects development or production)
settings = get_config()

DATE_FORMAT = '%Y-%m-%d %H:%M:%S'

# Every failure the commands report as a one line error
HANDLED_ERRORS = (
    StorageError,
    EncryptionError,
    CompressionError,
    EngineError,
    OperationCancelled,
    PromptError,
)


def create_engine() -> DockerEngine:
    """Connect to the local Docker engine."""
    return DockerEngine(sandbox_image=settings.SANDBOX_IMAGE, max_copy_size=settings.MAX_COPY_SIZE)


class CliContext:
    """Per-invocation state shared by all commands; backends are created on first use."""

    def __init__(self, storage_config: StorageConfig, verbose: bool = False, quiet: bool = False):
        self.storage_config = storage_config
        self.verbose = verbose
        self.quiet = quiet
        self._storage = None
        self._engine = None

    @property
    def storage(self):
        if self._storage is None:
            self._storage = create_storage(self.storage_config)
        return self._storage

    @property
    def snapshots(self) -> SnapshotStorage:
        return SnapshotStorage(self.storage)

    @property
    def engine(self):
        if self._engine is None:
            self._engine = create_engine()
        return self._engine

    def run_config(self, **options) -> RunConfig:
        return RunConfig(storage=self.storage_config, verbose=self.verbose, quiet=self.quiet, **options)

    def executor(self, run_config: RunConfig) -> BackupExecutor:
        check = deadline_check(run_config.timeout) if run_config.timeout else None
        return BackupExecutor(self.engine, self.snapshots, run_config,
                              prompter=TerminalPrompter(), cancellation_check=check)

    def echo(self, message: str = ''):
        if not self.quiet:
            click.echo(message)

    def close(self):
        if self._storage is not None:
            self._storage.close()


def handle_errors(f):
    """Turn domain errors into a single 'Error: ...' line and exit code 1."""
    @functools.wraps(f)
    def wrapper(*args, **kwargs):
        try:
            return f(*args, **kwargs)
        except HANDLED_ERRORS as e:
            logger.debug("Command failed", exc_info=True)
            message = str(e)
            for note in getattr(e, '__notes__', []):
                message += f" ({note})"
            raise click.ClickException(message)
    return wrapper


def split_names(ctx, param, value: Optional[str]) -> List[str]:
    if not value:
        return []
    return [name.strip() for name in value.split(',') if name.strip()]


def _print_warnings(record):
    for warning in record.warnings:
        click.echo(f"Warning: {warning}", err=True)


@click.group(context_settings={'help_option_names': ['-h', '--help']})
@click.option('--storage', type=click.Choice([kind.value for kind in StorageKind], case_sensitive=False),
              default=settings.STORAGE, envvar='DVOM_STORAGE', show_default=True,
              help='Storage backend')
@click.option('--backup-dir', default=settings.BACKUP_DIR, envvar='DVOM_BACKUP_DIR', show_default=True,
              help='Directory for local storage')
@click.option('--s3-bucket', envvar='DVOM_S3_BUCKET', help='S3 bucket name')
@click.option('--s3-region', default=settings.S3_REGION, envvar='DVOM_S3_REGION', show_default=True,
              help='S3 region')
@click.option('--s3-endpoint', envvar='DVOM_S3_ENDPOINT', help='Custom S3 endpoint (MinIO, etc.)')
@click.option('--s3-access-key', envvar='DVOM_S3_ACCESS_KEY', help='S3 access key ID')
@click.option('--s3-secret-key', envvar='DVOM_S3_SECRET_KEY', help='S3 secret access key')
@click.option('--gcs-bucket', envvar='DVOM_GCS_BUCKET', help='GCS bucket name')
@click.option('--gcs-project', envvar='DVOM_GCS_PROJECT', help='GCS project ID')
@click.option('--gcs-creds', envvar='DVOM_GCS_CREDS', help='Path to GCS service account JSON')
@click.option('-v', '--verbose', is_flag=True, help='Narrate every stage')
@click.option('-q', '--quiet', is_flag=True, help='Only print errors')
@click.option('--debug', is_flag=True, envvar='DVOM_DEBUG', hidden=True)
@click.version_option(__version__, prog_name='dvom')
@click.pass_context
def cli(ctx, storage, backup_dir, s3_bucket, s3_region, s3_endpoint, s3_access_key, s3_secret_key,
        gcs_bucket, gcs_project, gcs_creds, verbose, quiet, debug):
    """Back up, version and restore Docker volumes."""
    if verbose and quiet:
        raise click.UsageError("--verbose and --quiet cannot be used together")

    configure_logging(verbose=verbose, quiet=quiet, debug=debug or settings.DEBUG, log_dir=settings.LOG_DIR)

    storage_config = StorageConfig(
        kind=StorageKind.parse(storage),
        base_path=backup_dir,
        s3_bucket=s3_bucket,
        s3_region=s3_region,
        s3_endpoint=s3_endpoint,
        s3_access_key=s3_access_key,
        s3_secret_key=s3_secret_key,
        gcs_bucket=gcs_bucket,
        gcs_project=gcs_project,
        gcs_credentials=gcs_creds,
    )
    ctx.obj = CliContext(storage_config, verbose=verbose, quiet=quiet)
    ctx.call_on_close(ctx.obj.close)


@cli.command()
@click.option('-n', '--name', required=True, help='Snapshot name')
@click.option('--volume', required=True, help='Volume to back up')
@click.option('--stop-containers', callback=split_names, help='Comma separated containers to stop during backup')
@click.option('--encrypt', is_flag=True, help='Encrypt the backup (AES-256-GCM)')
@click.option('--password', envvar='DVOM_PASSWORD', help='Encryption password (prompted if omitted)')
@click.option('--timeout', type=click.FloatRange(min=0, min_open=True), help='Abort after this many seconds')
@click.pass_obj
@handle_errors
def backup(obj: CliContext, name, volume, stop_containers, encrypt, password, timeout):
    """Create a new snapshot version from a volume."""
    if password and not encrypt:
        raise click.UsageError("--password requires --encrypt")

    run_config = obj.run_config(
        encrypt=encrypt,
        password=password,
        stop_containers=stop_containers,
        timeout=timeout,
    )
    record = obj.executor(run_config).backup(volume, name)

    _print_warnings(record)
    obj.echo(f"Backup created: {record.snapshot_id} ({format_size(record.size_bytes or 0)}"
             f"{', encrypted' if record.encrypted else ''})")


@cli.command()
@click.option('-s', '--snapshot', required=True, help='Snapshot name (or name@version)')
@click.option('--version', 'version_token', help='Restore a specific version')
@click.option('--target-volume', required=True, help='Volume to restore into')
@click.option('--password', envvar='DVOM_PASSWORD', help='Decryption password (prompted if needed)')
@click.option('--dry-run', is_flag=True, help='Show what would be restored without changing anything')
@click.option('--force', is_flag=True, help='Skip the confirmation prompt')
@click.option('--stop-containers', callback=split_names, help='Comma separated containers to stop during restore')
@click.option('--timeout', type=click.FloatRange(min=0, min_open=True), help='Abort after this many seconds')
@click.pass_obj
@handle_errors
def restore(obj: CliContext, snapshot, version_token, target_volume, password, dry_run, force,
            stop_containers, timeout):
    """Restore a snapshot into a volume, replacing its contents."""
    ref = snapshot
    if version_token is not None:
        if parse_snapshot_ref(snapshot)[1] is not None:
            raise click.UsageError("Use either name@version or --version, not both")
        ref = f"{snapshot}@{version_token}"

    run_config = obj.run_config(
        password=password,
        dry_run=dry_run,
        force=force,
        stop_containers=stop_containers,
        timeout=timeout,
    )
    record = obj.executor(run_config).restore(target_volume, ref)

    _print_warnings(record)
    if record.status == 'dry-run':
        click.echo(f"Snapshot: {record.snapshot_id}")
        click.echo(f"Size: {format_size(record.size_bytes or 0)}")
        click.echo(f"Encrypted: {'yes' if record.encrypted else 'no'}")
        click.echo(f"Would restore to volume: {target_volume}")
        click.echo("Dry run - no changes made")
    elif record.status == 'cancelled':
        click.echo("Restore cancelled")
    else:
        obj.echo(f"Restored {record.snapshot_id} to volume {target_volume}")


@cli.command('list')
@click.pass_obj
@handle_errors
def list_snapshots(obj: CliContext):
    """List snapshots in the repository."""
    snapshots = obj.snapshots.list_snapshots()

    if not snapshots:
        click.echo("No snapshots found in repository")
        return

    row = "{:<30} {:<20} {:<10} {:<10} {:<10} {}"
    click.echo(row.format('BACKUP NAME', 'LATEST VERSION', 'SIZE', 'VERSIONS', 'ENCRYPTED', 'VOLUME'))
    click.echo(row.format('-' * 30, '-' * 20, '-' * 10, '-' * 10, '-' * 10, '-' * 20))

    for snapshot in snapshots:
        click.echo(row.format(
            snapshot.name,
            snapshot.version or snapshot.created_at.strftime(DATE_FORMAT),
            format_size(snapshot.size),
            snapshot.version_count,
            'Yes' if snapshot.encrypted else 'No',
            snapshot.volumes[0] if snapshot.volumes else 'unknown',
        ))
        if obj.verbose and snapshot.description:
            click.echo(f"  Description: {snapshot.description}")


@cli.command()
@click.argument('name')
@click.pass_obj
@handle_errors
def info(obj: CliContext, name):
    """Show details of a snapshot (latest version, or NAME@VERSION)."""
    with obj.snapshots.get_snapshot(name) as backup:
        metadata = backup.metadata

    click.echo(f"Snapshot: {metadata.name}")
    click.echo(f"Version: {metadata.version or '-'}")
    click.echo(f"Created: {metadata.created_at.strftime(DATE_FORMAT)}")
    click.echo(f"Size: {format_size(metadata.size)}")
    click.echo(f"Type: {metadata.type}")
    click.echo(f"Encrypted: {'yes' if metadata.encrypted else 'no'}")

    if metadata.volumes:
        click.echo(f"Volumes: {len(metadata.volumes)}")
        for volume in metadata.volumes:
            click.echo(f"  - {volume}")

    if metadata.description:
        click.echo(f"Description: {metadata.description}")


@cli.command()
@click.argument('name')
@click.pass_obj
@handle_errors
def versions(obj: CliContext, name):
    """List every version of a snapshot."""
    version_list = obj.snapshots.list_versions(name)

    if not version_list:
        click.echo(f"No versions found for snapshot '{name}'")
        return

    click.echo(f"Versions for snapshot '{name}':")
    click.echo()
    row = "{:<20} {:<20} {:<10} {}"
    click.echo(row.format('VERSION', 'CREATED', 'SIZE', 'DESCRIPTION'))
    click.echo(row.format('-' * 20, '-' * 20, '-' * 10, '-' * 20))

    for version in version_list:
        click.echo(row.format(
            version.version,
            version.created_at.strftime(DATE_FORMAT),
            format_size(version.size),
            version.description or '-',
        ))


@cli.command()
@click.argument('name')
@click.option('--version', 'version_token', help='Delete only this version')
@click.option('--force', is_flag=True, help='Skip the confirmation prompt')
@click.pass_obj
@handle_errors
def delete(obj: CliContext, name, version_token, force):
    """Delete a snapshot version, or every version of a snapshot."""
    ref = f"{name}@{version_token}" if version_token is not None else name
    snapshots = obj.snapshots
    # Rejects "name@" before anything is asked or deleted
    name, version = snapshots.resolve_ref(ref)

    if not force:
        if version is not None:
            message = f"This will permanently delete the specific version: {name}@{version}"
        else:
            count = len(snapshots.list_versions(name))
            if not count:
                raise SnapshotNotFoundError(f"Snapshot not found: {name}")
            message = f"This will permanently delete ALL {count} version(s) of snapshot '{name}'"
        click.echo(message)
        if not click.confirm("Continue?", default=False):
            click.echo("Delete cancelled")
            return

    deleted = snapshots.delete_snapshot(ref)
    for snapshot_id in deleted:
        logger.info(f"Deleted {snapshot_id}")
    obj.echo(f"Deleted {len(deleted)} version(s)")


@cli.command()
@click.pass_obj
@handle_errors
def volumes(obj: CliContext):
    """List Docker volumes."""
    volume_list = obj.engine.list_volumes()

    if not volume_list:
        click.echo("No Docker volumes found")
        return

    row = "{:<30} {:<15} {:<20} {}"
    click.echo(row.format('VOLUME NAME', 'DRIVER', 'CREATED', 'MOUNTPOINT'))
    click.echo(row.format('-' * 30, '-' * 15, '-' * 20, '-' * 20))

    for volume in volume_list:
        click.echo(row.format(volume.name, volume.driver, volume.created_at or 'unknown', volume.mountpoint))


def main():
    cli(prog_name='dvom')


if __name__ == '__main__':
    main()
