"""
Backup executor - orchestrates volume backup and restore.

Backup workflow:
1. Create OperationRecord (status: running)
2. Resolve source volume, obtain encryption password if needed
3. Stop requested containers
4. Archive the volume through a sandbox container
5. Encrypt (optional) and store as a new snapshot version
6. Restart containers, cleanup temporary files
7. Update OperationRecord (status: success/failed/cancelled)

Restore workflow:
1. Resolve target volume and snapshot (dry run stops here)
2. Stop requested containers
3. Download, decrypt (optional) and verify the archive
4. Confirm, then replace the volume contents
5. Restart containers, cleanup temporary files
"""

import io
import os
import time
import shutil
import logging
import tempfile
from enum import Enum
from typing import Callable, Optional

from dvom.config import RunConfig
from dvom.models import Backup, BackupMetadata, OperationRecord, utcnow
from dvom.utils.crypto import EncryptionError, decrypt_stream, encrypt_stream, encrypted_size, read_header
from dvom.utils.prompt import Prompter, TerminalPrompter
from dvom.utils.streams import ChainReader, CheckedReader
from .compression import copy_stream, format_size, inspect_archive
from .containers import ContainerSafetyManager
from .snapshots import SnapshotStorage, validate_snapshot_name


logger = logging.getLogger(__name__)


class OperationCancelled(Exception):
    """Raised by a cancellation check to abort a running operation."""
    pass


class Stage(Enum):
    """Pipeline stages, in the order they can be entered."""
    IDLE = 'idle'
    CONTAINERS_STOPPED = 'containers-stopped'
    ARCHIVING = 'archiving'
    ENCRYPTING = 'encrypting'
    UPLOADING = 'uploading'
    DOWNLOADING = 'downloading'
    DECRYPTING = 'decrypting'
    CONFIRMATION = 'confirmation'
    EXTRACTING = 'extracting'
    CONTAINERS_RESTARTED = 'containers-restarted'
    DONE = 'done'


def deadline_check(seconds: float, clock: Callable[[], float] = time.monotonic) -> Callable[[], None]:
    """
    Build a cancellation check that fires once a timeout has elapsed.

    Args:
        seconds: Time allowed, starting now
        clock: Monotonic clock

    Returns:
        Function raising OperationCancelled after the deadline
    """
    deadline = clock() + seconds

    def check():
        if clock() > deadline:
            raise OperationCancelled(f"Operation timed out after {seconds:g}s")

    return check


class BackupExecutor:
    """
    Runs one backup or restore against a Docker engine and a snapshot store.

    Errors propagate to the caller after the record has been completed;
    the record of the last run stays available as self.record.
    """

    def __init__(self, engine, snapshots: SnapshotStorage, config: RunConfig,
                 prompter: Optional[Prompter] = None,
                 cancellation_check: Optional[Callable[[], None]] = None):
        """
        Initialize backup executor.

        Args:
            engine: DockerEngine for volumes, containers and the sandbox
            snapshots: Versioned snapshot store
            config: Options for this invocation
            prompter: Source of passwords and confirmations (default: terminal)
            cancellation_check: Called between stages and chunks; raises to abort
        """
        self.engine = engine
        self.snapshots = snapshots
        self.config = config
        self.prompter = prompter or TerminalPrompter()
        self.cancellation_check = cancellation_check
        self.safety = ContainerSafetyManager(engine, stop_timeout=config.stop_timeout)

        self.record: Optional[OperationRecord] = None
        self.temp_dir = None
        self.logs = []

    # Public operations

    def backup(self, volume_name: str, snapshot_name: str) -> OperationRecord:
        """
        Back up a volume as a new version of a snapshot.

        Returns:
            OperationRecord with status 'success'

        Raises:
            VolumeNotFoundError, ContainerNotFoundError, EncryptionError,
            ResourceLimitError, StorageError, EngineError, OperationCancelled
        """
        return self._run('backup', lambda: self._backup_workflow(volume_name, snapshot_name))

    def restore(self, volume_name: str, snapshot_ref: str) -> OperationRecord:
        """
        Restore a snapshot (name or name@version) into a volume.

        Returns:
            OperationRecord with status 'success', 'dry-run' or 'cancelled'
            (declined confirmation)

        Raises:
            VolumeNotFoundError, SnapshotNotFoundError, AuthenticationError,
            CorruptedBackupError, ResourceLimitError, CompressionError,
            StorageError, EngineError, OperationCancelled
        """
        return self._run('restore', lambda: self._restore_workflow(volume_name, snapshot_ref))

    def _run(self, operation: str, workflow: Callable[[], str]) -> OperationRecord:
        self.record = OperationRecord(operation=operation, encrypted=self.config.encrypt)
        self.logs = self.record.logs
        self._stage(Stage.IDLE)
        self._log(f"Starting {operation}")

        try:
            self.record.status = workflow()
            self._stage(Stage.DONE)
            self._log(f"{operation.capitalize()} finished: {self.record.status}")
            return self.record

        except OperationCancelled as e:
            self.record.status = 'cancelled'
            self.record.error_message = str(e)
            self._log(f"{operation.capitalize()} cancelled: {e}", logging.WARNING)
            raise

        except Exception as e:
            self.record.status = 'failed'
            self.record.error_message = str(e)
            self._log(f"{operation.capitalize()} failed: {e}", logging.ERROR)
            raise

        finally:
            self.record.completed_at = utcnow()
            self._cleanup()

    # Workflows

    def _backup_workflow(self, volume_name: str, snapshot_name: str) -> str:
        self._check_cancelled()

        snapshot_name = validate_snapshot_name(snapshot_name)
        volume = self.engine.get_volume(volume_name)
        self._log(f"Found volume: {volume.name} (driver: {volume.driver or 'unknown'})")

        # Ask before anything is stopped
        password = self._get_password(confirm=True) if self.config.encrypt else None

        with self.safety.guard() as guard:
            self._stop_containers(guard)

            self._stage(Stage.ARCHIVING)
            archive_path = os.path.join(self._make_temp_dir(), 'volume.tar.gz')
            archive_size = self.engine.archive_volume(
                volume.name, archive_path, cancellation_check=self._check_cancelled,
                limit=self.config.max_copy_size,
            )
            self._log(f"Archive created ({format_size(archive_size)})")
            self._check_cancelled()

            stored_size = encrypted_size(archive_size) if password else archive_size
            metadata = BackupMetadata(
                size=stored_size,
                volume_name=volume.name,
                description=f"Direct volume backup of {volume.name}",
                encrypted=bool(password),
            )

            with open(archive_path, 'rb') as archive:
                data = archive
                if password:
                    self._stage(Stage.ENCRYPTING)
                    reader, header = encrypt_stream(archive, password)
                    data = ChainReader(io.BytesIO(header.to_bytes()), reader)
                    self._log("Encryption enabled (AES-256-GCM)")

                if self.cancellation_check:
                    data = CheckedReader(data, self._check_cancelled)

                self._stage(Stage.UPLOADING)
                with Backup(id=snapshot_name, metadata=metadata, data=data) as backup:
                    snapshot_id = self.snapshots.store_snapshot(snapshot_name, backup)

            self.record.snapshot_id = snapshot_id
            self.record.size_bytes = stored_size
            self.record.encrypted = bool(password)
            self._log(f"Stored snapshot {snapshot_id} ({format_size(stored_size)})")

        self._after_restart(guard)
        return 'success'

    def _restore_workflow(self, volume_name: str, snapshot_ref: str) -> str:
        self._check_cancelled()

        volume = self.engine.get_volume(volume_name)

        with self.snapshots.get_snapshot(snapshot_ref) as backup:
            metadata = backup.metadata
            self.record.snapshot_id = metadata.id or backup.id
            self.record.size_bytes = metadata.size
            self.record.encrypted = metadata.encrypted

            self._log(f"Snapshot: {self.record.snapshot_id}")
            self._log(f"Created: {metadata.created_at.strftime('%Y-%m-%d %H:%M:%S')}")
            self._log(f"Size: {format_size(metadata.size)}")
            self._log(f"Original volume: {metadata.volume_name or 'unknown'}")
            self._log(f"Encrypted: {'yes' if metadata.encrypted else 'no'}")

            if self.config.dry_run:
                self._log(f"Would restore to volume: {volume.name} (driver: {volume.driver or 'unknown'})")
                self._log("Dry run - no changes made")
                return 'dry-run'

            password = self._get_password(confirm=False) if metadata.encrypted else None

            with self.safety.guard() as guard:
                self._stop_containers(guard)

                self._stage(Stage.DOWNLOADING)
                temp_dir = self._make_temp_dir()
                download_path = os.path.join(temp_dir, 'download')
                download_limit = self.config.max_copy_size
                if metadata.encrypted:
                    download_limit = encrypted_size(self.config.max_copy_size)

                with open(download_path, 'wb') as f:
                    downloaded = copy_stream(backup.data, f, limit=download_limit,
                                             cancellation_check=self._check_cancelled)
                self._log(f"Downloaded {format_size(downloaded)}")

                archive_path = download_path
                if metadata.encrypted:
                    self._stage(Stage.DECRYPTING)
                    archive_path = os.path.join(temp_dir, 'volume.tar.gz')
                    self._decrypt_file(download_path, archive_path, password)
                    self._log("Decryption successful")

                self._check_cancelled()
                summary = inspect_archive(archive_path, limit=self.config.max_copy_size)
                self._log(f"Archive verified: {summary['members']} entries, {format_size(summary['size'])}")

                if not self.config.force and not self._confirm_restore(volume.name):
                    self._log("Restore cancelled by user")
                    status = 'cancelled'
                else:
                    self._check_cancelled()
                    self._stage(Stage.EXTRACTING)
                    self.engine.restore_volume(volume.name, archive_path)
                    self._log(f"Volume {volume.name} restored from {self.record.snapshot_id}")
                    status = 'success'

            self._after_restart(guard)
            return status

    # Helpers

    def _confirm_restore(self, volume_name: str) -> bool:
        self._stage(Stage.CONFIRMATION)
        return self.prompter.confirm(
            f"Restore '{self.record.snapshot_id}' into volume '{volume_name}'? "
            f"All existing data in the volume will be replaced"
        )

    def _decrypt_file(self, source_path: str, target_path: str, password: str):
        with open(source_path, 'rb') as src:
            header = read_header(src)
            with decrypt_stream(src, password, header) as reader, open(target_path, 'wb') as dst:
                copy_stream(reader, dst, limit=self.config.max_copy_size,
                            cancellation_check=self._check_cancelled)

    def _get_password(self, confirm: bool) -> str:
        if self.config.password:
            return self.config.password

        prompt = "Enter encryption password" if confirm else "Enter decryption password"
        password = self.prompter.password(prompt, confirm=confirm)
        if not password:
            raise EncryptionError("Encryption password is required")
        return password

    def _stop_containers(self, guard):
        if not self.config.stop_containers:
            return
        self._log(f"Stopping containers: {', '.join(self.config.stop_containers)}")
        guard.stop(self.config.stop_containers)
        self._stage(Stage.CONTAINERS_STOPPED)

    def _after_restart(self, guard):
        if guard.restarted_any:
            self._stage(Stage.CONTAINERS_RESTARTED)
        if guard.restart_error is not None:
            self.record.warnings.append(str(guard.restart_error))
            self._log(f"Warning: {guard.restart_error}", logging.WARNING)

    def _check_cancelled(self):
        if self.cancellation_check:
            self.cancellation_check()

    def _make_temp_dir(self) -> str:
        if self.temp_dir is None:
            self.temp_dir = tempfile.mkdtemp(prefix='dvom_', dir=self.config.temp_dir)
        return self.temp_dir

    def _cleanup(self):
        """Remove temporary directory and files."""
        if self.temp_dir and os.path.exists(self.temp_dir):
            try:
                shutil.rmtree(self.temp_dir)
                self._log("Cleaned up temporary files", logging.DEBUG)
            except OSError as e:
                self._log(f"Warning: Failed to cleanup temp directory: {e}", logging.WARNING)
        self.temp_dir = None

    def _stage(self, stage: Stage):
        self.record.stages.append(stage.value)
        self._log(f"Stage: {stage.value}", logging.DEBUG)

    def _log(self, message: str, level: int = logging.INFO):
        """
        Add a log message with timestamp.

        Args:
            message: Log message
            level: logging level used for the module logger
        """
        timestamp = utcnow().strftime('%Y-%m-%d %H:%M:%S UTC')
        self.logs.append(f"[{timestamp}] {message}")
        logger.log(level, message)
