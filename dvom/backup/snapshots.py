"""
Snapshot versioning on top of a storage backend.

Every stored snapshot gets a version token (UTC, YYYYMMDD-HHMMSS) and is
kept under the key "name@version". A bare name always refers to the latest
version; "name@version" refers to one exact version.
"""

import logging
from collections import defaultdict
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple

from dvom.models import (
    SNAPSHOT_TYPE, Backup, BackupMetadata, SnapshotInfo, VersionInfo, utcnow
)
from .compression import clean_snapshot_name
from .storage import BaseStorage, BackupNotFoundError, StorageError


logger = logging.getLogger(__name__)

VERSION_SEPARATOR = '@'
VERSION_FORMAT = '%Y%m%d-%H%M%S'


class SnapshotNotFoundError(BackupNotFoundError):
    """Raised when no stored version matches a snapshot reference."""
    pass


class InvalidSnapshotNameError(StorageError):
    """Raised when a snapshot name cannot be used as a storage key."""
    pass


def parse_snapshot_ref(ref: str) -> Tuple[str, Optional[str]]:
    """
    Split a snapshot reference into name and version.

    Args:
        ref: "name" or "name@version"

    Returns:
        (name, version) where version is None for a bare name. "name@"
        yields an empty version, never None.
    """
    if VERSION_SEPARATOR in ref:
        name, version = ref.split(VERSION_SEPARATOR, 1)
        return name, version
    return ref, None


def validate_snapshot_name(name: str) -> str:
    """
    Clean a snapshot name and check it can be stored.

    Returns:
        The cleaned name

    Raises:
        InvalidSnapshotNameError: If the cleaned name is empty or contains '@'
    """
    clean_name = clean_snapshot_name(name)
    if not clean_name:
        raise InvalidSnapshotNameError("Snapshot name cannot be empty")
    if VERSION_SEPARATOR in clean_name:
        raise InvalidSnapshotNameError(
            f"Snapshot name cannot contain '{VERSION_SEPARATOR}': {clean_name}"
        )
    return clean_name


def make_snapshot_id(name: str, version: str) -> str:
    return f"{name}{VERSION_SEPARATOR}{version}"


def generate_version(moment: datetime) -> str:
    """Version token for a point in time (UTC, second resolution)."""
    return moment.strftime(VERSION_FORMAT)


def _version_of(metadata: BackupMetadata) -> str:
    if metadata.version:
        return metadata.version
    _, version = parse_snapshot_ref(metadata.id)
    return version or ''


def _name_of(metadata: BackupMetadata) -> str:
    if metadata.name:
        return metadata.name
    name, _ = parse_snapshot_ref(metadata.id)
    return name


def _latest_key(metadata: BackupMetadata):
    return (metadata.created_at, _version_of(metadata))


class SnapshotStorage:
    """
    Versioned snapshot store.

    Wraps any BaseStorage; the backend never sees snapshot semantics, only
    object ids of the form name@version.
    """

    def __init__(self, backend: BaseStorage, clock: Optional[Callable[[], datetime]] = None):
        """
        Args:
            backend: Storage backend holding the objects
            clock: Returns the current UTC time (defaults to utcnow)
        """
        self.backend = backend
        self.clock = clock or utcnow

    def store_snapshot(self, name: str, backup: Backup) -> str:
        """
        Store a backup as a new version of a snapshot.

        Args:
            name: Snapshot name (extensions and path separators are cleaned)
            backup: Backup whose metadata is filled in and whose data is consumed

        Returns:
            The versioned snapshot id

        Raises:
            InvalidSnapshotNameError: If the cleaned name is empty or contains '@'
            StorageError: If the backend write fails
        """
        clean_name = validate_snapshot_name(name)

        now = self.clock()
        version = generate_version(now)
        snapshot_id = make_snapshot_id(clean_name, version)

        metadata = backup.metadata
        metadata.id = snapshot_id
        metadata.name = clean_name
        metadata.type = SNAPSHOT_TYPE
        metadata.created_at = now
        metadata.version = version

        logger.info(f"Storing snapshot {snapshot_id}")
        self.backend.store(snapshot_id, metadata, backup.data)
        backup.id = snapshot_id

        return snapshot_id

    def get_snapshot(self, ref: str) -> Backup:
        """
        Open a snapshot by name (latest version) or name@version.

        Raises:
            SnapshotNotFoundError: If nothing matches
            InvalidSnapshotNameError: If the version part is empty
        """
        name, version = self.resolve_ref(ref)

        if version is None:
            latest = self.get_latest_version(name)
            snapshot_id = make_snapshot_id(name, latest.version)
        else:
            snapshot_id = make_snapshot_id(name, version)

        try:
            return self.backend.retrieve(snapshot_id)
        except BackupNotFoundError:
            raise SnapshotNotFoundError(f"Snapshot not found: {snapshot_id}")

    def list_snapshots(self) -> List[SnapshotInfo]:
        """Summarize every snapshot name, sorted by name."""
        snapshots = []
        for name, versions in sorted(self._group_by_name().items()):
            latest = max(versions, key=_latest_key)
            snapshots.append(SnapshotInfo(
                name=name,
                size=latest.size,
                created_at=latest.created_at,
                description=latest.description,
                volumes=latest.volumes,
                version=_version_of(latest),
                version_count=len(versions),
                encrypted=latest.encrypted,
            ))
        return snapshots

    def list_versions(self, name: str) -> List[VersionInfo]:
        """
        List every version of a snapshot, oldest first.

        Returns an empty list when the snapshot has no versions.
        """
        versions = self._group_by_name().get(clean_snapshot_name(name), [])
        versions.sort(key=_latest_key)
        return [
            VersionInfo(
                version=_version_of(meta),
                size=meta.size,
                created_at=meta.created_at,
                description=meta.description,
            )
            for meta in versions
        ]

    def get_latest_version(self, name: str) -> BackupMetadata:
        """
        Metadata of the newest version of a snapshot.

        Newest means greatest created_at; equal timestamps fall back to the
        greater version token.

        Raises:
            SnapshotNotFoundError: If the snapshot has no versions
        """
        return max(self._versions_of(clean_snapshot_name(name)), key=_latest_key)

    def delete_snapshot(self, ref: str) -> List[str]:
        """
        Delete one version (name@version) or every version (bare name).

        Returns:
            Ids of the deleted versions

        Raises:
            SnapshotNotFoundError: If nothing matches
            InvalidSnapshotNameError: If the version part is empty
        """
        name, version = self.resolve_ref(ref)

        if version is not None:
            snapshot_id = make_snapshot_id(name, version)
            if not self.backend.exists(snapshot_id):
                raise SnapshotNotFoundError(f"Snapshot not found: {snapshot_id}")
            self.backend.delete(snapshot_id)
            logger.info(f"Deleted snapshot version {snapshot_id}")
            return [snapshot_id]

        deleted = []
        for meta in self._versions_of(name):
            snapshot_id = make_snapshot_id(name, _version_of(meta))
            self.backend.delete(snapshot_id)
            deleted.append(snapshot_id)

        logger.info(f"Deleted {len(deleted)} version(s) of snapshot {name}")
        return deleted

    def snapshot_exists(self, ref: str) -> bool:
        name, version = self.resolve_ref(ref)
        if version is not None:
            return self.backend.exists(make_snapshot_id(name, version))
        return bool(self._group_by_name().get(name))

    def resolve_ref(self, ref: str) -> Tuple[str, Optional[str]]:
        """
        Parse a reference and clean its name the way store_snapshot does.

        Returns:
            (clean name, version or None)

        Raises:
            InvalidSnapshotNameError: If the reference names an empty version
        """
        name, version = parse_snapshot_ref(ref)
        if version == '':
            raise InvalidSnapshotNameError(f"Snapshot version cannot be empty: {ref}")
        return clean_snapshot_name(name), version

    def _group_by_name(self) -> Dict[str, List[BackupMetadata]]:
        groups = defaultdict(list)
        for meta in self.backend.list():
            if meta.type and meta.type != SNAPSHOT_TYPE:
                continue
            groups[_name_of(meta)].append(meta)
        return groups

    def _versions_of(self, name: str) -> List[BackupMetadata]:
        versions = self._group_by_name().get(name)
        if not versions:
            raise SnapshotNotFoundError(f"Snapshot not found: {name}")
        return list(versions)
