import re
from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import Any, BinaryIO, Dict, List, Optional


SNAPSHOT_TYPE = 'volume-snapshot'

# RFC3339 timestamps may carry nanoseconds; datetime only keeps microseconds
_FRACTION_RE = re.compile(r'(\.\d{6})\d+')


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: str) -> datetime:
    """
    Parse an ISO-8601 / RFC3339 timestamp into an aware datetime.

    Naive values are assumed to be UTC.
    """
    value = value.strip()
    if value.endswith('Z'):
        value = value[:-1] + '+00:00'
    value = _FRACTION_RE.sub(r'\1', value)
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class BackupMetadata:
    """Metadata record persisted next to every stored backup."""
    id: str = ''
    name: str = ''
    type: str = SNAPSHOT_TYPE
    size: int = 0
    created_at: datetime = field(default_factory=utcnow)
    volume_name: str = ''
    description: str = ''
    version: str = ''
    encrypted: bool = False

    @property
    def volumes(self) -> List[str]:
        return [v for v in self.volume_name.split(',') if v] if self.volume_name else []

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'name': self.name,
            'type': self.type,
            'size': self.size,
            'created_at': self.created_at.isoformat(),
            'volume_name': self.volume_name,
            'description': self.description,
            'version': self.version,
            'encrypted': self.encrypted,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'BackupMetadata':
        created_at = data.get('created_at')
        return cls(
            id=data.get('id', ''),
            name=data.get('name', ''),
            type=data.get('type', SNAPSHOT_TYPE),
            size=int(data.get('size') or 0),
            created_at=parse_timestamp(created_at) if created_at else utcnow(),
            volume_name=data.get('volume_name') or '',
            description=data.get('description') or '',
            version=data.get('version') or '',
            encrypted=bool(data.get('encrypted', False)),
        )


@dataclass
class Backup:
    """
    A stored backup: identifier, metadata and a readable data stream.

    The stream is consumed once and must be closed by whoever holds the
    Backup (use it as a context manager or call close()).
    """
    id: str
    metadata: BackupMetadata
    data: Optional[BinaryIO] = None

    def close(self):
        if self.data is not None and hasattr(self.data, 'close'):
            self.data.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False

    def __repr__(self):
        return f'<Backup {self.id} encrypted={self.metadata.encrypted}>'


@dataclass
class SnapshotInfo:
    """Aggregate view over all versions sharing a snapshot name."""
    name: str
    size: int
    created_at: datetime
    description: str = ''
    volumes: List[str] = field(default_factory=list)
    version: str = ''
    version_count: int = 0
    encrypted: bool = False


@dataclass
class VersionInfo:
    """One version of a snapshot."""
    version: str
    size: int
    created_at: datetime
    description: str = ''


@dataclass
class VolumeInfo:
    """Docker volume details"""
    name: str
    driver: str = ''
    mountpoint: str = ''
    created_at: str = ''


@dataclass
class ContainerInfo:
    """Docker container details"""
    id: str
    name: str
    running: bool = False

    @property
    def short_id(self) -> str:
        return self.id[:12]


@dataclass
class OperationRecord:
    """Execution history and logs for one backup or restore."""
    operation: str
    status: str = 'running'  # running, success, failed, cancelled, dry-run
    started_at: datetime = field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    snapshot_id: Optional[str] = None
    size_bytes: Optional[int] = None
    encrypted: bool = False
    error_message: Optional[str] = None
    stages: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    logs: List[str] = field(default_factory=list)

    def __repr__(self):
        return f'<OperationRecord {self.operation} status={self.status}>'
