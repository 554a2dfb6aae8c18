"""
Docker engine adapter.

Wraps the docker SDK for the handful of operations backups need: volume
lookup, container lookup and lifecycle, and archiving/restoring a volume's
contents through a short-lived sandbox container.

The sandbox never touches the host filesystem directly; archives move in and
out of it through the engine's tar export/import API.
"""

import logging
import os
import tarfile
from typing import Callable, Iterator, List, Optional

import docker
from docker.errors import APIError, DockerException, ImageNotFound, NotFound

from dvom.config import Config
from dvom.models import ContainerInfo, VolumeInfo
from dvom.utils.streams import IterStream
from .compression import ResourceLimitError, copy_stream, format_size


logger = logging.getLogger(__name__)

MOUNT_POINT = '/data'
ARCHIVE_NAME = 'backup.tar.gz'
ARCHIVE_PATH = '/' + ARCHIVE_NAME

BACKUP_COMMAND = ['tar', 'czf', ARCHIVE_PATH, '-C', MOUNT_POINT, '.']
# Clears regular files and dotfiles (but not . and ..) before extracting
RESTORE_COMMAND = [
    'sh', '-c',
    f'rm -rf {MOUNT_POINT}/* {MOUNT_POINT}/.[!.]* {MOUNT_POINT}/..?*; '
    f'cd {MOUNT_POINT} && tar xzf {ARCHIVE_PATH}'
]

STREAM_CHUNK_SIZE = 64 * 1024
TAR_BLOCK = 512


class EngineError(Exception):
    """Raised when the Docker engine reports a failure."""
    pass


class VolumeNotFoundError(EngineError):
    """Raised when a named volume does not exist."""
    pass


class ContainerNotFoundError(EngineError):
    """Raised when no container matches a name or id."""
    pass


class DockerEngine:
    """
    Thin adapter over docker.DockerClient.

    Args:
        client: Pre-built docker client (default: docker.from_env())
        sandbox_image: Image used for archive/extract containers
        max_copy_size: Cap on bytes copied out of the sandbox
    """

    def __init__(self, client=None, sandbox_image: str = Config.SANDBOX_IMAGE,
                 max_copy_size: int = Config.MAX_COPY_SIZE):
        if client is None:
            try:
                client = docker.from_env()
            except DockerException as e:
                raise EngineError(f"Failed to connect to Docker: {e}")

        self.client = client
        self.sandbox_image = sandbox_image
        self.max_copy_size = max_copy_size

    # Volumes

    def list_volumes(self) -> List[VolumeInfo]:
        try:
            volumes = self.client.volumes.list()
        except APIError as e:
            raise EngineError(f"Failed to list volumes: {e}")
        return sorted((self._volume_info(v) for v in volumes), key=lambda v: v.name)

    def get_volume(self, name: str) -> VolumeInfo:
        try:
            return self._volume_info(self.client.volumes.get(name))
        except NotFound:
            raise VolumeNotFoundError(f"Volume not found: {name}")
        except APIError as e:
            raise EngineError(f"Failed to inspect volume {name}: {e}")

    @staticmethod
    def _volume_info(volume) -> VolumeInfo:
        attrs = volume.attrs or {}
        return VolumeInfo(
            name=volume.name,
            driver=attrs.get('Driver', ''),
            mountpoint=attrs.get('Mountpoint', ''),
            created_at=attrs.get('CreatedAt', ''),
        )

    # Containers

    def get_container(self, name_or_id: str) -> ContainerInfo:
        """
        Resolve a container by exact id, id prefix or name.

        Raises:
            ContainerNotFoundError: If nothing matches
        """
        try:
            containers = self.client.containers.list(all=True)
        except APIError as e:
            raise EngineError(f"Failed to list containers: {e}")

        for container in containers:
            if container.id == name_or_id:
                return self._container_info(container)

        for container in containers:
            if container.id.startswith(name_or_id):
                return self._container_info(container)

        wanted = name_or_id.lstrip('/')
        for container in containers:
            if container.name.lstrip('/') == wanted:
                return self._container_info(container)

        raise ContainerNotFoundError(f"Container not found: {name_or_id}")

    @staticmethod
    def _container_info(container) -> ContainerInfo:
        return ContainerInfo(
            id=container.id,
            name=container.name.lstrip('/'),
            running=container.status == 'running',
        )

    def stop_container(self, container_id: str, timeout: int = Config.STOP_TIMEOUT) -> bool:
        """
        Stop a container if it is running.

        Returns:
            True if the container was running before the call
        """
        try:
            container = self.client.containers.get(container_id)
            if container.status != 'running':
                return False
            container.stop(timeout=timeout)
            return True
        except NotFound:
            raise ContainerNotFoundError(f"Container not found: {container_id}")
        except APIError as e:
            raise EngineError(f"Failed to stop container {container_id}: {e}")

    def start_container(self, container_id: str):
        try:
            self.client.containers.get(container_id).start()
        except NotFound:
            raise ContainerNotFoundError(f"Container not found: {container_id}")
        except APIError as e:
            raise EngineError(f"Failed to start container {container_id}: {e}")

    # Sandbox

    def archive_volume(self, volume_name: str, output_path: str,
                       cancellation_check: Optional[Callable] = None,
                       limit: Optional[int] = None) -> int:
        """
        Archive a volume's contents to a local .tar.gz file.

        The volume is mounted read-only in a sandbox that tars it up; the
        archive is then streamed out of the sandbox with the copy cap.

        Args:
            volume_name: Source volume
            output_path: Local file receiving the .tar.gz
            cancellation_check: Optional function called between chunks
            limit: Byte cap for this copy (default: max_copy_size)

        Returns:
            Size of the archive in bytes

        Raises:
            VolumeNotFoundError: If the volume does not exist
            ResourceLimitError: If the archive exceeds the cap
            EngineError: If the sandbox fails
        """
        limit = limit or self.max_copy_size
        self.get_volume(volume_name)

        container = self._create_sandbox(volume_name, BACKUP_COMMAND, read_only=True)
        try:
            self._run_sandbox(container)

            try:
                chunks, _ = container.get_archive(ARCHIVE_PATH, chunk_size=STREAM_CHUNK_SIZE)
                with tarfile.open(fileobj=IterStream(chunks), mode='r|') as tar:
                    for member in tar:
                        if os.path.basename(member.name) != ARCHIVE_NAME:
                            continue
                        if member.size > limit:
                            raise ResourceLimitError(
                                f"Volume archive is {format_size(member.size)}, "
                                f"exceeds limit of {format_size(limit)}"
                            )
                        source = tar.extractfile(member)
                        with open(output_path, 'wb') as f:
                            return copy_stream(source, f, limit,
                                               cancellation_check=cancellation_check)
            except (APIError, tarfile.TarError) as e:
                raise EngineError(f"Failed to copy archive out of sandbox: {e}")

            raise EngineError(f"Sandbox produced no {ARCHIVE_NAME}")
        finally:
            self._remove_sandbox(container)

    def restore_volume(self, volume_name: str, archive_path: str):
        """
        Replace a volume's contents with a local .tar.gz archive.

        Everything currently in the volume, dotfiles included, is removed
        before extraction.

        Raises:
            VolumeNotFoundError: If the volume does not exist
            EngineError: If the sandbox fails
        """
        self.get_volume(volume_name)

        container = self._create_sandbox(volume_name, RESTORE_COMMAND, read_only=False)
        try:
            try:
                ok = container.put_archive('/', _tar_single_file(archive_path, ARCHIVE_NAME))
            except APIError as e:
                raise EngineError(f"Failed to copy archive into sandbox: {e}")
            if not ok:
                raise EngineError("Failed to copy archive into sandbox")

            self._run_sandbox(container)
        finally:
            self._remove_sandbox(container)

    def _create_sandbox(self, volume_name: str, command: List[str], read_only: bool):
        kwargs = {
            'command': command,
            'volumes': {volume_name: {'bind': MOUNT_POINT, 'mode': 'ro' if read_only else 'rw'}},
            'labels': {'dvom.sandbox': 'true'},
        }

        try:
            return self.client.containers.create(self.sandbox_image, **kwargs)
        except ImageNotFound:
            logger.info(f"Pulling sandbox image {self.sandbox_image}")
            try:
                self.client.images.pull(self.sandbox_image)
                return self.client.containers.create(self.sandbox_image, **kwargs)
            except APIError as e:
                raise EngineError(f"Failed to pull sandbox image {self.sandbox_image}: {e}")
        except APIError as e:
            raise EngineError(f"Failed to create sandbox container: {e}")

    def _run_sandbox(self, container):
        try:
            container.start()
            result = container.wait()
        except APIError as e:
            raise EngineError(f"Sandbox container failed: {e}")

        status = result.get('StatusCode', 0)
        if status != 0:
            try:
                output = container.logs().decode(errors='replace').strip()
            except APIError:
                output = ''
            raise EngineError(f"Sandbox exited with status {status}: {output or 'no output'}")

    def _remove_sandbox(self, container):
        try:
            container.remove(force=True)
        except APIError as e:
            logger.warning(f"Warning: failed to remove sandbox container {container.id[:12]}: {e}")


def _tar_single_file(path: str, arcname: str, chunk_size: int = STREAM_CHUNK_SIZE) -> Iterator[bytes]:
    """Stream a one-member tar archive wrapping a local file."""
    info = tarfile.TarInfo(arcname)
    info.size = os.path.getsize(path)
    info.mode = 0o644

    yield info.tobuf(format=tarfile.GNU_FORMAT)

    with open(path, 'rb') as f:
        while True:
            chunk = f.read(chunk_size)
            if not chunk:
                break
            yield chunk

    remainder = info.size % TAR_BLOCK
    if remainder:
        yield b'\0' * (TAR_BLOCK - remainder)

    # End of archive marker
    yield b'\0' * (TAR_BLOCK * 2)
