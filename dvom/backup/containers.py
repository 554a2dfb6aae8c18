"""
Container safety manager.

Stops the containers using a volume for the duration of a backup or restore
and guarantees they are started again afterwards, whatever happened in
between.
"""

import logging
from typing import Dict, Iterable, List, Optional

from dvom.config import Config
from .volumes import EngineError


logger = logging.getLogger(__name__)


class ContainerRestartError(EngineError):
    """Raised when one or more stopped containers could not be started again."""

    def __init__(self, failures: Dict[str, Exception]):
        self.failures = failures
        details = '; '.join(f"{cid[:12]}: {err}" for cid, err in failures.items())
        super().__init__(f"Failed to restart {len(failures)} container(s): {details}")


class ContainerSafetyManager:
    """
    Stops and restarts containers around a volume operation.

    The stopped map (container id -> was running) is the only state; it is
    scoped to one operation and passed back to restart_containers.
    """

    def __init__(self, engine, stop_timeout: int = Config.STOP_TIMEOUT):
        """
        Args:
            engine: DockerEngine (or any object with the same container methods)
            stop_timeout: Seconds to wait before a stopping container is killed
        """
        self.engine = engine
        self.stop_timeout = stop_timeout

    def stop_containers(self, names: Iterable[str],
                        stopped: Optional[Dict[str, bool]] = None) -> Dict[str, bool]:
        """
        Stop every named container that is running.

        Args:
            names: Container names, ids or id prefixes
            stopped: Map to fill in; entries are added as each container is
                handled, so a failure part-way leaves a usable map

        Returns:
            {container_id: was_running}

        Raises:
            ContainerNotFoundError: If a name does not resolve
            EngineError: If a container cannot be stopped
        """
        if stopped is None:
            stopped = {}

        for name in names:
            container = self.engine.get_container(name)
            if container.id in stopped:
                continue

            if not container.running:
                logger.info(f"Container {container.name} is not running")
                stopped[container.id] = False
                continue

            logger.info(f"Stopping container {container.name} ({container.short_id})")
            stopped[container.id] = self.engine.stop_container(container.id, timeout=self.stop_timeout)

        return stopped

    def restart_containers(self, stopped: Dict[str, bool]) -> List[str]:
        """
        Start every container that was running before it was stopped.

        All containers are attempted even if one fails.

        Returns:
            Ids of the restarted containers

        Raises:
            ContainerRestartError: Listing every container that failed to start
        """
        restarted = []
        failures = {}

        for container_id, was_running in stopped.items():
            if not was_running:
                continue
            try:
                logger.info(f"Restarting container {container_id[:12]}")
                self.engine.start_container(container_id)
                restarted.append(container_id)
            except EngineError as e:
                logger.error(f"Failed to restart container {container_id[:12]}: {e}")
                failures[container_id] = e

        if failures:
            raise ContainerRestartError(failures)

        return restarted

    def guard(self) -> 'ContainerGuard':
        """Context manager that restarts stopped containers on exit."""
        return ContainerGuard(self)


class ContainerGuard:
    """
    Scope in which containers may be stopped.

    On exit every container stopped through the guard is restarted. Exit
    never raises: a restart failure is kept in restart_error and, when the
    scope itself failed, attached as a note to that exception.
    """

    def __init__(self, manager: ContainerSafetyManager):
        self.manager = manager
        self.stopped: Dict[str, bool] = {}
        self.restart_error: Optional[ContainerRestartError] = None

    def stop(self, names: Iterable[str]) -> Dict[str, bool]:
        return self.manager.stop_containers(names, self.stopped)

    @property
    def restarted_any(self) -> bool:
        return any(self.stopped.values())

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        if not self.stopped:
            return False

        try:
            self.manager.restart_containers(self.stopped)
        except ContainerRestartError as e:
            self.restart_error = e
            if exc is not None:
                exc.add_note(str(e))
            else:
                logger.warning(f"Warning: {e}")

        return False
