from __future__ import annotations

from dataclasses import dataclass

import docker
from docker.errors import DockerException

from .errors import PreconditionError


@dataclass(frozen=True)
class ContainerRef:
    id: str
    name: str


def _client() -> docker.DockerClient:
    return docker.from_env()


def docker_available() -> bool:
    try:
        c = _client()
        c.ping()
        return True
    except DockerException:
        return False


def list_containers() -> list[ContainerRef]:
    """All containers known to the engine, stopped ones included.

    Returns an empty list when the engine is not reachable: with no engine
    there is nothing a restart could disrupt.
    """
    if not docker_available():
        return []
    c = _client()
    try:
        containers = c.containers.list(all=True)
    except DockerException as e:
        raise PreconditionError(f"Cannot list containers: {e}") from e
    return [ContainerRef(id=x.id, name=x.name) for x in containers]
