"""Container runtime access for the per-OS CI environments.

``ContainerRuntime`` is the narrow surface the lifecycle manager, the build
preparer and the matrix runner depend on.  ``DockerRuntime`` implements it on
top of the docker SDK; tests inject an in-memory fake instead.
"""

from __future__ import annotations

import codecs
import fnmatch
import logging
import re
from dataclasses import dataclass
from enum import Enum
from pathlib import Path, PurePosixPath
from typing import Any, Callable, List, Mapping, Protocol, Sequence

import docker
from docker.errors import APIError, BuildError, DockerException, ImageNotFound, NotFound

LOGGER = logging.getLogger(__name__)
EXEC_LOGGER = logging.getLogger("matrixci.exec")

OutputCallback = Callable[[str], None]


class RuntimeClientError(RuntimeError):
    """Raised when the container runtime rejects or fails an operation."""


class ContainerState(str, Enum):
    """Observed state of a named container."""

    ABSENT = "absent"
    RUNNING = "running"
    STOPPED = "stopped"


@dataclass(slots=True)
class ExecResult:
    """Outcome of a command executed inside a container."""

    exit_code: int
    output: str

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class ContainerRuntime(Protocol):
    """Operations the driver needs from the local container runtime."""

    def container_state(self, name: str) -> ContainerState:
        ...

    def build_image(
        self,
        *,
        context: Path,
        dockerfile: str,
        tag: str,
        build_args: Mapping[str, str],
    ) -> None:
        ...

    def create_container(
        self,
        *,
        image: str,
        name: str,
        user: str,
        mounts: Mapping[Path, PurePosixPath],
        privileged: bool = True,
    ) -> None:
        ...

    def start_container(self, name: str) -> None:
        ...

    def remove_container(self, name: str) -> None:
        ...

    def exec(
        self,
        name: str,
        command: Sequence[str],
        *,
        environment: Mapping[str, str] | None = None,
        workdir: PurePosixPath | str | None = None,
        on_output: OutputCallback | None = None,
        stderr: bool = True,
    ) -> ExecResult:
        ...

    def list_containers(self, pattern: str) -> List[str]:
        ...


def _log_exec_output(text: str) -> None:
    for line in text.splitlines():
        if line.strip():
            EXEC_LOGGER.info(line)


class DockerRuntime:
    """``ContainerRuntime`` backed by the docker SDK."""

    def __init__(self, client: Any | None = None) -> None:
        self._client = client

    @property
    def client(self) -> Any:
        if self._client is None:
            try:
                self._client = docker.from_env()
            except DockerException as error:
                raise RuntimeClientError(f"Unable to connect to the docker daemon: {error}") from error
        return self._client

    # ------------------------------------------------------------- containers
    def container_state(self, name: str) -> ContainerState:
        try:
            container = self.client.containers.get(name)
        except NotFound:
            return ContainerState.ABSENT
        except APIError as error:
            raise RuntimeClientError(f"Failed to inspect container {name}: {error}") from error
        if container.status == "running":
            return ContainerState.RUNNING
        return ContainerState.STOPPED

    def create_container(
        self,
        *,
        image: str,
        name: str,
        user: str,
        mounts: Mapping[Path, PurePosixPath],
        privileged: bool = True,
    ) -> None:
        volumes = {
            str(source): {"bind": str(target), "mode": "rw"}
            for source, target in mounts.items()
        }
        LOGGER.info("Creating container %s from %s", name, image)
        try:
            self.client.containers.run(
                image,
                detach=True,
                tty=True,
                privileged=privileged,
                user=user,
                name=name,
                volumes=volumes,
            )
        except (ImageNotFound, APIError) as error:
            raise RuntimeClientError(f"Failed to start container {name}: {error}") from error

    def start_container(self, name: str) -> None:
        LOGGER.info("Starting stopped container %s", name)
        try:
            self.client.containers.get(name).start()
        except (NotFound, APIError) as error:
            raise RuntimeClientError(f"Failed to start container {name}: {error}") from error

    def remove_container(self, name: str) -> None:
        """Force-remove ``name``; a missing container is not an error."""

        try:
            container = self.client.containers.get(name)
        except NotFound:
            return
        LOGGER.info("Removing container %s", name)
        try:
            container.remove(force=True)
        except NotFound:
            return
        except APIError as error:
            raise RuntimeClientError(f"Failed to remove container {name}: {error}") from error

    def list_containers(self, pattern: str) -> List[str]:
        """Return names of all containers (any state) matching the glob ``pattern``."""

        prefix = pattern.split("*", 1)[0]
        filters = {"name": re.escape(prefix)} if prefix else None
        try:
            containers = self.client.containers.list(all=True, filters=filters)
        except APIError as error:
            raise RuntimeClientError(f"Failed to list containers: {error}") from error
        return sorted(
            container.name
            for container in containers
            if fnmatch.fnmatchcase(container.name, pattern)
        )

    # ----------------------------------------------------------------- images
    def build_image(
        self,
        *,
        context: Path,
        dockerfile: str,
        tag: str,
        build_args: Mapping[str, str],
    ) -> None:
        LOGGER.info("Building image %s from %s", tag, dockerfile)
        try:
            _image, logs = self.client.images.build(
                path=str(context),
                dockerfile=dockerfile,
                tag=tag,
                buildargs=dict(build_args),
                rm=True,
            )
        except BuildError as error:
            raise RuntimeClientError(f"docker build {tag} failed: {error.msg}") from error
        except APIError as error:
            raise RuntimeClientError(f"docker build {tag} failed: {error}") from error
        for chunk in logs:
            stream = chunk.get("stream") if isinstance(chunk, dict) else None
            if stream and stream.strip():
                LOGGER.debug(stream.rstrip())

    # ------------------------------------------------------------------- exec
    def exec(
        self,
        name: str,
        command: Sequence[str],
        *,
        environment: Mapping[str, str] | None = None,
        workdir: PurePosixPath | str | None = None,
        on_output: OutputCallback | None = None,
        stderr: bool = True,
    ) -> ExecResult:
        """Run ``command`` in ``name`` and collect its output.

        ``on_output`` receives whole lines as they complete; only an
        unterminated final line is delivered without its newline.
        """

        api = self.client.api
        callback = on_output or _log_exec_output
        try:
            handle = api.exec_create(
                name,
                list(command),
                stderr=stderr,
                environment=dict(environment) if environment else None,
                workdir=str(workdir) if workdir else None,
            )
            decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
            chunks: List[str] = []
            pending = ""
            for chunk in api.exec_start(handle["Id"], stream=True):
                text = decoder.decode(chunk) if isinstance(chunk, bytes) else str(chunk)
                chunks.append(text)
                lines, newline, pending = (pending + text).rpartition("\n")
                if newline:
                    callback(lines + newline)
            tail = decoder.decode(b"", final=True)
            chunks.append(tail)
            if pending + tail:
                callback(pending + tail)
            details = api.exec_inspect(handle["Id"])
        except (NotFound, APIError) as error:
            raise RuntimeClientError(f"Failed to execute {command[0]!r} in {name}: {error}") from error
        exit_code = details.get("ExitCode")
        return ExecResult(exit_code=-1 if exit_code is None else int(exit_code), output="".join(chunks))


__all__ = [
    "ContainerRuntime",
    "ContainerState",
    "DockerRuntime",
    "ExecResult",
    "RuntimeClientError",
]
