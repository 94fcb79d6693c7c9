"""Per-OS execution environments: discovery and container lifecycle.

Each ``<os>.dockerfile`` found in the dockerfile directory yields one
:class:`EnvironmentDescriptor`.  :class:`LifecycleManager` turns a descriptor
into a running container, deciding between reuse, restart and rebuild from a
fresh look at the runtime every time it is asked.

The decision itself is a lookup in :data:`TRANSITIONS`, keyed by the observed
:class:`ContainerState` and the ``force_rebuild`` flag.  Keeping it as data
lets every combination be checked without a container runtime.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Dict, List, Tuple

from .config import CIConfig, HostIdentity, WorkspaceLayout
from .tools.docker_runtime import ContainerRuntime, ContainerState, RuntimeClientError
from .utils import slugify

if TYPE_CHECKING:
    from .prepare import BuildPreparer

LOGGER = logging.getLogger(__name__)


class ProvisioningError(RuntimeError):
    """Raised when an environment cannot be brought to a ready state."""


class DiscoveryError(RuntimeError):
    """Raised when no environment templates can be found."""


@dataclass(frozen=True, slots=True)
class EnvironmentDescriptor:
    """Names derived for one operating system."""

    os_identifier: str
    dockerfile: str
    base_image_ref: str
    exec_image_ref: str
    container_name: str

    @classmethod
    def from_os(cls, os_identifier: str, config: CIConfig) -> "EnvironmentDescriptor":
        docker_cfg = config.docker
        image_name = docker_cfg.image_name(slugify(os_identifier))
        return cls(
            os_identifier=os_identifier,
            dockerfile=f"{os_identifier}{docker_cfg.dockerfile_suffix}",
            base_image_ref=f"{image_name}:{docker_cfg.base_tag}",
            exec_image_ref=f"{image_name}:{docker_cfg.exec_tag}",
            container_name=docker_cfg.container_name(slugify(os_identifier, lowercase=False)),
        )


def discover_environments(dockerfiles_dir: Path, config: CIConfig) -> List[EnvironmentDescriptor]:
    """Return one descriptor per ``*<suffix>`` file directly under ``dockerfiles_dir``."""

    suffix = config.docker.dockerfile_suffix
    if not dockerfiles_dir.is_dir():
        raise DiscoveryError(f"Dockerfile directory not found: {dockerfiles_dir}")
    descriptors = [
        EnvironmentDescriptor.from_os(path.name[: -len(suffix)], config)
        for path in sorted(dockerfiles_dir.iterdir())
        if path.is_file() and path.name.endswith(suffix) and len(path.name) > len(suffix)
    ]
    if not descriptors:
        raise DiscoveryError(f"No *{suffix} templates found in {dockerfiles_dir}")
    LOGGER.info("Discovered environments: %s", ", ".join(item.os_identifier for item in descriptors))
    return descriptors


class LifecycleAction(str, Enum):
    """Steps the lifecycle manager can take for one container."""

    REMOVE = "remove"
    BUILD_IMAGES = "build-images"
    CREATE = "create"
    START = "start"
    PREPARE = "prepare"


_REBUILD: Tuple[LifecycleAction, ...] = (
    LifecycleAction.BUILD_IMAGES,
    LifecycleAction.CREATE,
    LifecycleAction.PREPARE,
)
_REPLACE: Tuple[LifecycleAction, ...] = (LifecycleAction.REMOVE, *_REBUILD)

TRANSITIONS: Dict[Tuple[ContainerState, bool], Tuple[LifecycleAction, ...]] = {
    (ContainerState.ABSENT, False): _REBUILD,
    (ContainerState.ABSENT, True): _REBUILD,
    (ContainerState.RUNNING, False): (),
    (ContainerState.RUNNING, True): _REPLACE,
    (ContainerState.STOPPED, False): (LifecycleAction.START,),
    (ContainerState.STOPPED, True): _REPLACE,
}


def plan_transition(
    state: ContainerState,
    force_rebuild: bool,
    *,
    prepare_after_start: bool = False,
) -> Tuple[LifecycleAction, ...]:
    """Return the ordered actions for ``state`` under ``force_rebuild``.

    A restarted container keeps whatever build it held when it stopped unless
    ``prepare_after_start`` asks for the build entry point to run again.
    """

    actions = TRANSITIONS[(state, bool(force_rebuild))]
    if prepare_after_start and actions == (LifecycleAction.START,):
        return (LifecycleAction.START, LifecycleAction.PREPARE)
    return actions


@dataclass(slots=True)
class ContainerHandle:
    """A ready container and the actions taken to get it there."""

    descriptor: EnvironmentDescriptor
    initial_state: ContainerState
    actions: Tuple[LifecycleAction, ...] = field(default_factory=tuple)

    @property
    def name(self) -> str:
        return self.descriptor.container_name

    @property
    def reused(self) -> bool:
        return not self.actions


class LifecycleManager:
    """Ensure a running container exists for each environment descriptor."""

    def __init__(
        self,
        runtime: ContainerRuntime,
        layout: WorkspaceLayout,
        preparer: "BuildPreparer",
    ) -> None:
        self._runtime = runtime
        self._layout = layout
        self._preparer = preparer

    @property
    def config(self) -> CIConfig:
        return self._layout.config

    @property
    def identity(self) -> HostIdentity:
        return self._layout.identity

    def ensure_ready(self, descriptor: EnvironmentDescriptor, force_rebuild: bool) -> ContainerHandle:
        try:
            state = self._runtime.container_state(descriptor.container_name)
        except RuntimeClientError as error:
            raise ProvisioningError(f"{descriptor.os_identifier}: {error}") from error
        actions = plan_transition(
            state,
            force_rebuild,
            prepare_after_start=self.config.prepare_after_start,
        )
        LOGGER.info(
            "Container %s is %s (rebuild=%s): %s",
            descriptor.container_name,
            state.value,
            force_rebuild,
            ", ".join(action.value for action in actions) or "reuse",
        )
        for action in actions:
            try:
                self._apply(action, descriptor)
            except RuntimeClientError as error:
                raise ProvisioningError(
                    f"{descriptor.os_identifier}: {action.value} failed: {error}"
                ) from error
        return ContainerHandle(descriptor=descriptor, initial_state=state, actions=actions)

    def _apply(self, action: LifecycleAction, descriptor: EnvironmentDescriptor) -> None:
        if action is LifecycleAction.REMOVE:
            self._runtime.remove_container(descriptor.container_name)
        elif action is LifecycleAction.BUILD_IMAGES:
            self.build_images(descriptor)
        elif action is LifecycleAction.CREATE:
            self._runtime.create_container(
                image=descriptor.exec_image_ref,
                name=descriptor.container_name,
                user=self.identity.user,
                mounts={self._layout.mount_source: self._layout.container_home},
                privileged=self.config.docker.privileged,
            )
        elif action is LifecycleAction.START:
            self._runtime.start_container(descriptor.container_name)
        elif action is LifecycleAction.PREPARE:
            self._preparer.prepare(descriptor.container_name, self.config.backends)

    def build_images(self, descriptor: EnvironmentDescriptor) -> None:
        """Build the base image, then the exec image layered on top of it."""

        docker_cfg = self.config.docker
        proxies = self.identity.proxy_build_args()
        context = self._layout.dockerfiles_dir
        self._runtime.build_image(
            context=context,
            dockerfile=descriptor.dockerfile,
            tag=descriptor.base_image_ref,
            build_args=proxies,
        )
        self._runtime.build_image(
            context=context,
            dockerfile=docker_cfg.user_dockerfile,
            tag=descriptor.exec_image_ref,
            build_args={
                **proxies,
                "base_image": descriptor.base_image_ref,
                "UID": str(self.identity.uid),
                "GID": str(self.identity.gid),
                "USERNAME": self.identity.user,
            },
        )


def remove_environments(runtime: ContainerRuntime, config: CIConfig) -> List[str]:
    """Force-remove every container matching the environment naming pattern."""

    names = runtime.list_containers(config.docker.container_glob())
    for name in names:
        runtime.remove_container(name)
    return names


__all__ = [
    "ContainerHandle",
    "DiscoveryError",
    "EnvironmentDescriptor",
    "LifecycleAction",
    "LifecycleManager",
    "ProvisioningError",
    "TRANSITIONS",
    "discover_environments",
    "plan_transition",
    "remove_environments",
]
