"""Adapters for the external tools the driver orchestrates."""

from .docker_runtime import ContainerRuntime, ContainerState, DockerRuntime, ExecResult, RuntimeClientError
from .vcs import GitError, GitRepository

__all__ = [
    "ContainerRuntime",
    "ContainerState",
    "DockerRuntime",
    "ExecResult",
    "GitError",
    "GitRepository",
    "RuntimeClientError",
]
