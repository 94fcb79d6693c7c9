"""Upstream CI reproduction driver: reconcile, provision, prepare and test."""

from .config import CIConfig, ConfigError, HostIdentity, WorkspaceLayout, build_config
from .environments import (
    ContainerHandle,
    DiscoveryError,
    EnvironmentDescriptor,
    LifecycleAction,
    LifecycleManager,
    ProvisioningError,
    discover_environments,
    plan_transition,
)
from .matrix import ArtifactResolutionError, MatrixReport, MatrixRunner, TestRun, resolve_artifact
from .pipeline import CIPipeline, CleanupResult, PipelineResult, SequentialScheduler
from .prepare import BuildPreparer, PreparationError
from .reconcile import RepoState, reconcile

__version__ = "0.1.0"

__all__ = [
    "ArtifactResolutionError",
    "BuildPreparer",
    "CIConfig",
    "CIPipeline",
    "CleanupResult",
    "ConfigError",
    "ContainerHandle",
    "DiscoveryError",
    "EnvironmentDescriptor",
    "HostIdentity",
    "LifecycleAction",
    "LifecycleManager",
    "MatrixReport",
    "MatrixRunner",
    "PipelineResult",
    "PreparationError",
    "ProvisioningError",
    "RepoState",
    "SequentialScheduler",
    "TestRun",
    "WorkspaceLayout",
    "build_config",
    "discover_environments",
    "plan_transition",
    "reconcile",
    "resolve_artifact",
]
