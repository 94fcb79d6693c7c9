"""End-to-end CI driver: reconcile, provision, prepare, test.

The upstream clone is reconciled first and to completion.  Each environment
then flows through the same ordered stages (provision, then test).  Stages
never raise for per-environment problems; they record them on the
:class:`EnvironmentRun` instead, so the scheduler that maps environments to
stage runs is the only place ordering is decided.
"""

from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass, field
from typing import Callable, List, Sequence, TypeVar

from .config import CIConfig, HostIdentity, WorkspaceLayout
from .environments import (
    ContainerHandle,
    EnvironmentDescriptor,
    LifecycleManager,
    ProvisioningError,
    discover_environments,
    remove_environments,
)
from .matrix import MatrixReport, MatrixRunner, TestRun, errored_runs
from .prepare import BuildPreparer
from .reconcile import RepoState, reconcile
from .tools.docker_runtime import ContainerRuntime

LOGGER = logging.getLogger(__name__)

_T = TypeVar("_T")
_R = TypeVar("_R")


class SequentialScheduler:
    """Run one item at a time, in order."""

    def map(self, func: Callable[[_T], _R], items: Sequence[_T]) -> List[_R]:
        return [func(item) for item in items]


@dataclass(slots=True)
class EnvironmentRun:
    """State threaded through the stages for one environment."""

    descriptor: EnvironmentDescriptor
    handle: ContainerHandle | None = None
    runs: List[TestRun] = field(default_factory=list)
    error: str | None = None


Stage = Callable[[EnvironmentRun], None]


@dataclass(slots=True)
class PipelineResult:
    repo_state: RepoState
    environments: List[EnvironmentRun]
    report: MatrixReport

    @property
    def ok(self) -> bool:
        return self.report.ok


@dataclass(slots=True)
class CleanupResult:
    removed_containers: List[str]
    removed_clone: bool


class CIPipeline:
    """Wire the reconciler, lifecycle manager, preparer and matrix runner together."""

    def __init__(
        self,
        config: CIConfig,
        runtime: ContainerRuntime,
        *,
        identity: HostIdentity | None = None,
        scheduler: SequentialScheduler | None = None,
    ) -> None:
        self.config = config
        self.layout = WorkspaceLayout(config=config, identity=identity or HostIdentity.from_environment())
        self._runtime = runtime
        self._scheduler = scheduler or SequentialScheduler()
        self.preparer = BuildPreparer(runtime, self.layout)
        self.lifecycle = LifecycleManager(runtime, self.layout, self.preparer)
        self.matrix = MatrixRunner(runtime, self.layout)

    @property
    def stages(self) -> List[Stage]:
        return [self._provision, self._test]

    # ------------------------------------------------------------------ run
    def reconcile(self) -> RepoState:
        repository = self.config.repository
        return reconcile(
            self.layout.clone_path,
            repository.branch,
            repository.commit,
            address=repository.address,
        )

    def discover(self) -> List[EnvironmentDescriptor]:
        return discover_environments(self.layout.dockerfiles_dir, self.config)

    def run(self) -> PipelineResult:
        repo_state = self.reconcile()
        descriptors = self.discover()
        environments = self._scheduler.map(self.run_environment, descriptors)
        report = MatrixReport()
        for environment in environments:
            report.extend(environment.runs)
        return PipelineResult(repo_state=repo_state, environments=environments, report=report)

    def run_environment(self, descriptor: EnvironmentDescriptor) -> EnvironmentRun:
        state = EnvironmentRun(descriptor=descriptor)
        for stage in self.stages:
            stage(state)
            if state.error is not None:
                break
        return state

    def _provision(self, state: EnvironmentRun) -> None:
        try:
            state.handle = self.lifecycle.ensure_ready(state.descriptor, self.config.rebuild)
        except ProvisioningError as error:
            LOGGER.error("Environment %s is not ready: %s", state.descriptor.os_identifier, error)
            state.error = str(error)
            state.runs = errored_runs(state.descriptor, self.config.backends, error)

    def _test(self, state: EnvironmentRun) -> None:
        state.runs = self.matrix.run_environment(state.descriptor, self.config.backends)

    # -------------------------------------------------------------- cleanup
    def cleanup(self) -> CleanupResult:
        """Remove environment containers and the upstream clone; nothing else."""

        removed = remove_environments(self._runtime, self.config)
        clone_path = self.layout.clone_path
        removed_clone = clone_path.exists()
        if removed_clone:
            LOGGER.info("Deleting upstream clone %s", clone_path)
            shutil.rmtree(clone_path)
        return CleanupResult(removed_containers=removed, removed_clone=removed_clone)


__all__ = [
    "CIPipeline",
    "CleanupResult",
    "EnvironmentRun",
    "PipelineResult",
    "SequentialScheduler",
    "Stage",
]
