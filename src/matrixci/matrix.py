"""Backend x OS test matrix execution."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import PurePosixPath
from typing import List, Literal, Sequence, Tuple

from .config import WorkspaceLayout
from .environments import EnvironmentDescriptor
from .tools.docker_runtime import ContainerRuntime, RuntimeClientError

LOGGER = logging.getLogger(__name__)

RunStatus = Literal["passed", "failed", "error"]


class ArtifactResolutionError(RuntimeError):
    """Raised when the build artifact cannot be located unambiguously."""


def backend_variable(backend: str) -> str:
    """Value exported for ``backend`` (``"cpu"`` -> ``"CPU"``)."""

    return backend.upper()


def resolve_artifact(
    runtime: ContainerRuntime,
    container: str,
    directory: PurePosixPath | str,
    pattern: str,
) -> PurePosixPath:
    """Return the single file matching ``pattern`` under ``directory`` in ``container``.

    Zero matches and more than one match are both errors; picking one of
    several wheels would test an arbitrary build.
    """

    result = runtime.exec(
        container,
        ["find", str(directory), "-type", "f", "-name", pattern],
        on_output=lambda _text: None,
        stderr=False,
    )
    if not result.ok:
        detail = result.output.strip() or f"exit code {result.exit_code}"
        raise ArtifactResolutionError(f"Cannot search {directory} in {container}: {detail}")
    matches = sorted({line.strip() for line in result.output.splitlines() if line.strip()})
    if not matches:
        raise ArtifactResolutionError(f"No artifact matching {pattern!r} under {directory} in {container}")
    if len(matches) > 1:
        raise ArtifactResolutionError(
            f"Ambiguous artifact in {container}: {len(matches)} files match {pattern!r}: "
            + ", ".join(matches)
        )
    return PurePosixPath(matches[0])


@dataclass(slots=True)
class TestRun:
    """Outcome of one (OS, backend) test invocation."""

    __test__ = False

    os_identifier: str
    backend: str
    artifact_path: str | None = None
    exit_status: int | None = None
    error: str | None = None

    @property
    def status(self) -> RunStatus:
        if self.error is not None or self.exit_status is None:
            return "error"
        return "passed" if self.exit_status == 0 else "failed"

    @property
    def passed(self) -> bool:
        return self.status == "passed"


@dataclass(slots=True)
class MatrixReport:
    """Every recorded run of one matrix invocation."""

    runs: List[TestRun] = field(default_factory=list)

    def extend(self, runs: Sequence[TestRun]) -> None:
        self.runs.extend(runs)

    @property
    def ok(self) -> bool:
        return all(run.passed for run in self.runs)

    @property
    def failures(self) -> List[TestRun]:
        return [run for run in self.runs if not run.passed]

    def outcomes(self) -> List[Tuple[Tuple[str, str], RunStatus]]:
        """One ``((os, backend), status)`` entry per recorded run, in run order."""

        return [((run.os_identifier, run.backend), run.status) for run in self.runs]


def errored_runs(
    descriptor: EnvironmentDescriptor,
    backends: Sequence[str],
    error: Exception,
) -> List[TestRun]:
    """Runs recorded for an environment that never became ready."""

    return [
        TestRun(os_identifier=descriptor.os_identifier, backend=backend, error=str(error))
        for backend in backends
    ]


class MatrixRunner:
    """Execute the external test command once per backend inside each environment."""

    def __init__(self, runtime: ContainerRuntime, layout: WorkspaceLayout) -> None:
        self._runtime = runtime
        self._layout = layout

    def run_backend(self, descriptor: EnvironmentDescriptor, backend: str) -> TestRun:
        matrix_cfg = self._layout.config.matrix
        run = TestRun(os_identifier=descriptor.os_identifier, backend=backend)
        try:
            artifact = resolve_artifact(
                self._runtime,
                descriptor.container_name,
                self._layout.container_artifact_dir,
                matrix_cfg.artifact_pattern,
            )
        except (ArtifactResolutionError, RuntimeClientError) as error:
            LOGGER.error("%s/%s: %s", descriptor.os_identifier, backend, error)
            run.error = str(error)
            return run

        run.artifact_path = str(artifact)
        environment = {
            matrix_cfg.artifact_env: run.artifact_path,
            matrix_cfg.backend_env: backend_variable(backend),
        }
        LOGGER.info("Testing %s on %s with %s", backend, descriptor.os_identifier, artifact.name)
        try:
            result = self._runtime.exec(
                descriptor.container_name,
                list(matrix_cfg.test_command),
                environment=environment,
                workdir=self._layout.container_project_dir,
            )
        except RuntimeClientError as error:
            LOGGER.error("%s/%s: %s", descriptor.os_identifier, backend, error)
            run.error = str(error)
            return run

        run.exit_status = result.exit_code
        if result.ok:
            LOGGER.info("%s/%s passed", descriptor.os_identifier, backend)
        else:
            LOGGER.warning("%s/%s failed with exit code %d", descriptor.os_identifier, backend, result.exit_code)
        return run

    def run_environment(self, descriptor: EnvironmentDescriptor, backends: Sequence[str]) -> List[TestRun]:
        return [self.run_backend(descriptor, backend) for backend in backends]

    def run_matrix(
        self,
        environments: Sequence[EnvironmentDescriptor],
        backends: Sequence[str],
    ) -> MatrixReport:
        """Run every (environment, backend) pair without stopping at failures."""

        report = MatrixReport()
        for descriptor in environments:
            report.extend(self.run_environment(descriptor, backends))
        return report


__all__ = [
    "ArtifactResolutionError",
    "MatrixReport",
    "MatrixRunner",
    "RunStatus",
    "TestRun",
    "backend_variable",
    "errored_runs",
    "resolve_artifact",
]
