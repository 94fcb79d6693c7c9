"""Run the in-environment build entry point."""

from __future__ import annotations

import logging
import shlex
from typing import Sequence

from .config import WorkspaceLayout
from .environments import ProvisioningError
from .tools.docker_runtime import ContainerRuntime

LOGGER = logging.getLogger(__name__)


class PreparationError(ProvisioningError):
    """Raised when the build entry point exits with a non-zero status."""


class BuildPreparer:
    """Invoke the prepare script inside a freshly created container.

    The script builds the upstream project and leaves an installable artifact
    under the artifact directory; what it does beyond that is its own business.
    """

    def __init__(self, runtime: ContainerRuntime, layout: WorkspaceLayout) -> None:
        self._runtime = runtime
        self._layout = layout

    def command(self, backends: Sequence[str]) -> list[str]:
        script = self._layout.container_ci_dir / self._layout.config.matrix.prepare_script
        invocation = " ".join(
            [
                shlex.quote(str(script)),
                shlex.quote(f"--build-dir={self._layout.container_project_dir}"),
                shlex.quote(f"--backends={','.join(backends)}"),
            ]
        )
        return ["bash", "-c", invocation]

    def prepare(self, container: str, backends: Sequence[str]) -> None:
        LOGGER.info("Preparing %s for backends %s", container, ",".join(backends))
        result = self._runtime.exec(container, self.command(backends))
        if not result.ok:
            raise PreparationError(
                f"Build entry point failed in {container} with exit code {result.exit_code}"
            )


__all__ = ["BuildPreparer", "PreparationError"]
