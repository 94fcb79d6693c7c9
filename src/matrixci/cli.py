"""Command line entry point for the upstream CI reproduction driver."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, Optional

import typer

from .config import ConfigError, build_config
from .environments import DiscoveryError
from .pipeline import CIPipeline, CleanupResult, PipelineResult
from .tools.docker_runtime import ContainerRuntime, DockerRuntime, RuntimeClientError
from .tools.vcs import GitError

APP_HELP = (
    "Build the upstream dependency inside every per-OS docker environment and "
    "run the test suite once per backend."
)
LOG_FORMAT = "[%(levelname)s] %(message)s"

app = typer.Typer(help=APP_HELP, add_completion=False)


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format=LOG_FORMAT,
        force=True,
    )


def _build_runtime() -> ContainerRuntime:
    return DockerRuntime()


def _render_cleanup(result: CleanupResult) -> None:
    if result.removed_containers:
        typer.echo("Removed containers:")
        for name in result.removed_containers:
            typer.echo(f"- {name}")
    else:
        typer.echo("No environment containers to remove.")
    typer.echo("Removed upstream clone." if result.removed_clone else "No upstream clone to remove.")


def _render_result(result: PipelineResult) -> None:
    state = result.repo_state
    typer.echo(f"Upstream: {state.desired_branch}@{state.current_commit[:12]} ({state.local_path})")
    for environment in result.environments:
        handle = environment.handle
        if handle is None:
            typer.echo(f"{environment.descriptor.os_identifier}: not ready")
            if environment.error:
                typer.echo(f"    ! {environment.error}")
        else:
            steps = ", ".join(action.value for action in handle.actions) or "reused"
            typer.echo(f"{environment.descriptor.os_identifier} [{handle.name}]: {steps}")
        for run in environment.runs:
            detail = f"exit {run.exit_status}" if run.exit_status is not None else (run.error or "")
            typer.echo(f"  - {run.backend}: {run.status} ({detail})")
    outcome = "success" if result.ok else "failure"
    typer.echo(f"Outcome: {outcome}")


@app.command()
def main(
    cleanup: bool = typer.Option(
        False,
        "--cleanup",
        help="Remove the environment containers and the upstream clone instead of running CI.",
    ),
    rebuild: bool = typer.Option(
        False,
        "--rebuild",
        help="Rebuild every environment and the upstream project regardless of current state.",
    ),
    branch: Optional[str] = typer.Option(
        None,
        "--branch",
        "--ngraph_branch",
        help="Upstream branch to use. Default: master",
    ),
    commit: Optional[str] = typer.Option(
        None,
        "--commit",
        "--ngraph_sha",
        help="Upstream commit to check out. Default: latest commit of the branch.",
    ),
    backends: Optional[str] = typer.Option(
        None,
        "--backends",
        help="Comma separated list of backends to test. Default: cpu,interpreter",
    ),
    project_root: Optional[Path] = typer.Option(
        None,
        "--project-root",
        help="Root of the project under test (holds the CI directory). Default: current directory",
    ),
    config: Optional[Path] = typer.Option(
        None,
        "--config",
        "-c",
        help="Optional YAML file overriding the built-in settings.",
    ),
    prepare_after_start: Optional[bool] = typer.Option(
        None,
        "--prepare-after-start/--no-prepare-after-start",
        help="Re-run the build entry point after restarting a stopped container.",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
) -> None:
    """Reconcile the upstream clone, provision environments and run the test matrix."""
    _configure_logging(verbose)

    overrides: Dict[str, Any] = {
        "project_root": project_root,
        "cleanup": cleanup or None,
        "rebuild": rebuild or None,
        "prepare_after_start": prepare_after_start,
        "repository": {"branch": branch, "commit": commit},
        "matrix": {"backends": backends},
    }
    try:
        settings = build_config(config_path=config, overrides=overrides)
    except ConfigError as error:
        typer.echo(f"Error: {error}", err=True)
        raise typer.Exit(code=2) from error

    pipeline = CIPipeline(settings, _build_runtime())

    if settings.cleanup:
        typer.echo("Performing cleanup.")
        try:
            _render_cleanup(pipeline.cleanup())
        except (RuntimeClientError, OSError) as error:
            typer.echo(f"Error: cleanup failed: {error}", err=True)
            raise typer.Exit(code=1) from error
        return

    typer.echo(f"Using upstream branch {settings.repository.branch}")
    if settings.repository.commit:
        typer.echo(f"Using upstream commit {settings.repository.commit}")
    typer.echo(f"Backends tested: {' '.join(settings.backends)}")
    if settings.rebuild:
        typer.echo("Environments are going to be rebuilt.")

    try:
        result = pipeline.run()
    except GitError as error:
        typer.echo(f"Error: upstream repository: {error}", err=True)
        raise typer.Exit(code=1) from error
    except DiscoveryError as error:
        typer.echo(f"Error: {error}", err=True)
        raise typer.Exit(code=1) from error

    _render_result(result)
    if not result.ok:
        raise typer.Exit(code=1)


if __name__ == "__main__":
    app()
