"""Run configuration for the CI driver.

The configuration is assembled exactly once, when the CLI starts, from three
layers (lowest priority first):

1. the defaults declared on the models below;
2. an optional YAML overrides file (``--config``);
3. explicit command line flags.

The resulting :class:`CIConfig` is frozen and handed to every component, so no
stage can observe a flag changing mid-run.  Host specific facts (user, uid,
gid, proxy settings) live in :class:`HostIdentity`, and every path the driver
touches, on the host or inside a container, is derived by
:class:`WorkspaceLayout`.
"""

from __future__ import annotations

import getpass
import os
import re
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Any, Dict, Mapping, Tuple

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, ValidationInfo, field_validator

DEFAULT_BACKENDS: Tuple[str, ...] = ("cpu", "interpreter")
PROXY_VARIABLES: Tuple[str, ...] = ("http_proxy", "https_proxy")

_BACKEND_SPLIT_RE = re.compile(r"[,\s]+")


class ConfigError(RuntimeError):
    """Raised when the configuration file or the assembled settings are invalid."""


def parse_backends(value: str | Tuple[str, ...] | list[str] | None) -> Tuple[str, ...]:
    """Normalise a comma or whitespace separated backend list.

    Order and duplicates are preserved; empty tokens are dropped.
    """

    if value is None:
        return ()
    if isinstance(value, str):
        tokens = _BACKEND_SPLIT_RE.split(value)
    else:
        tokens = [str(item) for item in value]
    return tuple(token.strip() for token in tokens if token and token.strip())


class SettingsModel(BaseModel):
    """Base model for immutable settings sections."""

    model_config = ConfigDict(extra="forbid", frozen=True)


class RepositorySettings(SettingsModel):
    """Upstream repository that is cloned next to the project."""

    address: str = "https://github.com/NervanaSystems/ngraph.git"
    directory: str = "ngraph"
    branch: str = "master"
    commit: str = ""

    @field_validator("branch")
    @classmethod
    def _branch_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("branch must not be empty")
        return value.strip()

    @field_validator("commit")
    @classmethod
    def _strip_commit(cls, value: str) -> str:
        return value.strip()


class DockerSettings(SettingsModel):
    """Naming templates and build inputs for the per-OS environments."""

    os_placeholder: str = "<OPERATING_SYSTEM>"
    container_name_pattern: str = "ngraph-onnx_ci_reproduction_<OPERATING_SYSTEM>"
    image_name_pattern: str = "aibt/aibt/ngraph/<OPERATING_SYSTEM>/base"
    base_tag: str = "ci"
    exec_tag: str = "ci_run"
    dockerfiles_dir: str = "dockerfiles"
    dockerfile_suffix: str = ".dockerfile"
    user_dockerfile: str = "postprocess/append_user.dockerfile"
    privileged: bool = True

    @field_validator("container_name_pattern", "image_name_pattern")
    @classmethod
    def _pattern_has_placeholder(cls, value: str, info: ValidationInfo) -> str:
        placeholder = info.data.get("os_placeholder", "<OPERATING_SYSTEM>")
        if placeholder not in value:
            raise ValueError(f"pattern must contain {placeholder!r}")
        return value

    def container_name(self, segment: str) -> str:
        return self.container_name_pattern.replace(self.os_placeholder, segment)

    def image_name(self, segment: str) -> str:
        return self.image_name_pattern.replace(self.os_placeholder, segment)

    def container_glob(self) -> str:
        """Return the container pattern with the OS placeholder as a wildcard."""

        return self.container_name_pattern.replace(self.os_placeholder, "*")


class MatrixSettings(SettingsModel):
    """Backend matrix and the in-environment commands driven for it."""

    backends: Tuple[str, ...] = DEFAULT_BACKENDS
    prepare_script: str = "prepare_environment.sh"
    artifact_dir: str = "ngraph/python/dist"
    artifact_pattern: str = "ngraph*.whl"
    artifact_env: str = "TOX_INSTALL_NGRAPH_FROM"
    backend_env: str = "NGRAPH_BACKEND"
    test_command: Tuple[str, ...] = ("tox", "-c", ".")

    @field_validator("backends", mode="before")
    @classmethod
    def _normalise_backends(cls, value: Any) -> Tuple[str, ...]:
        backends = parse_backends(value)
        if not backends:
            raise ValueError("at least one backend is required")
        return backends

    @field_validator("test_command", mode="before")
    @classmethod
    def _command_tuple(cls, value: Any) -> Tuple[str, ...]:
        if isinstance(value, str):
            value = value.split()
        command = tuple(str(part) for part in value)
        if not command:
            raise ValueError("test_command must not be empty")
        return command


class CIConfig(SettingsModel):
    """Immutable configuration for a single driver invocation."""

    project_root: Path = Field(default_factory=Path.cwd)
    ci_dir: str = ".ci/jenkins"
    cleanup: bool = False
    rebuild: bool = False
    prepare_after_start: bool = False
    repository: RepositorySettings = Field(default_factory=RepositorySettings)
    docker: DockerSettings = Field(default_factory=DockerSettings)
    matrix: MatrixSettings = Field(default_factory=MatrixSettings)

    @field_validator("project_root")
    @classmethod
    def _absolute_root(cls, value: Path) -> Path:
        return Path(value).expanduser().resolve()

    @property
    def backends(self) -> Tuple[str, ...]:
        return self.matrix.backends

    @property
    def backends_csv(self) -> str:
        """Comma-joined backend list as passed to the build entry point."""

        return ",".join(self.matrix.backends)


def load_overrides(path: Path | str) -> Dict[str, Any]:
    """Read a YAML overrides file and return its top-level mapping."""

    config_path = Path(path)
    if not config_path.is_file():
        raise ConfigError(f"Config file not found: {config_path}")
    try:
        with config_path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except (OSError, yaml.YAMLError) as error:
        raise ConfigError(f"Failed to parse config {config_path}: {error}") from error
    if not isinstance(data, dict):
        raise ConfigError("Configuration must be a mapping at the top level.")
    return data


def _merge(base: Dict[str, Any], overrides: Mapping[str, Any]) -> Dict[str, Any]:
    merged = dict(base)
    for key, value in overrides.items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), Mapping):
            merged[key] = _merge(dict(merged[key]), value)
        else:
            merged[key] = value
    return merged


def build_config(
    *,
    config_path: Path | str | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> CIConfig:
    """Assemble the frozen :class:`CIConfig` from YAML and explicit overrides.

    ``overrides`` uses the same nested shape as the YAML file; entries whose
    value is ``None`` are ignored so unset CLI flags fall through to the file.
    """

    data: Dict[str, Any] = load_overrides(config_path) if config_path else {}
    if overrides:
        data = _merge(data, _drop_unset(overrides))
    try:
        return CIConfig.model_validate(data)
    except ValidationError as error:
        raise ConfigError(f"Invalid configuration: {error}") from error


def _drop_unset(values: Mapping[str, Any]) -> Dict[str, Any]:
    cleaned: Dict[str, Any] = {}
    for key, value in values.items():
        if value is None:
            continue
        if isinstance(value, Mapping):
            nested = _drop_unset(value)
            if nested:
                cleaned[key] = nested
            continue
        cleaned[key] = value
    return cleaned


@dataclass(frozen=True, slots=True)
class HostIdentity:
    """Invoking user and proxy settings forwarded into the environments."""

    user: str
    uid: int
    gid: int
    proxies: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_environment(cls, env: Mapping[str, str] | None = None) -> "HostIdentity":
        environ = os.environ if env is None else env
        user = environ.get("USER") or getpass.getuser()
        proxies = {
            name: environ.get(name) or environ.get(name.upper()) or ""
            for name in PROXY_VARIABLES
        }
        return cls(user=user, uid=os.getuid(), gid=os.getgid(), proxies=proxies)

    def proxy_build_args(self) -> Dict[str, str]:
        """Proxy build arguments; always present, empty when unset on the host."""

        return {name: self.proxies.get(name, "") for name in PROXY_VARIABLES}


@dataclass(frozen=True, slots=True)
class WorkspaceLayout:
    """Host and container paths derived from the configuration."""

    config: CIConfig
    identity: HostIdentity

    @property
    def project_root(self) -> Path:
        return self.config.project_root

    @property
    def ci_path(self) -> Path:
        return self.project_root / self.config.ci_dir

    @property
    def clone_path(self) -> Path:
        return self.project_root / self.config.repository.directory

    @property
    def dockerfiles_dir(self) -> Path:
        return self.ci_path / self.config.docker.dockerfiles_dir

    @property
    def mount_source(self) -> Path:
        """Host directory bind-mounted as the container user's home."""

        return self.project_root.parent

    @property
    def container_home(self) -> PurePosixPath:
        return PurePosixPath("/home") / self.identity.user

    @property
    def container_project_dir(self) -> PurePosixPath:
        return self.container_home / self.project_root.name

    @property
    def container_ci_dir(self) -> PurePosixPath:
        return self.container_project_dir / self.config.ci_dir

    @property
    def container_artifact_dir(self) -> PurePosixPath:
        return self.container_project_dir / self.config.matrix.artifact_dir


__all__ = [
    "CIConfig",
    "ConfigError",
    "DEFAULT_BACKENDS",
    "DockerSettings",
    "HostIdentity",
    "MatrixSettings",
    "RepositorySettings",
    "WorkspaceLayout",
    "build_config",
    "load_overrides",
    "parse_backends",
]
