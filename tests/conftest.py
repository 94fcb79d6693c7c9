from __future__ import annotations

import fnmatch
import subprocess
import sys
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Dict, List, Mapping, Sequence

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"

if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from matrixci.config import CIConfig, HostIdentity, WorkspaceLayout  # noqa: E402
from matrixci.tools.docker_runtime import ContainerState, ExecResult, RuntimeClientError  # noqa: E402


class FakeRuntime:
    """In-memory ``ContainerRuntime`` recording every call it receives."""

    def __init__(self) -> None:
        self.containers: Dict[str, ContainerState] = {}
        self.calls: List[tuple] = []
        self.artifacts: Dict[str, List[str]] = {}
        self.find_exit: Dict[str, int] = {}
        self.prepare_exit: Dict[str, int] = {}
        self.test_exit: Dict[tuple[str, str], int] = {}
        self.failing_builds: set[str] = set()
        self.execs: List[dict] = []

    def names(self) -> List[str]:
        return [call[0] for call in self.calls]

    def container_state(self, name: str) -> ContainerState:
        self.calls.append(("state", name))
        return self.containers.get(name, ContainerState.ABSENT)

    def build_image(self, *, context: Path, dockerfile: str, tag: str, build_args: Mapping[str, str]) -> None:
        self.calls.append(("build", tag, dockerfile, dict(build_args), context))
        if tag in self.failing_builds:
            raise RuntimeClientError(f"docker build {tag} failed: boom")

    def create_container(
        self,
        *,
        image: str,
        name: str,
        user: str,
        mounts: Mapping[Path, PurePosixPath],
        privileged: bool = True,
    ) -> None:
        self.calls.append(("create", name, image, user, dict(mounts), privileged))
        self.containers[name] = ContainerState.RUNNING

    def start_container(self, name: str) -> None:
        self.calls.append(("start", name))
        self.containers[name] = ContainerState.RUNNING

    def remove_container(self, name: str) -> None:
        self.calls.append(("remove", name))
        self.containers.pop(name, None)

    def exec(
        self,
        name: str,
        command: Sequence[str],
        *,
        environment: Mapping[str, str] | None = None,
        workdir: PurePosixPath | str | None = None,
        on_output=None,
        stderr: bool = True,
    ) -> ExecResult:
        env = dict(environment or {})
        record = {
            "name": name,
            "command": list(command),
            "environment": env,
            "workdir": str(workdir) if workdir is not None else None,
            "stderr": stderr,
        }
        self.execs.append(record)
        self.calls.append(("exec", name, command[0]))
        if command[0] == "find":
            return ExecResult(self.find_exit.get(name, 0), "\n".join(self.artifacts.get(name, [])))
        if command[0] == "bash":
            return ExecResult(self.prepare_exit.get(name, 0), "")
        backend = next((value for key, value in env.items() if key.endswith("BACKEND")), "")
        return ExecResult(self.test_exit.get((name, backend), 0), "")

    def list_containers(self, pattern: str) -> List[str]:
        self.calls.append(("list", pattern))
        return sorted(name for name in self.containers if fnmatch.fnmatchcase(name, pattern))

    def test_runs(self) -> List[dict]:
        return [record for record in self.execs if record["command"][0] not in {"find", "bash"}]


@dataclass(slots=True)
class Upstream:
    """Local stand-in for the upstream repository."""

    path: Path
    commits: Dict[str, str] = field(default_factory=dict)

    @property
    def address(self) -> str:
        return str(self.path)


def _git(cwd: Path, *args: str) -> str:
    result = subprocess.run(
        ["git", *args],
        cwd=cwd,
        check=True,
        capture_output=True,
        text=True,
    )
    return result.stdout.strip()


@pytest.fixture()
def fake_runtime() -> FakeRuntime:
    return FakeRuntime()


@pytest.fixture()
def identity() -> HostIdentity:
    return HostIdentity(
        user="builder",
        uid=1000,
        gid=1000,
        proxies={"http_proxy": "http://proxy:3128", "https_proxy": ""},
    )


@pytest.fixture()
def project_root(tmp_path: Path) -> Path:
    """Project checkout with a CI directory holding two OS templates."""

    root = tmp_path / "workspace" / "ngraph-onnx"
    dockerfiles = root / ".ci" / "jenkins" / "dockerfiles"
    (dockerfiles / "postprocess").mkdir(parents=True)
    (dockerfiles / "ubuntu_16_04.dockerfile").write_text("FROM ubuntu:16.04\n", encoding="utf-8")
    (dockerfiles / "centos_7.dockerfile").write_text("FROM centos:7\n", encoding="utf-8")
    (dockerfiles / "postprocess" / "append_user.dockerfile").write_text(
        "ARG base_image\nFROM ${base_image}\n", encoding="utf-8"
    )
    return root


@pytest.fixture()
def upstream(tmp_path: Path) -> Upstream:
    """Upstream repo with two commits on master and one on a feature branch."""

    path = tmp_path / "upstream"
    path.mkdir()
    _git(path, "init")
    _git(path, "symbolic-ref", "HEAD", "refs/heads/master")
    _git(path, "config", "user.email", "ci@example.com")
    _git(path, "config", "user.name", "CI")

    repo = Upstream(path=path)
    (path / "README.md").write_text("first\n", encoding="utf-8")
    _git(path, "add", ".")
    _git(path, "commit", "-m", "first")
    repo.commits["first"] = _git(path, "rev-parse", "HEAD")

    (path / "README.md").write_text("second\n", encoding="utf-8")
    _git(path, "commit", "-am", "second")
    repo.commits["second"] = _git(path, "rev-parse", "HEAD")

    _git(path, "checkout", "-b", "feature", repo.commits["first"])
    (path / "feature.txt").write_text("feature\n", encoding="utf-8")
    _git(path, "add", ".")
    _git(path, "commit", "-m", "feature")
    repo.commits["feature"] = _git(path, "rev-parse", "HEAD")
    _git(path, "checkout", "master")
    return repo


@pytest.fixture()
def make_config(project_root: Path, upstream: Upstream):
    def _make(**values: object) -> CIConfig:
        repository = {"address": upstream.address}
        repository.update(values.pop("repository", {}))  # type: ignore[arg-type]
        payload: Dict[str, object] = {"project_root": project_root, "repository": repository}
        payload.update(values)
        return CIConfig.model_validate(payload)

    return _make


@pytest.fixture()
def layout(make_config, identity: HostIdentity) -> WorkspaceLayout:
    return WorkspaceLayout(config=make_config(), identity=identity)
