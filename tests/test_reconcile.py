from __future__ import annotations

import subprocess
from pathlib import Path

import pytest

from matrixci.reconcile import (
    ACTION_CHECKOUT_BRANCH,
    ACTION_CHECKOUT_COMMIT,
    ACTION_CLONE,
    reconcile,
)
from matrixci.tools.vcs import GitError, GitRepository


def test_missing_clone_is_created_at_branch_tip(tmp_path: Path, upstream) -> None:
    target = tmp_path / "clone"

    state = reconcile(target, "master", "", address=upstream.address)

    assert GitRepository.exists(target)
    assert state.actions == [ACTION_CLONE]
    assert state.current_branch == "master"
    assert state.current_commit == upstream.commits["second"]
    assert state.desired_commit == upstream.commits["second"]
    assert state.satisfied
    assert not state.detached


def test_second_call_with_same_parameters_is_a_no_op(tmp_path: Path, upstream) -> None:
    target = tmp_path / "clone"
    first = reconcile(target, "master", "", address=upstream.address)

    second = reconcile(target, "master", "", address=upstream.address)

    assert not second.changed
    assert second.current_commit == first.current_commit
    assert second.current_branch == first.current_branch


def test_branch_switch_checks_out_requested_branch(tmp_path: Path, upstream) -> None:
    target = tmp_path / "clone"
    reconcile(target, "master", "", address=upstream.address)

    state = reconcile(target, "feature", "", address=upstream.address)

    assert state.actions == [ACTION_CHECKOUT_BRANCH]
    assert GitRepository(target).current_branch() == "feature"
    assert state.current_commit == upstream.commits["feature"]


def test_pinned_commit_is_checked_out_detached_and_stays_put(tmp_path: Path, upstream) -> None:
    target = tmp_path / "clone"
    pinned = upstream.commits["first"]

    state = reconcile(target, "master", pinned, address=upstream.address)

    assert state.actions == [ACTION_CLONE, ACTION_CHECKOUT_COMMIT]
    assert state.current_commit == pinned
    assert state.detached
    assert state.satisfied

    again = reconcile(target, "master", pinned, address=upstream.address)
    assert not again.changed
    assert again.current_commit == pinned


def test_abbreviated_commit_resolves_to_full_sha(tmp_path: Path, upstream) -> None:
    target = tmp_path / "clone"
    pinned = upstream.commits["first"]

    state = reconcile(target, "master", pinned[:10], address=upstream.address)

    assert state.current_commit == pinned
    assert state.desired_commit == pinned


def test_pinned_commit_on_other_branch_from_existing_clone(tmp_path: Path, upstream) -> None:
    target = tmp_path / "clone"
    reconcile(target, "master", "", address=upstream.address)

    state = reconcile(target, "feature", upstream.commits["first"], address=upstream.address)

    assert state.actions == [ACTION_CHECKOUT_BRANCH, ACTION_CHECKOUT_COMMIT]
    assert state.current_branch == "feature"
    assert state.current_commit == upstream.commits["first"]


def test_unknown_commit_is_fatal(tmp_path: Path, upstream) -> None:
    with pytest.raises(GitError):
        reconcile(tmp_path / "clone", "master", "0" * 40, address=upstream.address)


def test_clone_failure_is_fatal(tmp_path: Path) -> None:
    with pytest.raises(GitError):
        reconcile(tmp_path / "clone", "master", "", address=str(tmp_path / "missing"))


def test_unknown_branch_is_fatal(tmp_path: Path, upstream) -> None:
    with pytest.raises(GitError):
        reconcile(tmp_path / "clone", "does-not-exist", "", address=upstream.address)


def test_missing_git_executable_is_a_git_error(tmp_path: Path, monkeypatch) -> None:
    def _no_git(*args, **kwargs):
        raise FileNotFoundError(2, "No such file or directory", "git")

    monkeypatch.setattr("matrixci.tools.vcs.subprocess.run", _no_git)

    with pytest.raises(GitError, match="could not be started"):
        reconcile(tmp_path / "clone", "master", "", address="https://example.invalid/upstream.git")


def test_existing_clone_behind_is_left_on_its_commit(tmp_path: Path, upstream) -> None:
    target = tmp_path / "clone"
    reconcile(target, "master", "", address=upstream.address)
    subprocess.run(["git", "reset", "--hard", upstream.commits["first"]], cwd=target, check=True, capture_output=True)

    state = reconcile(target, "master", "", address=upstream.address)

    assert not state.changed
    assert state.current_commit == upstream.commits["first"]
