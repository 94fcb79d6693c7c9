"""Bring the upstream clone to the requested branch and commit."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import List

from .tools.vcs import GitError, GitRepository

LOGGER = logging.getLogger(__name__)

ACTION_CLONE = "clone"
ACTION_CHECKOUT_BRANCH = "checkout-branch"
ACTION_CHECKOUT_COMMIT = "checkout-commit"


@dataclass(slots=True)
class RepoState:
    """Where the clone stands after reconciliation.

    ``desired_commit`` is filled with the branch tip when the caller did not
    pin a commit.  ``detached`` is set when ``HEAD`` sits on the pinned
    commit rather than on the branch ref itself.
    """

    local_path: Path
    current_branch: str
    current_commit: str
    desired_branch: str
    desired_commit: str
    detached: bool = False
    actions: List[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        """``False`` when reconciliation found nothing to do."""

        return bool(self.actions)

    @property
    def satisfied(self) -> bool:
        return self.current_branch == self.desired_branch and (
            not self.desired_commit or self.current_commit == self.desired_commit
        )


def reconcile(
    path: Path | str,
    desired_branch: str,
    desired_commit: str = "",
    *,
    address: str,
) -> RepoState:
    """Ensure the clone at ``path`` exists and matches the desired revision.

    Calling this twice with the same arguments performs no checkout the second
    time.  Every git failure propagates as :class:`GitError`.
    """

    local_path = Path(path).resolve()
    actions: List[str] = []

    if GitRepository.exists(local_path):
        repo = GitRepository(local_path)
    else:
        repo = GitRepository.clone(address, local_path, branch=desired_branch)
        actions.append(ACTION_CLONE)

    pinned = desired_commit.strip()
    target_commit = repo.resolve_commit(pinned) if pinned else ""

    head = repo.head()
    branch = repo.current_branch()
    # A previous run may have left HEAD detached on the pinned commit.
    parked_on_target = branch is None and bool(target_commit) and head == target_commit

    if branch != desired_branch and not parked_on_target:
        repo.checkout(desired_branch)
        actions.append(ACTION_CHECKOUT_BRANCH)
        head = repo.head()

    if not target_commit:
        target_commit = head
    elif target_commit != head:
        repo.checkout(target_commit)
        actions.append(ACTION_CHECKOUT_COMMIT)
        head = repo.head()

    if head != target_commit:
        raise GitError(f"Checkout of {target_commit} left HEAD at {head} in {local_path}")

    state = RepoState(
        local_path=local_path,
        current_branch=desired_branch,
        current_commit=head,
        desired_branch=desired_branch,
        desired_commit=target_commit,
        detached=repo.current_branch() is None,
        actions=actions,
    )
    if actions:
        LOGGER.info(
            "Upstream clone at %s reconciled to %s@%s (%s)",
            local_path,
            desired_branch,
            head[:12],
            ", ".join(actions),
        )
    else:
        LOGGER.info("Upstream clone at %s already at %s@%s", local_path, desired_branch, head[:12])
    return state


__all__ = [
    "ACTION_CHECKOUT_BRANCH",
    "ACTION_CHECKOUT_COMMIT",
    "ACTION_CLONE",
    "RepoState",
    "reconcile",
]
