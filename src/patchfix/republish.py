from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Callable, Protocol

from patchfix.config import BotConfig
from patchfix.models import BestEffortResult, CommitObject, MergeAttempt, MergeResult
from patchfix.observability import log_event, log_warning_event


LOGGER = logging.getLogger("patchfix.republish")


class RepublishError(RuntimeError):
    pass


class GitDataApi(Protocol):
    @property
    def full_name(self) -> str: ...

    def get_branch_sha(self, branch: str) -> str: ...

    def get_commit(self, sha: str) -> CommitObject: ...

    def create_commit(self, *, message: str, tree_sha: str, parent_shas: tuple[str, ...]) -> str: ...

    def update_branch_ref(self, branch: str, sha: str) -> None: ...

    def delete_branch_ref(self, branch: str) -> None: ...


class BranchPusher(Protocol):
    def current_tree_sha(self, clone_path: Path) -> str: ...

    def push_temp_branch(
        self, clone_path: Path, branch: str, *, secrets: tuple[str, ...] = ()
    ) -> None: ...


def temp_branch_name(prefix: str, head_ref: str, timestamp_ms: int) -> str:
    return f"{prefix}{head_ref}-{timestamp_ms}".lower()


def strip_skip_marker(message: str, marker: str) -> str:
    lines = [line.replace(marker, "").rstrip() for line in message.splitlines()]
    return "\n".join(lines).strip()


class CommitRepublisher:
    """Turns a locally merged branch into a commit created by GitHub itself.

    The local merge commit is unsigned and carries the bot's local identity, so only
    its tree and parents are kept; the Git Data API builds the final commit from
    them and the pull request head ref is moved onto it without force.
    """

    def __init__(
        self,
        github: GitDataApi,
        pusher: BranchPusher,
        bot: BotConfig,
        *,
        clock_ms: Callable[[], int] = lambda: time.time_ns() // 1_000_000,
    ) -> None:
        self._github = github
        self._pusher = pusher
        self._bot = bot
        self._clock_ms = clock_ms

    def republish(
        self,
        merge: MergeResult,
        head_ref: str,
        *,
        attempt: MergeAttempt | None = None,
    ) -> str:
        if merge.outcome != "success":
            raise RepublishError(f"Refusing to republish a merge with outcome {merge.outcome}")

        temp_branch = temp_branch_name(self._bot.temp_branch_prefix, head_ref, self._clock_ms())
        if attempt is not None:
            attempt.temp_branch = temp_branch
        try:
            local_tree = self._pusher.current_tree_sha(merge.clone_path)
            self._pusher.push_temp_branch(merge.clone_path, temp_branch, secrets=merge.secrets)
            pushed = self._github.get_commit(self._github.get_branch_sha(temp_branch))
            if pushed.tree_sha != local_tree:
                raise RepublishError(
                    f"Pushed tree {pushed.tree_sha} does not match local tree {local_tree}"
                )
            final_sha = self._github.create_commit(
                message=strip_skip_marker(pushed.message, self._bot.skip_ci_marker),
                tree_sha=pushed.tree_sha,
                parent_shas=pushed.parent_shas,
            )
            self._github.update_branch_ref(head_ref, final_sha)
        finally:
            cleanup = self._delete_temp_branch(temp_branch)
            if not cleanup.ok:
                log_warning_event(
                    LOGGER,
                    "temp_branch_cleanup_failed",
                    repo_full_name=self._github.full_name,
                    branch=temp_branch,
                    detail=cleanup.detail,
                )

        if attempt is not None:
            attempt.final_commit_sha = final_sha
        log_event(
            LOGGER,
            "commit_republished",
            repo_full_name=self._github.full_name,
            head_ref=head_ref,
            sha=final_sha,
            tree_sha=pushed.tree_sha,
        )
        return final_sha

    def _delete_temp_branch(self, branch: str) -> BestEffortResult:
        try:
            self._github.delete_branch_ref(branch)
        except Exception as exc:  # noqa: BLE001
            return BestEffortResult(
                operation="delete_temp_branch",
                ok=False,
                detail=f"{type(exc).__name__}: {exc}",
            )
        return BestEffortResult(operation="delete_temp_branch", ok=True)
