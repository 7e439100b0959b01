from __future__ import annotations

from datetime import datetime, timezone
import logging
import threading
import time
from typing import Callable, Protocol

from patchfix.config import AppConfig
from patchfix.events import BranchUpdateEvent, ReleaseBranchPolicy
from patchfix.git_ops import MergeExecutor
from patchfix.github_gateway import GitHubGateway
from patchfix.models import (
    CommitObject,
    MergeAttempt,
    PullRequestCandidate,
    PullRequestStatus,
    RepoCoordinates,
)
from patchfix.observability import log_event, log_warning_event
from patchfix.prober import MergeabilityProber
from patchfix.republish import CommitRepublisher
from patchfix.scheduler import DualStageScheduler
from patchfix.workspace import merge_workspace


LOGGER = logging.getLogger("patchfix.orchestrator")


class RepoGateway(Protocol):
    @property
    def full_name(self) -> str: ...

    def list_open_pull_requests(self, base: str) -> list[PullRequestCandidate]: ...

    def get_pull_request_status(self, pr_number: int) -> PullRequestStatus: ...

    def get_branch_sha(self, branch: str) -> str: ...

    def get_commit(self, sha: str) -> CommitObject: ...

    def create_commit(self, *, message: str, tree_sha: str, parent_shas: tuple[str, ...]) -> str: ...

    def update_branch_ref(self, branch: str, sha: str) -> None: ...

    def delete_branch_ref(self, branch: str) -> None: ...


class ConflictRepairOrchestrator:
    """Routes branch updates through mergeability discovery and conflict repair.

    Each pull request gets at most one pipeline at a time. An update that arrives
    while one is running is coalesced into a single rerun of discovery after it ends.
    A pipeline owns its workspace and temporary branch, and its failures never reach
    other pipelines.
    """

    def __init__(
        self,
        config: AppConfig,
        *,
        scheduler: DualStageScheduler,
        executor: MergeExecutor,
        github_factory: Callable[[RepoCoordinates], RepoGateway] | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._config = config
        self._scheduler = scheduler
        self._executor = executor
        self._github_factory = github_factory or self._default_gateway
        self._sleep = sleep
        self._policy = ReleaseBranchPolicy(
            config.release.branches, config.release.branch_pattern
        )
        # Value is the discovery task to rerun once the running pipeline ends.
        self._in_flight: dict[tuple[str, int], Callable[[], None] | None] = {}
        self._in_flight_lock = threading.Lock()

    def handle_branch_update(self, event: BranchUpdateEvent) -> int:
        repo = event.repo
        branch = self._policy.release_branch_name(event.ref)
        if branch is None:
            log_event(
                LOGGER,
                "branch_update_ignored",
                repo_full_name=repo.full_name,
                ref=event.ref,
                reason="not_release_branch",
            )
            return 0
        if not self._config.allows_repo(repo.full_name):
            log_event(
                LOGGER,
                "branch_update_ignored",
                repo_full_name=repo.full_name,
                ref=event.ref,
                reason="repo_not_allowed",
            )
            return 0

        log_event(LOGGER, "branch_update_received", repo_full_name=repo.full_name, branch=branch)
        github = self._github_factory(repo)
        pulls = github.list_open_pull_requests(branch)
        head_prefix = self._config.release.head_ref_prefix_for(branch)

        scheduled = 0
        for pr in pulls:
            if pr.is_from_fork(repo):
                self._log_skip(repo, pr.number, "fork")
                continue
            if head_prefix is not None and not pr.head_ref.startswith(head_prefix):
                self._log_skip(repo, pr.number, "head_ref_prefix_mismatch")
                continue
            task = self._discovery_task(repo, github, pr.number, event.installation_id)
            if not self._claim(repo, pr.number, task):
                log_event(
                    LOGGER,
                    "discovery_rerun_queued",
                    repo_full_name=repo.full_name,
                    pr_number=pr.number,
                )
                scheduled += 1
                continue
            try:
                self._scheduler.submit_discovery(_locator(repo, pr.number), task)
            except Exception:
                self._release(repo, pr.number)
                raise
            scheduled += 1

        log_event(
            LOGGER,
            "discovery_scheduled",
            repo_full_name=repo.full_name,
            branch=branch,
            open_pr_count=len(pulls),
            scheduled_count=scheduled,
        )
        return scheduled

    def _discovery_task(
        self,
        repo: RepoCoordinates,
        github: RepoGateway,
        pr_number: int,
        installation_id: int | None,
    ) -> Callable[[], None]:
        return lambda: self._discover(repo, github, pr_number, installation_id=installation_id)

    def _discover(
        self,
        repo: RepoCoordinates,
        github: RepoGateway,
        pr_number: int,
        *,
        installation_id: int | None,
    ) -> None:
        handed_off = False
        try:
            prober = MergeabilityProber(
                github,
                attempts=self._config.runtime.probe_attempts,
                interval_seconds=self._config.runtime.probe_interval_seconds,
                sleep=self._sleep,
            )
            status = prober.probe(pr_number)
            if status is None:
                self._log_skip(repo, pr_number, "mergeability_unresolved")
                return
            if not status.is_dirty:
                self._log_skip(repo, pr_number, f"mergeable_state_{status.mergeable_state}")
                return

            self._scheduler.submit_repair(
                _locator(repo, pr_number),
                lambda: self._repair(repo, github, status, installation_id=installation_id),
            )
            handed_off = True
            log_event(
                LOGGER,
                "repair_enqueued",
                repo_full_name=repo.full_name,
                pr_number=pr_number,
                head_ref=status.head_ref,
                head_sha=status.head_sha,
                base_ref=status.base_ref,
            )
        finally:
            if not handed_off:
                self._release(repo, pr_number)

    def _repair(
        self,
        repo: RepoCoordinates,
        github: RepoGateway,
        status: PullRequestStatus,
        *,
        installation_id: int | None,
    ) -> None:
        attempt = MergeAttempt(
            repo=repo,
            pr_number=status.number,
            started_at=datetime.now(timezone.utc),
        )
        try:
            with merge_workspace(self._config.runtime.workspace_root) as workspace:
                attempt.workspace_path = workspace
                result = self._executor.attempt_merge(
                    workspace,
                    repo,
                    base_ref=status.base_ref,
                    head_ref=status.head_ref,
                    installation_id=installation_id,
                )
                attempt.outcome = result.outcome
                if result.outcome == "conflict":
                    log_event(
                        LOGGER,
                        "merge_conflict",
                        repo_full_name=repo.full_name,
                        pr_number=status.number,
                        conflicted_paths=result.detail,
                    )
                elif result.outcome == "error":
                    log_event(
                        LOGGER,
                        "merge_error",
                        repo_full_name=repo.full_name,
                        pr_number=status.number,
                        detail=result.detail,
                    )
                else:
                    republisher = CommitRepublisher(github, self._executor, self._config.bot)
                    republisher.republish(result, status.head_ref, attempt=attempt)
        except Exception as exc:  # noqa: BLE001
            log_event(
                LOGGER,
                "repair_failed",
                repo_full_name=repo.full_name,
                pr_number=status.number,
                temp_branch=attempt.temp_branch,
                error_type=type(exc).__name__,
            )
            raise
        finally:
            self._release(repo, status.number)

        log_event(
            LOGGER,
            "repair_finished",
            repo_full_name=repo.full_name,
            pr_number=status.number,
            outcome=attempt.outcome,
            final_commit_sha=attempt.final_commit_sha,
            duration_seconds=round(
                (datetime.now(timezone.utc) - attempt.started_at).total_seconds(), 3
            ),
        )

    def _claim(
        self, repo: RepoCoordinates, pr_number: int, task: Callable[[], None]
    ) -> bool:
        """Claim the pull request, or queue ``task`` to rerun after the running pipeline."""
        key = (repo.full_name, pr_number)
        with self._in_flight_lock:
            if key in self._in_flight:
                self._in_flight[key] = task
                return False
            self._in_flight[key] = None
            return True

    def _release(self, repo: RepoCoordinates, pr_number: int) -> None:
        key = (repo.full_name, pr_number)
        with self._in_flight_lock:
            rerun = self._in_flight.pop(key, None)
            if rerun is not None:
                self._in_flight[key] = None
        if rerun is None:
            return

        log_event(LOGGER, "discovery_rerun", repo_full_name=repo.full_name, pr_number=pr_number)
        try:
            self._scheduler.submit_discovery(_locator(repo, pr_number), rerun)
        except RuntimeError as exc:
            # Pool already shut down.
            with self._in_flight_lock:
                self._in_flight.pop(key, None)
            log_warning_event(
                LOGGER,
                "discovery_rerun_dropped",
                repo_full_name=repo.full_name,
                pr_number=pr_number,
                error=str(exc),
            )

    def _default_gateway(self, repo: RepoCoordinates) -> RepoGateway:
        return GitHubGateway(
            repo.owner,
            repo.name,
            timeout_seconds=self._config.runtime.api_timeout_seconds,
        )

    def _log_skip(self, repo: RepoCoordinates, pr_number: int, reason: str) -> None:
        log_event(
            LOGGER,
            "pull_request_skipped",
            repo_full_name=repo.full_name,
            pr_number=pr_number,
            reason=reason,
        )


def _locator(repo: RepoCoordinates, pr_number: int) -> str:
    return f"{repo.full_name}#{pr_number}"
