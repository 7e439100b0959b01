from __future__ import annotations

import logging
import time
from typing import Callable, Protocol

from patchfix.models import UNKNOWN_MERGEABLE_STATE, PullRequestStatus
from patchfix.observability import log_event


LOGGER = logging.getLogger("patchfix.prober")


class PullRequestStatusSource(Protocol):
    @property
    def full_name(self) -> str: ...

    def get_pull_request_status(self, pr_number: int) -> PullRequestStatus: ...


class MergeabilityProber:
    """Polls a pull request until GitHub has finished computing its mergeable state.

    GitHub computes mergeability asynchronously after a base branch moves, so the
    first read frequently reports ``unknown``. The prober retries a bounded number
    of times and returns ``None`` when the state never resolves; callers skip the
    pull request for this pass.
    """

    def __init__(
        self,
        github: PullRequestStatusSource,
        *,
        attempts: int = 3,
        interval_seconds: float = 5.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if attempts < 1:
            raise ValueError("attempts must be >= 1")
        self._github = github
        self._attempts = attempts
        self._interval_seconds = interval_seconds
        self._sleep = sleep

    def probe(self, pr_number: int) -> PullRequestStatus | None:
        for attempt in range(1, self._attempts + 1):
            status = self._github.get_pull_request_status(pr_number)
            if status.mergeable_state != UNKNOWN_MERGEABLE_STATE:
                log_event(
                    LOGGER,
                    "mergeability_resolved",
                    repo_full_name=self._github.full_name,
                    pr_number=pr_number,
                    attempt=attempt,
                    mergeable_state=status.mergeable_state,
                )
                return status
            if attempt < self._attempts:
                self._sleep(self._interval_seconds)

        log_event(
            LOGGER,
            "mergeability_unresolved",
            repo_full_name=self._github.full_name,
            pr_number=pr_number,
            attempts=self._attempts,
        )
        return None
