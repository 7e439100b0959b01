from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Literal


MergeOutcome = Literal["success", "conflict", "error"]

UNKNOWN_MERGEABLE_STATE = "unknown"
DIRTY_MERGEABLE_STATE = "dirty"


@dataclass(frozen=True)
class RepoCoordinates:
    owner: str
    name: str

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"

    @classmethod
    def parse(cls, full_name: str) -> RepoCoordinates:
        owner, sep, name = full_name.strip().partition("/")
        if not sep or not owner or not name or "/" in name:
            raise ValueError(f"Expected owner/name, got {full_name!r}")
        return cls(owner=owner, name=name)


@dataclass(frozen=True)
class PullRequestCandidate:
    number: int
    head_ref: str
    head_repo_owner: str | None
    head_repo_name: str | None
    base_ref: str

    def is_from_fork(self, repo: RepoCoordinates) -> bool:
        # A deleted head repository has no owner/name and is treated like a fork.
        return self.head_repo_owner != repo.owner or self.head_repo_name != repo.name


@dataclass(frozen=True)
class PullRequestStatus:
    number: int
    mergeable_state: str
    head_ref: str
    base_ref: str
    head_sha: str

    @property
    def is_dirty(self) -> bool:
        return self.mergeable_state == DIRTY_MERGEABLE_STATE


@dataclass(frozen=True)
class CommitObject:
    sha: str
    tree_sha: str
    parent_shas: tuple[str, ...]
    message: str


@dataclass(frozen=True)
class MergeResult:
    outcome: MergeOutcome
    clone_path: Path
    detail: str = ""
    secrets: tuple[str, ...] = field(default=(), repr=False)


@dataclass(frozen=True)
class BestEffortResult:
    operation: str
    ok: bool
    detail: str = ""


@dataclass
class MergeAttempt:
    repo: RepoCoordinates
    pr_number: int
    started_at: datetime
    workspace_path: Path | None = None
    outcome: MergeOutcome | None = None
    temp_branch: str | None = None
    final_commit_sha: str | None = None
