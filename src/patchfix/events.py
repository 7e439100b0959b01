from __future__ import annotations

from dataclasses import dataclass
import re
from typing import cast

from patchfix.models import RepoCoordinates


_BRANCH_REF_PREFIX = "refs/heads/"


@dataclass(frozen=True)
class BranchUpdateEvent:
    ref: str
    repo: RepoCoordinates
    installation_id: int | None = None


class ReleaseBranchPolicy:
    def __init__(self, branches: tuple[str, ...], pattern: str) -> None:
        self.branches = frozenset(branches)
        self._pattern = re.compile(pattern)

    def release_branch_name(self, ref: str) -> str | None:
        if not ref.startswith(_BRANCH_REF_PREFIX):
            return None
        branch = ref[len(_BRANCH_REF_PREFIX) :]
        if branch in self.branches or self._pattern.fullmatch(branch):
            return branch
        return None


def parse_push_event(payload: object) -> BranchUpdateEvent | None:
    """Extract the ref and repository from a GitHub ``push`` webhook payload."""
    if not isinstance(payload, dict):
        return None
    body = cast(dict[str, object], payload)
    ref = body.get("ref")
    repository = body.get("repository")
    if not isinstance(ref, str) or not isinstance(repository, dict):
        return None
    owner_obj = repository.get("owner")
    owner = None
    if isinstance(owner_obj, dict):
        owner = owner_obj.get("login") or owner_obj.get("name")
    name = repository.get("name")
    if not isinstance(owner, str) or not isinstance(name, str) or not owner or not name:
        return None

    installation_id: int | None = None
    installation = body.get("installation")
    if isinstance(installation, dict):
        raw_id = installation.get("id")
        if isinstance(raw_id, int) and not isinstance(raw_id, bool):
            installation_id = raw_id

    return BranchUpdateEvent(
        ref=ref,
        repo=RepoCoordinates(owner=owner, name=name),
        installation_id=installation_id,
    )
