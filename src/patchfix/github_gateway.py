from __future__ import annotations

from dataclasses import dataclass
import json
import logging
from typing import cast
from urllib.parse import quote, urlencode

from patchfix.models import CommitObject, PullRequestCandidate, PullRequestStatus
from patchfix.observability import log_event
from patchfix.shell import run


LOGGER = logging.getLogger("patchfix.github_gateway")
_PAGE_SIZE = 100


class GitHubApiError(RuntimeError):
    """A GitHub API call failed or returned an unexpected payload."""


@dataclass(frozen=True)
class GitHubGateway:
    owner: str
    name: str
    timeout_seconds: float = 60

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"

    def list_open_pull_requests(self, base: str) -> list[PullRequestCandidate]:
        pulls: list[PullRequestCandidate] = []
        page = 1
        while True:
            query = urlencode(
                {"state": "open", "base": base, "per_page": _PAGE_SIZE, "page": page}
            )
            payload = self._api_json("GET", f"/repos/{self.owner}/{self.name}/pulls?{query}")
            if not isinstance(payload, list):
                raise GitHubApiError("Unexpected GitHub response: expected list of pull requests")
            for item in payload:
                item_obj = _as_object_dict(item)
                if item_obj is None:
                    continue
                pulls.append(_parse_candidate(item_obj))
            if len(payload) < _PAGE_SIZE:
                break
            page += 1
        log_event(
            LOGGER,
            "github_read",
            endpoint="pulls",
            repo_full_name=self.full_name,
            base=base,
            count=len(pulls),
        )
        return pulls

    def get_pull_request_status(self, pr_number: int) -> PullRequestStatus:
        payload = self._api_json("GET", f"/repos/{self.owner}/{self.name}/pulls/{pr_number}")
        payload_obj = _as_object_dict(payload)
        if payload_obj is None:
            raise GitHubApiError("Unexpected GitHub response: expected object for pull request")
        head = _as_object_dict(payload_obj.get("head"))
        base = _as_object_dict(payload_obj.get("base"))
        if head is None or base is None:
            raise GitHubApiError("Unexpected GitHub response: missing pull request head/base")

        status = PullRequestStatus(
            number=_as_int(payload_obj.get("number"), field="number"),
            mergeable_state=_as_string(payload_obj.get("mergeable_state")).strip().lower()
            or "unknown",
            head_ref=_as_string(head.get("ref")),
            base_ref=_as_string(base.get("ref")),
            head_sha=_as_string(head.get("sha")),
        )
        log_event(
            LOGGER,
            "github_read",
            endpoint="pull_request",
            repo_full_name=self.full_name,
            pr_number=status.number,
            mergeable_state=status.mergeable_state,
        )
        return status

    def get_branch_sha(self, branch: str) -> str:
        payload = self._api_json(
            "GET", f"/repos/{self.owner}/{self.name}/git/ref/heads/{_quote_ref(branch)}"
        )
        payload_obj = _as_object_dict(payload)
        target = _as_object_dict(payload_obj.get("object")) if payload_obj else None
        if target is None:
            raise GitHubApiError(f"Unexpected GitHub response: missing object for ref {branch}")
        sha = _as_string(target.get("sha"))
        if not sha:
            raise GitHubApiError(f"Unexpected GitHub response: empty sha for ref {branch}")
        log_event(LOGGER, "github_read", endpoint="git_ref", branch=branch)
        return sha

    def get_commit(self, sha: str) -> CommitObject:
        payload = self._api_json("GET", f"/repos/{self.owner}/{self.name}/git/commits/{sha}")
        payload_obj = _as_object_dict(payload)
        if payload_obj is None:
            raise GitHubApiError("Unexpected GitHub response: expected object for commit")
        tree = _as_object_dict(payload_obj.get("tree"))
        if tree is None:
            raise GitHubApiError("Unexpected GitHub response: commit has no tree")
        parents_payload = payload_obj.get("parents")
        if not isinstance(parents_payload, list):
            raise GitHubApiError("Unexpected GitHub response: commit parents must be a list")
        parents: list[str] = []
        for raw in parents_payload:
            parent_obj = _as_object_dict(raw)
            if parent_obj is None:
                continue
            parents.append(_as_string(parent_obj.get("sha")))

        commit = CommitObject(
            sha=_as_string(payload_obj.get("sha")) or sha,
            tree_sha=_as_string(tree.get("sha")),
            parent_shas=tuple(parents),
            message=_as_string(payload_obj.get("message")),
        )
        log_event(
            LOGGER,
            "github_read",
            endpoint="git_commit",
            sha=commit.sha,
            parent_count=len(commit.parent_shas),
        )
        return commit

    def create_commit(self, *, message: str, tree_sha: str, parent_shas: tuple[str, ...]) -> str:
        payload = self._api_write(
            "POST",
            f"/repos/{self.owner}/{self.name}/git/commits",
            payload={"message": message, "tree": tree_sha, "parents": list(parent_shas)},
            action="create_commit",
        )
        payload_obj = _as_object_dict(payload)
        sha = _as_string(payload_obj.get("sha")) if payload_obj else ""
        if not sha:
            raise GitHubApiError("Unexpected GitHub response: created commit has no sha")
        log_event(LOGGER, "github_commit_created", repo_full_name=self.full_name, sha=sha)
        return sha

    def update_branch_ref(self, branch: str, sha: str) -> None:
        self._api_write(
            "PATCH",
            f"/repos/{self.owner}/{self.name}/git/refs/heads/{_quote_ref(branch)}",
            payload={"sha": sha, "force": False},
            action="update_ref",
        )
        log_event(
            LOGGER, "github_ref_updated", repo_full_name=self.full_name, branch=branch, sha=sha
        )

    def delete_branch_ref(self, branch: str) -> None:
        self._api_write(
            "DELETE",
            f"/repos/{self.owner}/{self.name}/git/refs/heads/{_quote_ref(branch)}",
            action="delete_ref",
        )
        log_event(LOGGER, "github_ref_deleted", repo_full_name=self.full_name, branch=branch)

    def _api_write(
        self,
        method: str,
        path: str,
        *,
        action: str,
        payload: dict[str, object] | None = None,
    ) -> object:
        try:
            return self._api_json(method, path, payload)
        except Exception as exc:  # noqa: BLE001
            log_event(
                LOGGER,
                "github_write_failed",
                repo_full_name=self.full_name,
                action=action,
                error_type=type(exc).__name__,
            )
            raise

    def _api_json(self, method: str, path: str, payload: dict[str, object] | None = None) -> object:
        method_upper = method.upper()
        cmd = ["gh", "api", "--method", method_upper, "--include", path]
        stdin_payload: str | None = None
        if payload is not None:
            cmd.extend(["--input", "-"])
            stdin_payload = json.dumps(payload)
        raw = run(cmd, input_text=stdin_payload, check=False, timeout=self.timeout_seconds)
        try:
            status_code, _headers, body = _parse_http_response(raw)
        except GitHubApiError:
            log_event(
                LOGGER,
                "github_request_unparseable",
                method=method_upper,
                path=path,
                raw_preview=_preview_for_log(raw),
            )
            raise
        if status_code < 200 or status_code >= 300:
            message = body.strip() or "<empty>"
            log_event(
                LOGGER,
                "github_request_failed",
                method=method_upper,
                path=path,
                status_code=status_code,
                body_preview=_preview_for_log(body),
            )
            raise GitHubApiError(
                f"GitHub API {method_upper} {path} failed with status {status_code}: {message}"
            )
        if not body.strip():
            return None
        try:
            return json.loads(body)
        except json.JSONDecodeError as exc:
            raise GitHubApiError(f"GitHub API {method_upper} {path} returned invalid JSON") from exc


def _parse_candidate(item: dict[str, object]) -> PullRequestCandidate:
    head = _as_object_dict(item.get("head")) or {}
    base = _as_object_dict(item.get("base")) or {}
    head_repo = _as_object_dict(head.get("repo"))
    head_owner_obj = _as_object_dict(head_repo.get("owner")) if head_repo else None
    return PullRequestCandidate(
        number=_as_int(item.get("number"), field="number"),
        head_ref=_as_string(head.get("ref")),
        head_repo_owner=_as_optional_str(head_owner_obj.get("login")) if head_owner_obj else None,
        head_repo_name=_as_optional_str(head_repo.get("name")) if head_repo else None,
        base_ref=_as_string(base.get("ref")),
    )


def _quote_ref(branch: str) -> str:
    return quote(branch, safe="/")


def _parse_http_response(raw: str) -> tuple[int, dict[str, str], str]:
    normalized = raw.replace("\r\n", "\n")
    lines = normalized.split("\n")

    status_line_index = -1
    for index, line in enumerate(lines):
        if line.startswith("HTTP/"):
            status_line_index = index

    if status_line_index < 0:
        raise GitHubApiError("Unexpected GitHub response: missing HTTP status line")

    status_line = lines[status_line_index]
    status_parts = status_line.split(" ", 2)
    if len(status_parts) < 2:
        raise GitHubApiError(f"Unexpected GitHub response status line: {status_line!r}")

    try:
        status_code = int(status_parts[1])
    except ValueError as exc:
        raise GitHubApiError(f"Unexpected GitHub response status line: {status_line!r}") from exc

    headers: dict[str, str] = {}
    body_start = len(lines)
    for index in range(status_line_index + 1, len(lines)):
        line = lines[index]
        if line == "":
            body_start = index + 1
            break
        if ":" not in line:
            continue
        key, value = line.split(":", 1)
        headers[key.strip().lower()] = value.strip()

    body = "\n".join(lines[body_start:])
    return status_code, headers, body


def _preview_for_log(text: str, *, limit: int = 240) -> str:
    compact = text.replace("\n", "\\n").strip()
    if not compact:
        return "<empty>"
    if len(compact) <= limit:
        return compact
    return f"{compact[:limit]}..."


def _as_object_dict(value: object) -> dict[str, object] | None:
    if not isinstance(value, dict):
        return None
    if not all(isinstance(key, str) for key in value.keys()):
        return None
    return cast(dict[str, object], value)


def _as_string(value: object) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return str(value)


def _as_optional_str(value: object) -> str | None:
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return str(value)


def _as_int(value: object, *, field: str) -> int:
    if isinstance(value, bool):
        raise GitHubApiError(f"Unexpected GitHub response type for {field}")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value)
        except ValueError as exc:
            raise GitHubApiError(f"Unexpected GitHub response value for {field}: {value}") from exc
    raise GitHubApiError(f"Unexpected GitHub response type for {field}")
