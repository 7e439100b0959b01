from __future__ import annotations

import json
from urllib.parse import parse_qs, urlparse

import pytest

from patchfix.github_gateway import (
    GitHubApiError,
    GitHubGateway,
    _as_int,
    _as_object_dict,
    _parse_http_response,
    _preview_for_log,
)
from patchfix.models import RepoCoordinates


def _pull(number: int, *, owner: str = "o", name: str = "r", head_ref: str = "fix") -> dict:
    return {
        "number": number,
        "html_url": f"https://github.com/o/r/pull/{number}",
        "head": {
            "ref": head_ref,
            "sha": f"head{number}",
            "repo": {"name": name, "owner": {"login": owner}},
        },
        "base": {"ref": "main"},
    }


def test_list_open_pull_requests_paginates_and_parses(monkeypatch: pytest.MonkeyPatch) -> None:
    gateway = GitHubGateway("o", "r")
    pages = {
        1: [_pull(n) for n in range(1, 101)],
        2: [_pull(101, owner="fork"), {"head": None, "number": 102, "base": {"ref": "main"}}, 7],
    }
    seen_pages: list[int] = []

    def fake_api(
        self: GitHubGateway, method: str, path: str, payload: dict[str, object] | None = None
    ) -> object:
        _ = self, payload
        assert method == "GET"
        parsed = urlparse(path)
        assert parsed.path == "/repos/o/r/pulls"
        query = parse_qs(parsed.query)
        assert query["state"] == ["open"]
        assert query["base"] == ["main"]
        page = int(query["page"][0])
        seen_pages.append(page)
        return pages[page]

    monkeypatch.setattr(GitHubGateway, "_api_json", fake_api)

    pulls = gateway.list_open_pull_requests("main")

    assert seen_pages == [1, 2]
    assert len(pulls) == 102
    repo = RepoCoordinates("o", "r")
    assert not pulls[0].is_from_fork(repo)
    assert pulls[100].is_from_fork(repo)
    assert pulls[101].head_repo_owner is None
    assert pulls[101].is_from_fork(repo)


def test_list_open_pull_requests_rejects_non_list(monkeypatch: pytest.MonkeyPatch) -> None:
    gateway = GitHubGateway("o", "r")
    monkeypatch.setattr(
        GitHubGateway, "_api_json", lambda self, method, path, payload=None: {"bad": "shape"}
    )

    with pytest.raises(GitHubApiError, match="expected list"):
        gateway.list_open_pull_requests("main")


def test_get_pull_request_status_normalizes_state(monkeypatch: pytest.MonkeyPatch) -> None:
    gateway = GitHubGateway("o", "r")
    responses = [
        {**_pull(5), "mergeable_state": "DIRTY"},
        {**_pull(5), "mergeable_state": None},
    ]
    monkeypatch.setattr(
        GitHubGateway, "_api_json", lambda self, method, path, payload=None: responses.pop(0)
    )

    dirty = gateway.get_pull_request_status(5)
    missing = gateway.get_pull_request_status(5)

    assert dirty.mergeable_state == "dirty"
    assert dirty.is_dirty
    assert dirty.head_ref == "fix"
    assert dirty.base_ref == "main"
    assert missing.mergeable_state == "unknown"


def test_get_pull_request_status_requires_head_and_base(monkeypatch: pytest.MonkeyPatch) -> None:
    gateway = GitHubGateway("o", "r")
    monkeypatch.setattr(
        GitHubGateway, "_api_json", lambda self, method, path, payload=None: {"number": 1}
    )

    with pytest.raises(GitHubApiError, match="missing pull request head/base"):
        gateway.get_pull_request_status(1)


def test_git_data_calls_use_expected_endpoints(monkeypatch: pytest.MonkeyPatch) -> None:
    gateway = GitHubGateway("o", "r")
    calls: list[tuple[str, str, dict[str, object] | None]] = []

    def fake_api(
        self: GitHubGateway, method: str, path: str, payload: dict[str, object] | None = None
    ) -> object:
        _ = self
        calls.append((method, path, payload))
        if "/git/ref/heads/" in path:
            return {"object": {"sha": "tempsha", "type": "commit"}}
        if path.endswith("/git/commits/tempsha"):
            return {
                "sha": "tempsha",
                "message": "merge [skip ci]",
                "tree": {"sha": "treesha"},
                "parents": [{"sha": "headsha"}, {"sha": "basesha"}, "junk"],
            }
        if path.endswith("/git/commits"):
            return {"sha": "newsha"}
        return None

    monkeypatch.setattr(GitHubGateway, "_api_json", fake_api)

    sha = gateway.get_branch_sha("patchfix-tmp/cherry-pick/main/fix-1")
    commit = gateway.get_commit(sha)
    created = gateway.create_commit(
        message="merge", tree_sha=commit.tree_sha, parent_shas=commit.parent_shas
    )
    gateway.update_branch_ref("cherry-pick/main/fix", created)
    gateway.delete_branch_ref("patchfix-tmp/cherry-pick/main/fix-1")

    assert commit.tree_sha == "treesha"
    assert commit.parent_shas == ("headsha", "basesha")
    assert commit.message == "merge [skip ci]"
    assert created == "newsha"
    assert calls[0] == ("GET", "/repos/o/r/git/ref/heads/patchfix-tmp/cherry-pick/main/fix-1", None)
    assert calls[2] == (
        "POST",
        "/repos/o/r/git/commits",
        {"message": "merge", "tree": "treesha", "parents": ["headsha", "basesha"]},
    )
    assert calls[3] == (
        "PATCH",
        "/repos/o/r/git/refs/heads/cherry-pick/main/fix",
        {"sha": "newsha", "force": False},
    )
    assert calls[4] == ("DELETE", "/repos/o/r/git/refs/heads/patchfix-tmp/cherry-pick/main/fix-1", None)


def test_write_failures_are_logged_and_raised(
    monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    from patchfix.observability import configure_logging

    gateway = GitHubGateway("o", "r")

    def fake_api(
        self: GitHubGateway, method: str, path: str, payload: dict[str, object] | None = None
    ) -> object:
        _ = self, method, path, payload
        raise GitHubApiError("422")

    monkeypatch.setattr(GitHubGateway, "_api_json", fake_api)
    configure_logging(verbose=True)

    with pytest.raises(GitHubApiError):
        gateway.update_branch_ref("fix", "sha")

    stderr = capsys.readouterr().err
    assert "event=github_write_failed" in stderr
    assert "action=update_ref" in stderr


def test_api_json_parses_status_and_body(monkeypatch: pytest.MonkeyPatch) -> None:
    gateway = GitHubGateway("o", "r", timeout_seconds=12)
    calls: list[tuple[list[str], dict[str, object]]] = []
    outputs = [
        "HTTP/2.0 201 Created\nContent-Type: application/json\n\n" + json.dumps({"sha": "x"}),
        "HTTP/2.0 204 No Content\n\n",
        "HTTP/2.0 422 Unprocessable Entity\n\n" + json.dumps({"message": "Reference does not exist"}),
    ]

    def fake_run(cmd: list[str], **kwargs: object) -> str:
        calls.append((cmd, kwargs))
        return outputs.pop(0)

    monkeypatch.setattr("patchfix.github_gateway.run", fake_run)

    created = gateway._api_json("POST", "/repos/o/r/git/commits", {"message": "m"})
    deleted = gateway._api_json("DELETE", "/repos/o/r/git/refs/heads/tmp")
    with pytest.raises(GitHubApiError, match="status 422"):
        gateway._api_json("DELETE", "/repos/o/r/git/refs/heads/tmp")

    assert created == {"sha": "x"}
    assert deleted is None
    post_cmd, post_kwargs = calls[0]
    assert post_cmd[:5] == ["gh", "api", "--method", "POST", "--include"]
    assert post_cmd[-2:] == ["--input", "-"]
    assert json.loads(str(post_kwargs["input_text"])) == {"message": "m"}
    assert post_kwargs["check"] is False
    assert post_kwargs["timeout"] == 12
    assert "--input" not in calls[1][0]


def test_api_json_rejects_unparseable_output(monkeypatch: pytest.MonkeyPatch) -> None:
    gateway = GitHubGateway("o", "r")
    monkeypatch.setattr("patchfix.github_gateway.run", lambda cmd, **kwargs: "gh: not logged in")

    with pytest.raises(GitHubApiError, match="missing HTTP status line"):
        gateway._api_json("GET", "/repos/o/r/pulls/1")


def test_parse_http_response_uses_last_status_line() -> None:
    raw = "HTTP/1.1 100 Continue\n\nHTTP/1.1 200 OK\r\nETag: abc\r\n\r\n{\"a\": 1}"
    status, headers, body = _parse_http_response(raw)
    assert status == 200
    assert headers == {"etag": "abc"}
    assert json.loads(body) == {"a": 1}

    with pytest.raises(GitHubApiError, match="status line"):
        _parse_http_response("HTTP/1.1\n\n")
    with pytest.raises(GitHubApiError, match="status line"):
        _parse_http_response("HTTP/1.1 abc\n\n")


def test_value_helpers() -> None:
    assert _as_object_dict({"a": 1}) == {"a": 1}
    assert _as_object_dict({1: "a"}) is None
    assert _as_object_dict([]) is None
    assert _as_int("7", field="number") == 7
    with pytest.raises(GitHubApiError):
        _as_int(True, field="number")
    with pytest.raises(GitHubApiError):
        _as_int("x", field="number")
    with pytest.raises(GitHubApiError):
        _as_int(None, field="number")
    assert _preview_for_log("") == "<empty>"
    assert _preview_for_log("y" * 300).endswith("...")
