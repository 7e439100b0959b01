from __future__ import annotations

import logging
from pathlib import Path

from patchfix.config import BotConfig
from patchfix.credentials import CredentialProvider
from patchfix.models import MergeResult, RepoCoordinates
from patchfix.observability import log_event
from patchfix.shell import CommandError, redact, run, run_status
from patchfix.workspace import prepare_clone_dir


LOGGER = logging.getLogger("patchfix.git_ops")


class MergeExecutor:
    def __init__(
        self,
        bot: BotConfig,
        credentials: CredentialProvider,
        *,
        command_timeout_seconds: float = 900,
    ) -> None:
        self.bot = bot
        self.credentials = credentials
        self.command_timeout_seconds = command_timeout_seconds

    def attempt_merge(
        self,
        workspace: Path,
        repo: RepoCoordinates,
        *,
        base_ref: str,
        head_ref: str,
        installation_id: int | None = None,
    ) -> MergeResult:
        clone_path = prepare_clone_dir(workspace)
        token = self.credentials.issue_token(repo, installation_id)
        self.clone(clone_path, token.clone_url(repo), secrets=(token.value,))
        self.configure_identity(clone_path)
        self.checkout(clone_path, base_ref)
        self.checkout(clone_path, head_ref)
        return self.merge(
            clone_path, base_ref=base_ref, head_ref=head_ref, secrets=(token.value,)
        )

    def clone(self, clone_path: Path, url: str, *, secrets: tuple[str, ...] = ()) -> None:
        log_event(LOGGER, "git_clone", clone_path=str(clone_path))
        run(
            ["git", "clone", url, "."],
            cwd=clone_path,
            timeout=self.command_timeout_seconds,
            secrets=secrets,
        )

    def configure_identity(self, clone_path: Path) -> None:
        log_event(LOGGER, "git_configure_identity", clone_path=str(clone_path))
        self._git(clone_path, "config", "user.email", self.bot.email)
        self._git(clone_path, "config", "user.name", self.bot.name)
        self._git(clone_path, "config", "commit.gpgsign", "false")

    def checkout(self, clone_path: Path, branch: str) -> None:
        log_event(LOGGER, "git_checkout", clone_path=str(clone_path), branch=branch)
        self._git(clone_path, "checkout", branch)

    def merge(
        self,
        clone_path: Path,
        *,
        base_ref: str,
        head_ref: str,
        secrets: tuple[str, ...] = (),
    ) -> MergeResult:
        message = self.bot.merge_commit_message(base_ref)
        log_event(
            LOGGER,
            "git_merge",
            clone_path=str(clone_path),
            base_ref=base_ref,
            head_ref=head_ref,
        )
        exit_code, stdout, stderr = run_status(
            ["git", "-C", str(clone_path), "merge", "--no-ff", "-m", message, base_ref],
            timeout=self.command_timeout_seconds,
            secrets=secrets,
        )
        if exit_code == 0:
            return MergeResult(outcome="success", clone_path=clone_path, secrets=secrets)

        conflicted = self.conflicted_paths(clone_path)
        if conflicted:
            log_event(
                LOGGER,
                "git_merge_conflicted",
                clone_path=str(clone_path),
                conflicted_count=len(conflicted),
            )
            return MergeResult(
                outcome="conflict",
                clone_path=clone_path,
                detail=", ".join(conflicted),
            )
        log_event(
            LOGGER,
            "git_merge_failed",
            clone_path=str(clone_path),
            exit_code=exit_code,
        )
        return MergeResult(
            outcome="error",
            clone_path=clone_path,
            detail=redact(stderr.strip() or stdout.strip(), secrets),
        )

    def conflicted_paths(self, clone_path: Path) -> tuple[str, ...]:
        try:
            out = self._git(clone_path, "diff", "--name-only", "--diff-filter=U")
        except CommandError:
            return ()
        return tuple(line for line in out.splitlines() if line.strip())

    def current_tree_sha(self, clone_path: Path) -> str:
        return self._git(clone_path, "rev-parse", "HEAD^{tree}").strip()

    def push_temp_branch(
        self, clone_path: Path, branch: str, *, secrets: tuple[str, ...] = ()
    ) -> None:
        log_event(LOGGER, "git_push", clone_path=str(clone_path), branch=branch)
        self._git(clone_path, "checkout", "-b", branch)
        try:
            self._git(clone_path, "push", "-u", "origin", branch, secrets=secrets)
        except Exception as exc:  # noqa: BLE001
            log_event(
                LOGGER,
                "git_push_failed",
                clone_path=str(clone_path),
                branch=branch,
                error_type=type(exc).__name__,
            )
            raise

    def _git(self, clone_path: Path, *args: str, secrets: tuple[str, ...] = ()) -> str:
        return run(
            ["git", "-C", str(clone_path), *args],
            timeout=self.command_timeout_seconds,
            secrets=secrets,
        )
