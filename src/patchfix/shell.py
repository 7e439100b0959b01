from __future__ import annotations

from pathlib import Path
import logging
import subprocess


class CommandError(RuntimeError):
    pass


LOGGER = logging.getLogger("patchfix.shell")
_REDACTED = "***"


def _preview(text: str, *, limit: int = 200) -> str:
    compact = text.replace("\n", "\\n").strip()
    if not compact:
        return "<empty>"
    if len(compact) <= limit:
        return compact
    return f"{compact[:limit]}..."


def redact(text: str, secrets: tuple[str, ...]) -> str:
    for secret in secrets:
        if secret:
            text = text.replace(secret, _REDACTED)
    return text


def run(
    argv: list[str],
    *,
    cwd: Path | None = None,
    input_text: str | None = None,
    check: bool = True,
    timeout: float | None = None,
    secrets: tuple[str, ...] = (),
) -> str:
    command = redact(" ".join(argv), secrets)
    try:
        proc = subprocess.run(
            argv,
            cwd=str(cwd) if cwd else None,
            input=input_text,
            text=True,
            capture_output=True,
            check=False,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired as exc:
        LOGGER.error(
            "event=command_timed_out command=%s timeout_seconds=%s",
            command,
            timeout,
        )
        raise CommandError(f"Command timed out after {timeout}s\ncmd: {command}") from exc

    if check and proc.returncode != 0:
        stdout = redact(proc.stdout, secrets)
        stderr = redact(proc.stderr, secrets)
        LOGGER.error(
            "event=command_failed command=%s exit_code=%s stderr=%s stdout=%s",
            command,
            proc.returncode,
            _preview(stderr),
            _preview(stdout),
        )
        raise CommandError(
            "Command failed\n"
            f"cmd: {command}\n"
            f"exit: {proc.returncode}\n"
            f"stdout:\n{stdout}\n"
            f"stderr:\n{stderr}"
        )
    return proc.stdout


def run_status(
    argv: list[str],
    *,
    cwd: Path | None = None,
    timeout: float | None = None,
    secrets: tuple[str, ...] = (),
) -> tuple[int, str, str]:
    """Run a command whose non-zero exit is an expected outcome, not an error."""
    try:
        proc = subprocess.run(
            argv,
            cwd=str(cwd) if cwd else None,
            text=True,
            capture_output=True,
            check=False,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired as exc:
        command = redact(" ".join(argv), secrets)
        LOGGER.error(
            "event=command_timed_out command=%s timeout_seconds=%s",
            command,
            timeout,
        )
        raise CommandError(f"Command timed out after {timeout}s\ncmd: {command}") from exc
    return proc.returncode, redact(proc.stdout, secrets), redact(proc.stderr, secrets)
