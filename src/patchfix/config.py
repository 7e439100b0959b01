from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
import re
import tomllib


@dataclass(frozen=True)
class RuntimeConfig:
    discovery_concurrency: int = 4
    repair_concurrency: int = 3
    probe_attempts: int = 3
    probe_interval_seconds: float = 5.0
    workspace_root: Path | None = None
    command_timeout_seconds: int = 900
    api_timeout_seconds: int = 60
    state_dir: Path | None = None


@dataclass(frozen=True)
class ReleaseConfig:
    branches: tuple[str, ...] = ("main",)
    branch_pattern: str = r"^[0-9]+-x-y$"
    head_ref_prefix: str | None = None

    def head_ref_prefix_for(self, branch: str) -> str | None:
        if self.head_ref_prefix is None:
            return None
        return self.head_ref_prefix.replace("{branch}", branch)


@dataclass(frozen=True)
class BotConfig:
    name: str = "Patch Fixer Bot"
    email: str = "patch-fixer-bot@users.noreply.github.com"
    merge_message: str = "chore: resolve merge conflicts with {base}"
    skip_ci_marker: str = "[skip ci]"
    temp_branch_prefix: str = "patchfix-tmp/"

    def merge_commit_message(self, base: str) -> str:
        return f"{self.merge_message.replace('{base}', base)} {self.skip_ci_marker}"


@dataclass(frozen=True)
class WebhookConfig:
    host: str = "127.0.0.1"
    port: int = 3000
    secret_env: str | None = "PATCHFIX_WEBHOOK_SECRET"


@dataclass(frozen=True)
class AppConfig:
    runtime: RuntimeConfig = field(default_factory=RuntimeConfig)
    release: ReleaseConfig = field(default_factory=ReleaseConfig)
    bot: BotConfig = field(default_factory=BotConfig)
    webhook: WebhookConfig = field(default_factory=WebhookConfig)
    allowed_repos: frozenset[str] = frozenset()

    def allows_repo(self, full_name: str) -> bool:
        if not self.allowed_repos:
            return True
        return full_name.strip().lower() in self.allowed_repos


class ConfigError(ValueError):
    pass


def default_config() -> AppConfig:
    return AppConfig()


def load_config(path: Path) -> AppConfig:
    with path.open("rb") as fh:
        data = tomllib.load(fh)

    runtime_data = _optional_table(data, "runtime") or {}
    release_data = _optional_table(data, "release") or {}
    bot_data = _optional_table(data, "bot") or {}
    webhook_data = _optional_table(data, "webhook") or {}
    repos_data = _optional_table(data, "repos") or {}

    runtime = RuntimeConfig(
        discovery_concurrency=_int_with_default(runtime_data, "discovery_concurrency", 4),
        repair_concurrency=_int_with_default(runtime_data, "repair_concurrency", 3),
        probe_attempts=_int_with_default(runtime_data, "probe_attempts", 3),
        probe_interval_seconds=_number_with_default(runtime_data, "probe_interval_seconds", 5.0),
        workspace_root=_optional_path(runtime_data, "workspace_root"),
        command_timeout_seconds=_int_with_default(runtime_data, "command_timeout_seconds", 900),
        api_timeout_seconds=_int_with_default(runtime_data, "api_timeout_seconds", 60),
        state_dir=_optional_path(runtime_data, "state_dir"),
    )
    if runtime.discovery_concurrency < 1:
        raise ConfigError("runtime.discovery_concurrency must be >= 1")
    if runtime.repair_concurrency < 1:
        raise ConfigError("runtime.repair_concurrency must be >= 1")
    if runtime.probe_attempts < 1:
        raise ConfigError("runtime.probe_attempts must be >= 1")
    if runtime.probe_interval_seconds < 0:
        raise ConfigError("runtime.probe_interval_seconds must be >= 0")
    if runtime.command_timeout_seconds < 1:
        raise ConfigError("runtime.command_timeout_seconds must be >= 1")
    if runtime.api_timeout_seconds < 1:
        raise ConfigError("runtime.api_timeout_seconds must be >= 1")

    release = ReleaseConfig(
        branches=_tuple_of_str_with_default(release_data, "branches", ("main",)),
        branch_pattern=_str_with_default(release_data, "branch_pattern", r"^[0-9]+-x-y$"),
        head_ref_prefix=_optional_str(release_data, "head_ref_prefix"),
    )
    try:
        re.compile(release.branch_pattern)
    except re.error as exc:
        raise ConfigError(f"release.branch_pattern is not a valid regex: {exc}") from exc

    bot = BotConfig(
        name=_str_with_default(bot_data, "name", BotConfig.name),
        email=_str_with_default(bot_data, "email", BotConfig.email),
        merge_message=_str_with_default(bot_data, "merge_message", BotConfig.merge_message),
        skip_ci_marker=_str_with_default(bot_data, "skip_ci_marker", BotConfig.skip_ci_marker),
        temp_branch_prefix=_str_with_default(
            bot_data, "temp_branch_prefix", BotConfig.temp_branch_prefix
        ),
    )
    if not bot.skip_ci_marker.strip():
        raise ConfigError("bot.skip_ci_marker must be non-empty")

    webhook = WebhookConfig(
        host=_str_with_default(webhook_data, "host", WebhookConfig.host),
        port=_int_with_default(webhook_data, "port", WebhookConfig.port),
        secret_env=_optional_str_with_default(webhook_data, "secret_env", WebhookConfig.secret_env),
    )
    if not 0 < webhook.port < 65536:
        raise ConfigError("webhook.port must be between 1 and 65535")

    return AppConfig(
        runtime=runtime,
        release=release,
        bot=bot,
        webhook=webhook,
        allowed_repos=_allowed_repos(repos_data, "allowed"),
    )


def _optional_table(data: dict[str, object], key: str) -> dict[str, object] | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, dict):
        raise ConfigError(f"[{key}] must be a TOML table")
    return value


def _require_str(data: dict[str, object], key: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ConfigError(f"{key} is required and must be a non-empty string")
    return value


def _optional_str(data: dict[str, object], key: str) -> str | None:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ConfigError(f"{key} must be a string if provided")
    return value


def _optional_str_with_default(
    data: dict[str, object], key: str, default: str | None
) -> str | None:
    if key not in data:
        return default
    return _optional_str(data, key)


def _str_with_default(data: dict[str, object], key: str, default: str) -> str:
    if key not in data:
        return default
    return _require_str(data, key)


def _int_with_default(data: dict[str, object], key: str, default: int) -> int:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"{key} must be an integer")
    return value


def _number_with_default(data: dict[str, object], key: str, default: float) -> float:
    value = data.get(key, default)
    if isinstance(value, bool) or not isinstance(value, int | float):
        raise ConfigError(f"{key} must be a number")
    return float(value)


def _tuple_of_str_with_default(
    data: dict[str, object], key: str, default: tuple[str, ...]
) -> tuple[str, ...]:
    if key not in data:
        return default
    value = data.get(key)
    if not isinstance(value, list):
        raise ConfigError(f"{key} must be a list of strings")
    out: list[str] = []
    for item in value:
        if not isinstance(item, str) or not item.strip():
            raise ConfigError(f"{key} must be a list of non-empty strings")
        if item not in out:
            out.append(item)
    return tuple(out)


def _optional_path(data: dict[str, object], key: str) -> Path | None:
    value = _optional_str(data, key)
    if value is None:
        return None
    return Path(value).expanduser()


def _allowed_repos(data: dict[str, object], key: str) -> frozenset[str]:
    names = _tuple_of_str_with_default(data, key, ())
    out: set[str] = set()
    for full_name in names:
        owner, sep, name = full_name.strip().partition("/")
        if not sep or not owner or not name or "/" in name:
            raise ConfigError(f"{key} entries must look like owner/name, got {full_name!r}")
        out.add(full_name.strip().lower())
    return frozenset(out)
