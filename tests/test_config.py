from __future__ import annotations

from pathlib import Path

import pytest

from patchfix.config import AppConfig, BotConfig, ConfigError, ReleaseConfig, load_config


def _write(path: Path, content: str) -> Path:
    path.write_text(content, encoding="utf-8")
    return path


def test_load_config_parses_all_tables(tmp_path: Path) -> None:
    cfg_path = _write(
        tmp_path / "patchfix.toml",
        """
[runtime]
discovery_concurrency = 8
repair_concurrency = 2
probe_attempts = 5
probe_interval_seconds = 2.5
workspace_root = "~/patchfix-work"
command_timeout_seconds = 300
api_timeout_seconds = 30
state_dir = "/var/lib/patchfix"

[release]
branches = ["master", "main", "master"]
branch_pattern = "^[0-9]+-x-y$"
head_ref_prefix = "cherry-pick/{branch}/"

[bot]
name = "Electron Bot"
email = "electron@github.com"
merge_message = "chore: update patches against {base}"
skip_ci_marker = "[ci skip]"
temp_branch_prefix = "conflict-fix/"

[webhook]
host = "0.0.0.0"
port = 8080
secret_env = "HOOK_SECRET"

[repos]
allowed = ["Electron/Electron", "o/r"]
""",
    )

    loaded = load_config(cfg_path)

    assert loaded.runtime.discovery_concurrency == 8
    assert loaded.runtime.repair_concurrency == 2
    assert loaded.runtime.probe_attempts == 5
    assert loaded.runtime.probe_interval_seconds == 2.5
    assert loaded.runtime.workspace_root == Path("~/patchfix-work").expanduser()
    assert loaded.runtime.state_dir == Path("/var/lib/patchfix")
    assert loaded.release.branches == ("master", "main")
    assert loaded.release.head_ref_prefix_for("7-x-y") == "cherry-pick/7-x-y/"
    assert loaded.bot.merge_commit_message("main") == "chore: update patches against main [ci skip]"
    assert loaded.bot.temp_branch_prefix == "conflict-fix/"
    assert loaded.webhook.port == 8080
    assert loaded.webhook.secret_env == "HOOK_SECRET"
    assert loaded.allows_repo("electron/electron")
    assert not loaded.allows_repo("other/repo")


def test_load_config_empty_file_uses_defaults(tmp_path: Path) -> None:
    loaded = load_config(_write(tmp_path / "patchfix.toml", ""))

    assert loaded == AppConfig()
    assert loaded.runtime.discovery_concurrency == 4
    assert loaded.runtime.repair_concurrency == 3
    assert loaded.runtime.probe_attempts == 3
    assert loaded.runtime.probe_interval_seconds == 5.0
    assert loaded.release.branches == ("main",)
    assert loaded.release.head_ref_prefix_for("main") is None
    assert loaded.bot.merge_commit_message("main").endswith(" [skip ci]")
    assert loaded.allows_repo("anyone/anything")


@pytest.mark.parametrize(
    ("content", "message"),
    [
        ("[runtime]\ndiscovery_concurrency = 0\n", "discovery_concurrency must be >= 1"),
        ("[runtime]\nrepair_concurrency = 0\n", "repair_concurrency must be >= 1"),
        ("[runtime]\nprobe_attempts = 0\n", "probe_attempts must be >= 1"),
        ("[runtime]\nprobe_interval_seconds = -1\n", "probe_interval_seconds must be >= 0"),
        ("[runtime]\nrepair_concurrency = true\n", "must be an integer"),
        ("[runtime]\nprobe_interval_seconds = \"5\"\n", "must be a number"),
        ("[release]\nbranch_pattern = \"[\"\n", "not a valid regex"),
        ("[release]\nbranches = \"main\"\n", "must be a list of strings"),
        ("[bot]\nskip_ci_marker = \" \"\n", "must be a non-empty string"),
        ("[webhook]\nport = 70000\n", "webhook.port"),
        ("[repos]\nallowed = [\"no-slash\"]\n", "owner/name"),
        ("runtime = 3\n", r"\[runtime\] must be a TOML table"),
    ],
)
def test_load_config_rejects_invalid_values(tmp_path: Path, content: str, message: str) -> None:
    with pytest.raises(ConfigError, match=message):
        load_config(_write(tmp_path / "patchfix.toml", content))


def test_release_and_bot_helpers() -> None:
    release = ReleaseConfig(head_ref_prefix="cherry-pick/{branch}/")
    bot = BotConfig(merge_message="merge {base} into head", skip_ci_marker="[skip ci]")

    assert release.head_ref_prefix_for("main") == "cherry-pick/main/"
    assert bot.merge_commit_message("8-x-y") == "merge 8-x-y into head [skip ci]"
