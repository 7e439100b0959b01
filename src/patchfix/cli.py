from __future__ import annotations

import argparse
import os
from pathlib import Path

from patchfix.config import AppConfig, default_config, load_config
from patchfix.credentials import (
    CredentialProvider,
    EnvCredentialProvider,
    GhCliCredentialProvider,
)
from patchfix.events import BranchUpdateEvent
from patchfix.git_ops import MergeExecutor
from patchfix.models import RepoCoordinates
from patchfix.observability import configure_logging
from patchfix.orchestrator import ConflictRepairOrchestrator
from patchfix.scheduler import DualStageScheduler


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="patchfix")
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve_parser = subparsers.add_parser(
        "serve", help="Serve the GitHub webhook endpoint and repair conflicted pull requests"
    )
    _add_common_arguments(serve_parser)
    serve_parser.add_argument("--host", type=str, help="Override webhook.host")
    serve_parser.add_argument("--port", type=int, help="Override webhook.port")

    run_parser = subparsers.add_parser(
        "run", help="Treat one release branch as just updated and repair its pull requests"
    )
    _add_common_arguments(run_parser)
    run_parser.add_argument("--repo", type=str, required=True, help="Repository as owner/name")
    run_parser.add_argument("--branch", type=str, required=True, help="Updated branch name")

    return parser


def _add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--config", type=Path, default=Path("patchfix.toml"))
    parser.add_argument(
        "--token-env",
        type=str,
        default=None,
        help="Read clone tokens from this environment variable instead of `gh auth token`",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        nargs="?",
        const="high",
        default=None,
        choices=("low", "high"),
        help="Enable runtime logging to stderr (default mode: high)",
    )


def main() -> None:
    args = build_parser().parse_args()
    config = _load_config_or_default(args.config)
    configure_logging(args.verbose, state_dir=config.runtime.state_dir)

    if args.command == "serve":
        _cmd_serve(config, args)
        return
    if args.command == "run":
        _cmd_run(config, args)
        return

    raise RuntimeError(f"Unknown command: {args.command}")


def build_orchestrator(
    config: AppConfig,
    scheduler: DualStageScheduler,
    credentials: CredentialProvider,
) -> ConflictRepairOrchestrator:
    executor = MergeExecutor(
        config.bot,
        credentials,
        command_timeout_seconds=config.runtime.command_timeout_seconds,
    )
    return ConflictRepairOrchestrator(config, scheduler=scheduler, executor=executor)


def _cmd_serve(config: AppConfig, args: argparse.Namespace) -> None:
    import uvicorn

    from patchfix.webhook import create_app

    scheduler = _build_scheduler(config)
    orchestrator = build_orchestrator(config, scheduler, _credentials(args))
    secret = os.environ.get(config.webhook.secret_env) if config.webhook.secret_env else None
    app = create_app(orchestrator, secret=secret or None)
    try:
        uvicorn.run(
            app,
            host=args.host or config.webhook.host,
            port=args.port or config.webhook.port,
            log_level="info",
        )
    finally:
        scheduler.shutdown(wait=False)


def _cmd_run(config: AppConfig, args: argparse.Namespace) -> None:
    try:
        repo = RepoCoordinates.parse(str(args.repo))
    except ValueError as exc:
        raise RuntimeError(f"--repo must look like owner/name: {exc}") from exc

    scheduler = _build_scheduler(config)
    orchestrator = build_orchestrator(config, scheduler, _credentials(args))
    try:
        scheduled = orchestrator.handle_branch_update(
            BranchUpdateEvent(ref=f"refs/heads/{args.branch}", repo=repo)
        )
        scheduler.wait_idle()
    finally:
        scheduler.shutdown(wait=True)
    print(f"Checked {scheduled} pull request(s) against {repo.full_name}:{args.branch}")


def _build_scheduler(config: AppConfig) -> DualStageScheduler:
    return DualStageScheduler(
        discovery_concurrency=config.runtime.discovery_concurrency,
        repair_concurrency=config.runtime.repair_concurrency,
    )


def _credentials(args: argparse.Namespace) -> CredentialProvider:
    if args.token_env:
        return EnvCredentialProvider(env_var=str(args.token_env))
    return GhCliCredentialProvider()


def _load_config_or_default(path: Path) -> AppConfig:
    if path.exists():
        return load_config(path)
    return default_config()
