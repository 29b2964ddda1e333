from __future__ import annotations

import argparse
from collections.abc import Mapping, Sequence
import json
import os
from pathlib import Path
import sys

from threadwatch.claude_adapter import ClaudeCodeAdapter
from threadwatch.config import AppConfig, ConfigError, load_config, resolve_progress_path
from threadwatch.git_ops import GitWorkspace
from threadwatch.gitlab_gateway import GitLabGateway
from threadwatch.observability import configure_logging
from threadwatch.pipeline_server import run_pipeline_server
from threadwatch.progress import ProgressChannel
from threadwatch.progress_server import run_progress_server
from threadwatch.reconcile import check_trigger
from threadwatch.runner import InvocationRunner


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="threadwatch")
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser(
        "run", help="Check for a trigger and, if found, run the agent on this review unit"
    )
    _add_verbose_flag(run_parser, default="low")

    check_parser = subparsers.add_parser(
        "check", help="Only evaluate the trigger and print the decision as JSON"
    )
    _add_verbose_flag(check_parser, default="off")

    server_parser = subparsers.add_parser(
        "progress-server",
        help="Serve the update_progress tool over MCP stdio for the agent",
    )
    server_parser.add_argument("--channel", type=Path, required=True)
    _add_verbose_flag(server_parser, default="off")

    pipeline_parser = subparsers.add_parser(
        "pipeline-server",
        help="Serve read-only CI pipeline tools for the merge request over MCP stdio",
    )
    _add_verbose_flag(pipeline_parser, default="off")

    update_parser = subparsers.add_parser(
        "update-progress",
        help="Replace the progress text shown on the tracking note",
    )
    update_parser.add_argument(
        "--channel",
        type=Path,
        default=None,
        help="Progress channel file (defaults to THREADWATCH_PROGRESS_PATH or RUNNER_TEMP)",
    )
    update_parser.add_argument(
        "body", nargs="?", default=None, help="Progress text; read from stdin when omitted"
    )
    _add_verbose_flag(update_parser, default="off")
    return parser


def _add_verbose_flag(parser: argparse.ArgumentParser, *, default: str) -> None:
    parser.add_argument(
        "-v",
        "--verbose",
        nargs="?",
        const="high",
        default=default,
        choices=("off", "low", "high"),
        help="Runtime logging to stderr (bare -v means high)",
    )


def main(argv: Sequence[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    configure_logging(args.verbose)
    sys.exit(_dispatch(args, os.environ))


def _dispatch(args: argparse.Namespace, environ: Mapping[str, str]) -> int:
    if args.command == "progress-server":
        run_progress_server(args.channel)
        return 0
    if args.command == "update-progress":
        return _cmd_update_progress(args, environ)

    try:
        config = load_config(environ)
    except ConfigError as exc:
        print(f"threadwatch: configuration error: {exc}", file=sys.stderr)
        return 1

    if args.command == "check":
        return _cmd_check(config)
    if args.command == "run":
        return _cmd_run(config)
    if args.command == "pipeline-server":
        return _cmd_pipeline_server(config)

    raise RuntimeError(f"Unknown command: {args.command}")


def _gateway_for(config: AppConfig) -> GitLabGateway:
    return GitLabGateway(api_url=config.api_url, token=config.token, project_id=config.project_id)


def _cmd_check(config: AppConfig) -> int:
    result = check_trigger(_gateway_for(config), config)
    payload = {
        "should_run": result.should_run,
        "reason": result.reason,
        "trigger_kind": result.trigger_kind,
        "new_trigger_count": len(result.new_triggers),
        "has_prior_response": result.has_prior_response,
    }
    print(json.dumps(payload, indent=2))
    return 0


def _cmd_run(config: AppConfig) -> int:
    runner = InvocationRunner(
        config,
        gateway=_gateway_for(config),
        agent=ClaudeCodeAdapter(config.agent),
        git=GitWorkspace(Path.cwd()),
    )
    return runner.run()


def _cmd_pipeline_server(config: AppConfig) -> int:
    if not config.is_merge_request:
        print("threadwatch: pipeline tools are only available for merge requests", file=sys.stderr)
        return 1
    run_pipeline_server(config)
    return 0


def _cmd_update_progress(args: argparse.Namespace, environ: Mapping[str, str]) -> int:
    body = args.body if args.body is not None else sys.stdin.read()
    if not body.strip():
        print("threadwatch: progress body must not be empty", file=sys.stderr)
        return 1
    channel_path = args.channel or resolve_progress_path(environ)
    ProgressChannel(channel_path).replace(body)
    return 0
