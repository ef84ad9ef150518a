from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from typing import Any, Mapping

from .config import AppConfig, load_config
from .errors import AuthError, ConfigError, RelayError
from .http_utils import HttpClient
from .notify.formatter import (
    format_project_summary_text,
    format_task_list_text,
    render_project_summary,
    render_task_list,
)
from .notify.slack import SlackNotifier
from .runner import SyncLoop, SyncReport, build_sync_loops
from .sources.clickup import ClickUpClient, ClickUpInboxFeed, clickup_feed_key, verify_signature
from .sources.dropbox import DROPBOX_FEED_KEY
from .state.sqlite_store import SqliteCursorStore, SqliteStateStore
from .summary import summarize_tasks


logger = logging.getLogger("cnr")


def build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="cnr", description="Change Notify Relay (Dropbox / ClickUp -> Slack)")
    p.add_argument("--config", required=True, help="Path to JSON config file")
    p.add_argument(
        "--log-level",
        default=None,
        help="Log level (DEBUG/INFO/WARNING/ERROR). Defaults to env CNR_LOG_LEVEL or INFO",
    )

    sub = p.add_subparsers(dest="command", required=True)

    sync = sub.add_parser("sync", help="Run one sync pass for every configured feed (or just --feed)")
    sync.add_argument("--feed", choices=("dropbox", "clickup"), default=None)

    enqueue = sub.add_parser("enqueue-clickup", help="Queue a ClickUp webhook payload, then sync the ClickUp feed")
    enqueue.add_argument("payload", help="Path to the JSON payload, or - for stdin")
    enqueue.add_argument("--no-sync", action="store_true", help="Only queue the payload")
    enqueue.add_argument(
        "--signature",
        default=None,
        help="X-Signature header of the webhook request; required when the webhook secret env is set",
    )

    reset = sub.add_parser("reset-cursor", help="Forget the stored cursor; the next sync starts from scratch")
    reset.add_argument("--feed", choices=("dropbox", "clickup"), required=True)

    status = sub.add_parser("status", help="Show aggregate task status for a client (ClickUp space)")
    status.add_argument("client", nargs="?", default="", help="Client (space) name; omit to list clients")
    status.add_argument("--post", metavar="CHANNEL", default=None, help="Also post the summary to this channel")

    tasks = sub.add_parser("tasks", help="Show the task breakdown of one project (ClickUp list)")
    tasks.add_argument("project", help="Project (list) name")
    tasks.add_argument("--post", metavar="CHANNEL", default=None, help="Also post the breakdown to this channel")
    return p


def _resolve_log_level(value: str | None) -> int:
    v = (value or "").strip().upper()
    if not v:
        return logging.INFO
    level = logging.getLevelNamesMapping().get(v)
    if isinstance(level, int):
        return level
    return logging.INFO


def _log_report(report: SyncReport) -> None:
    logger.info(
        "run summary: feed=%s status=%s passes=%d pages=%d fetched=%d classified=%d dispatched=%d failed=%d error=%s",
        report.feed_key,
        report.status.value,
        report.passes,
        report.pages,
        report.fetched,
        report.classified,
        report.dispatched,
        report.failed,
        report.error or "-",
    )
    for r in report.results:
        if not r.delivered:
            logger.warning(
                "undelivered: feed=%s channel=%s subject=%s reason=%s",
                report.feed_key,
                r.channel,
                r.candidate.subject_name,
                r.reason,
            )


def _run_loops(loops: dict[str, SyncLoop]) -> int:
    exit_code = 0
    for loop in loops.values():
        report = loop.run_sync()
        _log_report(report)
        if not report.ok:
            exit_code = 1
    return exit_code


def _cmd_sync(config: AppConfig, state: SqliteStateStore, feed: str | None) -> int:
    loops = build_sync_loops(config, state=state)
    if feed is not None:
        if feed not in loops:
            raise ConfigError(f"feed '{feed}' is not configured")
        loops = {feed: loops[feed]}
    if not loops:
        logger.warning("no feeds configured; nothing to sync")
        return 0
    return _run_loops(loops)


def _read_payload_bytes(payload_path: str) -> bytes:
    if payload_path == "-":
        return sys.stdin.buffer.read()
    with open(payload_path, "rb") as f:
        return f.read()


def _check_webhook_signature(config: AppConfig, body: bytes, signature: str | None) -> None:
    secret_env = config.clickup.webhook_secret_env if config.clickup is not None else None
    secret = config.resolve_env(secret_env)
    if not secret:
        logger.warning("clickup webhook signature not verified: env %s is empty", secret_env)
        return
    if not signature:
        raise AuthError("clickup-webhook", "missing X-Signature")
    if not verify_signature(body, signature, secret):
        raise AuthError("clickup-webhook", "X-Signature mismatch")


def _inbox_feed(config: AppConfig, state: SqliteStateStore) -> ClickUpInboxFeed:
    """仅入队用的 feed：只写本地 inbox，不需要 Slack / ClickUp 凭据。"""
    if config.clickup is None:
        raise ConfigError("feeds.clickup is not configured")
    if not config.clickup.team_id:
        raise ConfigError("ClickUp team id not configured (feeds.clickup.team_id or CLICKUP_TEAM_ID)")
    http = HttpClient(timeout_seconds=config.http_timeout_seconds)
    client = ClickUpClient(http=http, token=config.resolve_env(config.clickup.token_env) or "")
    return ClickUpInboxFeed(
        state=state,
        client=client,
        team_id=config.clickup.team_id,
        page_size=config.clickup.page_size,
    )


def _cmd_enqueue_clickup(
    config: AppConfig,
    state: SqliteStateStore,
    payload_path: str,
    no_sync: bool,
    signature: str | None,
) -> int:
    feed = _inbox_feed(config, state)
    body = _read_payload_bytes(payload_path)
    _check_webhook_signature(config, body, signature)
    try:
        payload = json.loads(body)
    except ValueError as e:
        raise ConfigError(f"webhook payload is not valid JSON: {e}") from e
    if not isinstance(payload, dict):
        raise ConfigError("webhook payload must be a JSON object")

    if no_sync:
        feed.enqueue(payload)
        return 0

    loop = build_sync_loops(config, state=state).get("clickup")
    if loop is None or not isinstance(loop.feed, ClickUpInboxFeed):
        raise ConfigError("feeds.clickup is not configured")
    loop.feed.enqueue(payload)
    return _run_loops({"clickup": loop})


def _feed_key(config: AppConfig, feed: str) -> str:
    if feed == "dropbox" and config.dropbox is not None:
        return DROPBOX_FEED_KEY
    if feed == "clickup" and config.clickup is not None and config.clickup.team_id:
        return clickup_feed_key(config.clickup.team_id)
    raise ConfigError(f"feed '{feed}' is not configured")


def _cmd_reset_cursor(config: AppConfig, state: SqliteStateStore, feed: str) -> int:
    # 只动本地状态，不需要任何上游凭据。
    feed_key = _feed_key(config, feed)
    SqliteCursorStore(state=state, feed_key=feed_key).reset()
    logger.info("cursor reset: feed=%s", feed_key)
    return 0


def _cmd_status(config: AppConfig, client_name: str, post_channel: str | None) -> int:
    if config.clickup is None or not config.clickup.team_id:
        raise ConfigError("feeds.clickup with a team id is required for status queries")
    http = HttpClient(timeout_seconds=config.http_timeout_seconds)
    client = ClickUpClient(http=http, token=config.require_env(config.clickup.token_env, what="ClickUp API token"))
    team_id = config.clickup.team_id

    if not client_name:
        names = [str(s.get("name") or "") for s in client.get_spaces(team_id)]
        print("Available clients:")
        for n in names:
            print(f"  - {n}")
        return 0

    space = client.find_space_by_name(team_id, client_name)
    if space is None:
        suggestions = [
            str(s.get("name") or "")
            for s in client.get_spaces(team_id)
            if client_name.lower() in str(s.get("name") or "").lower()
        ]
        if suggestions:
            print(f'Client "{client_name}" not found. Did you mean: {", ".join(suggestions)}?')
        else:
            print(f'Client "{client_name}" not found.')
        return 1

    summary = summarize_tasks(str(space.get("name") or client_name), client.get_tasks_from_space(str(space.get("id"))))
    print(format_project_summary_text(summary))

    if post_channel:
        if config.slack is None:
            raise ConfigError("notify.slack is required to post a summary")
        notifier = SlackNotifier(token=config.require_env(config.slack.token_env, what="Slack bot token"), http=http)
        notifier.send(post_channel, render_project_summary(summary))
        logger.info("summary posted: client=%s channel=%s", summary.client_name, post_channel)
    return 0


def _cmd_tasks(config: AppConfig, project_name: str, post_channel: str | None) -> int:
    if config.clickup is None or not config.clickup.team_id:
        raise ConfigError("feeds.clickup with a team id is required for task queries")
    http = HttpClient(timeout_seconds=config.http_timeout_seconds)
    client = ClickUpClient(http=http, token=config.require_env(config.clickup.token_env, what="ClickUp API token"))

    found: Mapping[str, Any] | None = None
    for space in client.get_spaces(config.clickup.team_id):
        found = client.find_list_by_name(str(space.get("id")), project_name)
        if found is not None:
            break
    if found is None:
        print(f'Project "{project_name}" not found.')
        return 1

    name = str(found.get("name") or project_name)
    tasks = client.get_list_tasks(str(found.get("id")))
    print(format_task_list_text(name, tasks))

    if post_channel:
        if config.slack is None:
            raise ConfigError("notify.slack is required to post a task breakdown")
        notifier = SlackNotifier(token=config.require_env(config.slack.token_env, what="Slack bot token"), http=http)
        notifier.send(post_channel, render_task_list(name, tasks))
        logger.info("task breakdown posted: project=%s channel=%s", name, post_channel)
    return 0


def main(argv: list[str] | None = None) -> int:
    args = build_arg_parser().parse_args(argv)
    env_log_level = os.environ.get("CNR_LOG_LEVEL")
    log_level = _resolve_log_level(args.log_level or env_log_level)
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    try:
        config = load_config(args.config)
        state = SqliteStateStore(config.sqlite_path)
        logger.info(
            "cnr start: command=%s config=%s sqlite_path=%s default_channel=%s",
            args.command,
            args.config,
            config.sqlite_path,
            config.default_channel,
        )
        if args.command == "sync":
            return _cmd_sync(config, state, args.feed)
        if args.command == "enqueue-clickup":
            return _cmd_enqueue_clickup(config, state, args.payload, args.no_sync, args.signature)
        if args.command == "reset-cursor":
            return _cmd_reset_cursor(config, state, args.feed)
        if args.command == "tasks":
            return _cmd_tasks(config, args.project, args.post)
        return _cmd_status(config, args.client, args.post)
    except ConfigError as e:
        logger.error("configuration error: %s", e)
        return 2
    except RelayError as e:
        logger.error("%s: %s", type(e).__name__, e)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
