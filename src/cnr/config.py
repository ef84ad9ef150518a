from __future__ import annotations

import json
import os
from dataclasses import dataclass
from typing import Any, Mapping

from .errors import ConfigError
from .models import RouteRule
from .rules.routing import parse_mapping_string, parse_route_rules


DEFAULT_CHANNEL = "all-media"


def _require_dict(value: Any, *, where: str) -> Mapping[str, Any]:
    if not isinstance(value, dict):
        raise ConfigError(f"Expected object at {where}, got {type(value)}")
    return value


def _get_int(d: Mapping[str, Any], key: str, default: int) -> int:
    v = d.get(key, default)
    if isinstance(v, bool):
        return default
    try:
        return int(v)
    except Exception:
        return default


def _get_float(d: Mapping[str, Any], key: str, default: float) -> float:
    v = d.get(key, default)
    if isinstance(v, bool):
        return default
    try:
        return float(v)
    except Exception:
        return default


def _get_str(d: Mapping[str, Any], key: str, default: str | None = None) -> str | None:
    v = d.get(key, default)
    if v is None:
        return None
    return str(v)


def _get_str_list(d: Mapping[str, Any], key: str, default: list[str]) -> list[str]:
    v = d.get(key, default)
    if v is None:
        return list(default)
    if isinstance(v, list):
        return [str(x) for x in v]
    return list(default)


def _split_csv(value: str | None) -> list[str]:
    if not value:
        return []
    return [p.strip() for p in value.split(",") if p.strip()]


@dataclass(frozen=True, slots=True)
class DropboxFeedConfig:
    """
    Dropbox 文件 feed 配置。

    token_env:
      - access token 的环境变量名
    watched_folders / watched_folders_env:
      - 前缀白名单（大小写不敏感）；两者合并，均为空则关注全部目录
    routes / routes_env:
      - 目录前缀 -> channel；环境变量格式 /ClientA:channel-a,/ClientB:channel-b，排在文件配置之后
    """

    token_env: str
    root_path: str
    watched_folders: tuple[str, ...]
    routes: tuple[RouteRule, ...]


@dataclass(frozen=True, slots=True)
class ClickUpFeedConfig:
    """
    ClickUp 任务 feed 配置。

    team_id 可直接写在文件里，也可用 team_id_env 指向环境变量。
    routes 的前缀匹配对象是任务所属 space 的名称。
    webhook_secret_env 指向的环境变量非空时，入站 webhook 必须带合法的 HMAC-SHA256 签名。
    """

    token_env: str
    team_id: str
    terminal_status_types: tuple[str, ...]
    page_size: int
    routes: tuple[RouteRule, ...]
    webhook_secret_env: str = "CLICKUP_WEBHOOK_SECRET"


@dataclass(frozen=True, slots=True)
class SlackNotifyConfig:
    token_env: str


@dataclass(frozen=True, slots=True)
class AppConfig:
    """
    应用总配置。

    sqlite_path:
      - SQLite 状态库路径（cursor / webhook inbox / 派发失败记录）
    http_timeout_seconds:
      - 每次上游/出口 HTTP 调用的超时
    dispatch_max_workers / dispatch_timeout_seconds:
      - 同一页内并发派发的线程数，以及整页派发等待上限
    default_channel:
      - 所有路由规则都未命中时的兜底 channel
    """

    sqlite_path: str
    http_timeout_seconds: float
    dispatch_max_workers: int
    dispatch_timeout_seconds: float
    default_channel: str
    dropbox: DropboxFeedConfig | None
    clickup: ClickUpFeedConfig | None
    slack: SlackNotifyConfig | None

    def resolve_env(self, env_name: str | None) -> str | None:
        if not env_name:
            return None
        return os.environ.get(env_name) or None

    def require_env(self, env_name: str | None, *, what: str) -> str:
        value = self.resolve_env(env_name)
        if not value:
            raise ConfigError(f"{what} not configured (env {env_name or '<unset>'} is empty)")
        return value


def _load_routes(d: Mapping[str, Any], *, where: str) -> tuple[RouteRule, ...]:
    rules = parse_route_rules(d.get("routes"), where=f"{where}.routes")
    env_name = _get_str(d, "routes_env")
    if env_name:
        rules += parse_mapping_string(os.environ.get(env_name) or "")
    return rules


def load_config(config_path: str) -> AppConfig:
    """
    使用 JSON 作为配置落地形式；密钥只通过环境变量读取，避免落盘。

    JSON 顶层结构（示意）：
    {
      "state": { "sqlite_path": "./cnr_state.sqlite3" },
      "http": { "timeout_seconds": 20 },
      "dispatch": { "max_workers": 4, "timeout_seconds": 30 },
      "routing": { "default_channel": "all-media" },
      "feeds": { "dropbox": { ... }, "clickup": { ... } },
      "notify": { "slack": { "token_env": "SLACK_BOT_TOKEN" } }
    }
    """
    try:
        with open(config_path, "rb") as f:
            raw = json.loads(f.read().decode("utf-8"))
    except (OSError, ValueError) as e:
        raise ConfigError(f"Cannot read config {config_path}: {e}") from e

    root = _require_dict(raw, where="$")

    state = _require_dict(root.get("state", {}), where="$.state")
    sqlite_path = str(state.get("sqlite_path") or "./cnr_state.sqlite3")

    http = _require_dict(root.get("http", {}), where="$.http")
    dispatch = _require_dict(root.get("dispatch", {}), where="$.dispatch")

    routing = _require_dict(root.get("routing", {}), where="$.routing")
    default_channel = (
        os.environ.get(str(routing.get("default_channel_env") or "SLACK_NOTIFICATION_CHANNEL"))
        or _get_str(routing, "default_channel")
        or DEFAULT_CHANNEL
    )

    feeds = _require_dict(root.get("feeds", {}), where="$.feeds")

    dropbox_cfg: DropboxFeedConfig | None = None
    if feeds.get("dropbox") is not None:
        db = _require_dict(feeds["dropbox"], where="$.feeds.dropbox")
        watched = _get_str_list(db, "watched_folders", [])
        watched += _split_csv(os.environ.get(str(db.get("watched_folders_env") or "DROPBOX_WATCHED_FOLDERS")))
        dropbox_cfg = DropboxFeedConfig(
            token_env=str(db.get("token_env") or "DROPBOX_ACCESS_TOKEN"),
            root_path=str(db.get("root_path") or ""),
            watched_folders=tuple(watched),
            routes=_load_routes(db, where="$.feeds.dropbox"),
        )

    clickup_cfg: ClickUpFeedConfig | None = None
    if feeds.get("clickup") is not None:
        cu = _require_dict(feeds["clickup"], where="$.feeds.clickup")
        team_id = _get_str(cu, "team_id") or os.environ.get(str(cu.get("team_id_env") or "CLICKUP_TEAM_ID")) or ""
        clickup_cfg = ClickUpFeedConfig(
            token_env=str(cu.get("token_env") or "CLICKUP_API_TOKEN"),
            team_id=team_id,
            terminal_status_types=tuple(_get_str_list(cu, "terminal_status_types", ["closed"])),
            page_size=max(1, _get_int(cu, "page_size", 50)),
            routes=_load_routes(cu, where="$.feeds.clickup"),
            webhook_secret_env=str(cu.get("webhook_secret_env") or "CLICKUP_WEBHOOK_SECRET"),
        )

    notify = _require_dict(root.get("notify", {}), where="$.notify")
    slack_cfg: SlackNotifyConfig | None = None
    if notify.get("slack") is not None:
        sl = _require_dict(notify["slack"], where="$.notify.slack")
        slack_cfg = SlackNotifyConfig(token_env=str(sl.get("token_env") or "SLACK_BOT_TOKEN"))

    return AppConfig(
        sqlite_path=sqlite_path,
        http_timeout_seconds=max(1.0, _get_float(http, "timeout_seconds", 20.0)),
        dispatch_max_workers=max(1, _get_int(dispatch, "max_workers", 4)),
        dispatch_timeout_seconds=max(1.0, _get_float(dispatch, "timeout_seconds", 30.0)),
        default_channel=default_channel,
        dropbox=dropbox_cfg,
        clickup=clickup_cfg,
        slack=slack_cfg,
    )
