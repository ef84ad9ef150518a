from __future__ import annotations

import dataclasses
import hashlib
import hmac
import logging
from dataclasses import dataclass
from typing import Any, Mapping

from ..errors import FetchError
from ..http_utils import HttpClient, classify_upstream_error, with_query_params
from ..models import (
    NotificationCandidate,
    RawChangeEntry,
    TaskFieldChange,
    TaskStatus,
    TaskStatusChange,
    parse_epoch_millis,
)
from ..state.sqlite_store import SqliteStateStore
from .base import ChangePage


logger = logging.getLogger(__name__)

CLICKUP_API_BASE = "https://api.clickup.com/api/v2"


def clickup_feed_key(team_id: str) -> str:
    return f"clickup:{team_id}:tasks"


def verify_signature(body: bytes, signature: str, secret: str) -> bool:
    """ClickUp webhook 签名：X-Signature 为 body 的 HMAC-SHA256 十六进制摘要。"""
    expected = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature.strip().lower())


def _parse_status(value: Any) -> TaskStatus | None:
    if not isinstance(value, dict):
        return None
    status = value.get("status")
    type_ = value.get("type")
    if status is None and type_ is None:
        return None
    return TaskStatus(status=str(status or ""), type=str(type_ or ""))


def entries_from_webhook(payload: Mapping[str, Any]) -> list[RawChangeEntry]:
    """
    将一次 ClickUp webhook payload 解析为原始变更。

    - taskStatusUpdated：field == "status" 的 history item -> TaskStatusChange，
      其余 history item -> TaskFieldChange
    - 其它事件（taskCreated / taskDeleted / ...）不产生变更
    """
    event = payload.get("event")
    task_id = str(payload.get("task_id") or "")
    if event != "taskStatusUpdated" or not task_id:
        logger.debug("clickup webhook ignored: event=%s task_id=%s", event, task_id)
        return []

    entries: list[RawChangeEntry] = []
    for item in payload.get("history_items") or []:
        if not isinstance(item, dict):
            continue
        occurred_at = parse_epoch_millis(item.get("date"))
        if occurred_at is None:
            raise FetchError(f"ClickUp history item without date: task_id={task_id} id={item.get('id')!r}")
        history_id = str(item.get("id") or "")
        field = str(item.get("field") or "")
        if field == "status":
            entries.append(
                TaskStatusChange(
                    task_id=task_id,
                    history_id=history_id,
                    before=_parse_status(item.get("before")),
                    after=_parse_status(item.get("after")),
                    occurred_at=occurred_at,
                )
            )
        else:
            entries.append(TaskFieldChange(task_id=task_id, history_id=history_id, field=field, occurred_at=occurred_at))
    return entries


@dataclass(slots=True)
class ClickUpClient:
    """ClickUp REST API v2 的只读封装（个人 token 直接放在 Authorization 头）。"""

    http: HttpClient
    token: str
    api_base: str = CLICKUP_API_BASE

    def _get(self, endpoint: str, params: Mapping[str, str | None] | None = None) -> Any:
        url = f"{self.api_base}{endpoint}"
        if params:
            url = with_query_params(url, params)
        try:
            resp = self.http.get(url, headers={"Authorization": self.token, "Content-Type": "application/json"})
            return resp.json()
        except Exception as e:  # noqa: BLE001
            raise classify_upstream_error(e, provider="clickup") from e

    def get_task(self, task_id: str) -> Mapping[str, Any]:
        data = self._get(f"/task/{task_id}")
        if not isinstance(data, dict):
            raise FetchError(f"ClickUp task {task_id} returned unexpected body: {type(data)}")
        return data

    def get_spaces(self, team_id: str) -> list[Mapping[str, Any]]:
        return self._items(self._get(f"/team/{team_id}/space"), "spaces")

    def get_folders(self, space_id: str) -> list[Mapping[str, Any]]:
        return self._items(self._get(f"/space/{space_id}/folder"), "folders")

    def get_folder_lists(self, folder_id: str) -> list[Mapping[str, Any]]:
        return self._items(self._get(f"/folder/{folder_id}/list"), "lists")

    def get_space_lists(self, space_id: str) -> list[Mapping[str, Any]]:
        return self._items(self._get(f"/space/{space_id}/list"), "lists")

    def get_list_tasks(self, list_id: str, *, include_closed: bool = True) -> list[Mapping[str, Any]]:
        """逐页拉取，直到返回空页或 last_page 为真。"""
        tasks: list[Mapping[str, Any]] = []
        page = 0
        while True:
            data = self._get(
                f"/list/{list_id}/task",
                {"include_closed": "true" if include_closed else None, "page": str(page)},
            )
            items = self._items(data, "tasks")
            tasks.extend(items)
            if not items or (isinstance(data, dict) and data.get("last_page", True)):
                return tasks
            page += 1

    def get_tasks_from_space(self, space_id: str, *, include_closed: bool = True) -> list[Mapping[str, Any]]:
        tasks: list[Mapping[str, Any]] = []
        for lst in self.get_space_lists(space_id):
            tasks.extend(self.get_list_tasks(str(lst.get("id")), include_closed=include_closed))
        for folder in self.get_folders(space_id):
            for lst in self.get_folder_lists(str(folder.get("id"))):
                tasks.extend(self.get_list_tasks(str(lst.get("id")), include_closed=include_closed))
        return tasks

    def find_list_by_name(self, space_id: str, name: str) -> Mapping[str, Any] | None:
        """先查 space 下无 folder 的 list，再逐个 folder 查；名称比较忽略大小写与首尾空白。"""
        wanted = name.strip().lower()
        for lst in self.get_space_lists(space_id):
            if str(lst.get("name") or "").strip().lower() == wanted:
                return lst
        for folder in self.get_folders(space_id):
            for lst in self.get_folder_lists(str(folder.get("id"))):
                if str(lst.get("name") or "").strip().lower() == wanted:
                    return lst
        return None

    def find_space_by_name(self, team_id: str, name: str) -> Mapping[str, Any] | None:
        wanted = name.strip().lower()
        for space in self.get_spaces(team_id):
            if str(space.get("name") or "").strip().lower() == wanted:
                return space
        return None

    @staticmethod
    def _items(data: Any, key: str) -> list[Mapping[str, Any]]:
        if not isinstance(data, dict) or not isinstance(data.get(key), list):
            raise FetchError(f"ClickUp API expected '{key}' list, got {type(data)}")
        return [x for x in data[key] if isinstance(x, dict)]


def _name_of(task: Mapping[str, Any], key: str) -> str:
    value = task.get(key)
    if isinstance(value, dict):
        return str(value.get("name") or "")
    return ""


@dataclass(slots=True)
class ClickUpInboxFeed:
    """
    ClickUp 任务状态 feed：消费 webhook inbox。

    入站 webhook 只负责把 payload 追加进 inbox（seq 单调递增）；
    本 feed 按 seq 分页读取。cursor 语义：最后一条已消费的 seq（十进制字符串）。
    """

    state: SqliteStateStore
    client: ClickUpClient
    team_id: str
    page_size: int = 50

    def key(self) -> str:
        return clickup_feed_key(self.team_id)

    def enqueue(self, payload: Mapping[str, Any]) -> int:
        seq = self.state.append_inbox(self.key(), payload)
        logger.info("clickup webhook queued: seq=%d event=%s task_id=%s", seq, payload.get("event"), payload.get("task_id"))
        return seq

    def fetch_page(self, cursor: str | None) -> ChangePage:
        try:
            after_seq = int(cursor) if cursor else 0
        except ValueError as e:
            raise FetchError(f"invalid inbox cursor for {self.key()}: {cursor!r}") from e

        items = self.state.read_inbox(self.key(), after_seq=after_seq, limit=self.page_size + 1)
        has_more = len(items) > self.page_size
        items = items[: self.page_size]

        entries: list[RawChangeEntry] = []
        for item in items:
            try:
                entries.extend(entries_from_webhook(item.payload))
            except Exception:  # noqa: BLE001
                # 损坏的 payload 若中止整轮，cursor 将永远卡在这一条上。
                logger.exception("clickup webhook payload skipped: seq=%d", item.seq)

        next_seq = items[-1].seq if items else after_seq
        return ChangePage(entries=entries, next_cursor=str(next_seq), has_more=has_more)

    def enrich(self, candidate: NotificationCandidate) -> NotificationCandidate:
        """拉取任务完整记录：任务名、所属 space（路由依据）、链接、项目路径、负责人。"""
        task = self.client.get_task(candidate.subject_id)
        space = _name_of(task, "space")
        project_path = " > ".join(p for p in (space, _name_of(task, "folder"), _name_of(task, "list")) if p)
        assignees = [
            str(a.get("username") or "")
            for a in task.get("assignees") or []
            if isinstance(a, dict) and a.get("username")
        ]
        return dataclasses.replace(
            candidate,
            subject_name=str(task.get("name") or candidate.subject_name),
            origin=space or candidate.origin,
            url=str(task.get("url") or candidate.url),
            details={**candidate.details, "project_path": project_path, "assignees": assignees},
        )
