from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Mapping, Union


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


def parse_rfc3339_datetime(value: str) -> datetime:
    """
    解析常见的 RFC3339/ISO8601 时间串为带 tzinfo 的 datetime。

    兼容：
    - 2026-02-10T12:34:56Z
    - 2026-02-10T12:34:56+00:00
    - 2026-02-10T12:34:56.123Z
    """
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=UTC)
    return dt


def parse_epoch_millis(value: Any) -> datetime | None:
    """ClickUp 的时间字段是毫秒时间戳字符串。"""
    if value is None or value == "":
        return None
    try:
        return datetime.fromtimestamp(int(value) / 1000, tz=UTC)
    except (TypeError, ValueError, OverflowError, OSError):
        return None


# ---------------------------------------------------------------------------
# Raw change entries：上游原始变更在摄入时立刻解析成以下封闭变体之一
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class FileEntry:
    id: str
    path: str
    name: str
    modified_at: datetime
    content_hash: str = ""
    size: int = 0


@dataclass(frozen=True, slots=True)
class FolderEntry:
    id: str
    path: str
    name: str


@dataclass(frozen=True, slots=True)
class DeletedEntry:
    path: str
    name: str


@dataclass(frozen=True, slots=True)
class TaskStatus:
    """任务状态：status 为展示名（如 "in review"），type 为分类（open/custom/closed）。"""

    status: str
    type: str


@dataclass(frozen=True, slots=True)
class TaskStatusChange:
    task_id: str
    history_id: str
    before: TaskStatus | None
    after: TaskStatus | None
    occurred_at: datetime


@dataclass(frozen=True, slots=True)
class TaskFieldChange:
    task_id: str
    history_id: str
    field: str
    occurred_at: datetime


RawChangeEntry = Union[FileEntry, FolderEntry, DeletedEntry, TaskStatusChange, TaskFieldChange]


class CandidateKind(str, enum.Enum):
    TASK_COMPLETED = "task_completed"
    FILE_UPLOADED = "file_uploaded"


@dataclass(frozen=True, slots=True)
class NotificationCandidate:
    """
    归一后的通知候选：一次合格的状态迁移对应且仅对应一个候选。

    origin：
    - 文件：完整路径（用于 watched folders 过滤与路由）
    - 任务：所属 space 名称（enrich 之后才可知）
    details：渲染所需的附加字段（size/assignees/project_path 等），不参与去重。
    """

    kind: CandidateKind
    subject_id: str
    subject_name: str
    origin: str
    occurred_at: datetime
    url: str = ""
    details: Mapping[str, Any] = field(default_factory=dict)

    def dedup_key(self) -> tuple[str, str]:
        return (self.subject_id, self.occurred_at.isoformat())


@dataclass(frozen=True, slots=True)
class RouteRule:
    match_prefix: str
    channel: str


@dataclass(frozen=True, slots=True)
class RenderedMessage:
    text: str
    blocks: tuple[Mapping[str, Any], ...] = ()


@dataclass(frozen=True, slots=True)
class DispatchResult:
    candidate: NotificationCandidate
    channel: str
    delivered: bool
    reason: str | None = None

    @classmethod
    def ok(cls, candidate: NotificationCandidate, channel: str) -> DispatchResult:
        return cls(candidate=candidate, channel=channel, delivered=True)

    @classmethod
    def failed(cls, candidate: NotificationCandidate, channel: str, reason: str) -> DispatchResult:
        return cls(candidate=candidate, channel=channel, delivered=False, reason=reason)
