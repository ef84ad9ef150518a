from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable

from ..models import (
    CandidateKind,
    FileEntry,
    NotificationCandidate,
    RawChangeEntry,
    TaskStatus,
    TaskStatusChange,
)


@dataclass(slots=True)
class FilterState:
    """
    一次同步运行内跨页共享的过滤状态。

    上游可能在相邻页里重复报告同一逻辑变更，seen 保证同一 (subject_id, occurred_at)
    在整轮中只产出一个候选。
    """

    seen: set[tuple[str, str]] = field(default_factory=set)


def in_watched_prefixes(origin: str, prefixes: Iterable[str]) -> bool:
    normalized = origin.lower()
    return any(normalized.startswith(p.lower()) for p in prefixes)


@dataclass(frozen=True, slots=True)
class EventFilter:
    """
    原始变更 -> 通知候选。

    - FolderEntry / DeletedEntry / TaskFieldChange 直接丢弃
    - TaskStatusChange 仅在“非终态 -> 终态”时产出（before 缺失视为非终态）
    - watched_prefixes 非空时，origin 不以任一前缀开头（大小写不敏感）的候选被丢弃
    - 按 (subject_id, occurred_at) 去重
    """

    watched_prefixes: tuple[str, ...] = ()
    terminal_types: tuple[str, ...] = ("closed",)

    def is_terminal(self, status: TaskStatus | None) -> bool:
        if status is None:
            return False
        return status.type.strip().lower() in {t.strip().lower() for t in self.terminal_types}

    def classify(self, entries: Iterable[RawChangeEntry], state: FilterState | None = None) -> list[NotificationCandidate]:
        if state is None:
            state = FilterState()

        candidates: list[NotificationCandidate] = []
        for entry in entries:
            candidate = self._to_candidate(entry)
            if candidate is None:
                continue
            if self.watched_prefixes and not in_watched_prefixes(candidate.origin, self.watched_prefixes):
                continue
            key = candidate.dedup_key()
            if key in state.seen:
                continue
            state.seen.add(key)
            candidates.append(candidate)
        return candidates

    def _to_candidate(self, entry: RawChangeEntry) -> NotificationCandidate | None:
        if isinstance(entry, FileEntry):
            folder = entry.path.rsplit("/", 1)[0] or "/"
            return NotificationCandidate(
                kind=CandidateKind.FILE_UPLOADED,
                subject_id=entry.id,
                subject_name=entry.name,
                origin=entry.path,
                occurred_at=entry.modified_at,
                details={"folder": folder, "size": entry.size, "content_hash": entry.content_hash},
            )
        if isinstance(entry, TaskStatusChange):
            if not self.is_terminal(entry.after) or self.is_terminal(entry.before):
                return None
            return NotificationCandidate(
                kind=CandidateKind.TASK_COMPLETED,
                subject_id=entry.task_id,
                subject_name=entry.task_id,
                origin="",
                occurred_at=entry.occurred_at,
                details={"status": entry.after.status if entry.after else ""},
            )
        return None
