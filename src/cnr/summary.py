from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable, Mapping


IN_PROGRESS_MARKERS = ("progress", "doing", "working")


@dataclass(frozen=True, slots=True)
class ProjectBreakdown:
    name: str
    task_count: int
    completed_count: int


@dataclass(frozen=True, slots=True)
class ProjectSummary:
    client_name: str
    total_tasks: int
    completed_tasks: int
    in_progress_tasks: int
    projects: tuple[ProjectBreakdown, ...]

    @property
    def remaining_tasks(self) -> int:
        return max(0, self.total_tasks - self.completed_tasks - self.in_progress_tasks)

    @property
    def completion_percent(self) -> int:
        if self.total_tasks <= 0:
            return 0
        return round(self.completed_tasks * 100 / self.total_tasks)


def _status(task: Mapping[str, Any]) -> tuple[str, str]:
    status = task.get("status")
    if not isinstance(status, dict):
        return "", ""
    return str(status.get("status") or "").lower(), str(status.get("type") or "").lower()


def is_completed(task: Mapping[str, Any]) -> bool:
    return _status(task)[1] == "closed"


def is_in_progress(task: Mapping[str, Any]) -> bool:
    name = _status(task)[0]
    return any(marker in name for marker in IN_PROGRESS_MARKERS)


def summarize_tasks(client_name: str, tasks: Iterable[Mapping[str, Any]]) -> ProjectSummary:
    """
    客户（space）维度的任务聚合：总数 / 已完成 / 进行中，以及按 list（项目）分组的完成度。

    项目顺序与任务首次出现的顺序一致。
    """
    tasks = list(tasks)
    grouped: dict[str, tuple[str, list[Mapping[str, Any]]]] = {}
    for task in tasks:
        lst = task.get("list") if isinstance(task.get("list"), dict) else {}
        list_id = str(lst.get("id") or "")
        if list_id not in grouped:
            grouped[list_id] = (str(lst.get("name") or "-"), [])
        grouped[list_id][1].append(task)

    projects = tuple(
        ProjectBreakdown(
            name=name,
            task_count=len(items),
            completed_count=sum(1 for t in items if is_completed(t)),
        )
        for name, items in grouped.values()
    )
    return ProjectSummary(
        client_name=client_name,
        total_tasks=len(tasks),
        completed_tasks=sum(1 for t in tasks if is_completed(t)),
        in_progress_tasks=sum(1 for t in tasks if is_in_progress(t)),
        projects=projects,
    )


@dataclass(frozen=True, slots=True)
class TaskBreakdown:
    project_name: str
    in_progress: tuple[Mapping[str, Any], ...]
    pending: tuple[Mapping[str, Any], ...]
    completed: tuple[Mapping[str, Any], ...]

    @property
    def total_tasks(self) -> int:
        return len(self.in_progress) + len(self.pending) + len(self.completed)


def group_tasks(project_name: str, tasks: Iterable[Mapping[str, Any]]) -> TaskBreakdown:
    """按状态把单个项目（list）的任务分成三组，互斥：已完成优先，其次进行中，其余为待办。"""
    in_progress: list[Mapping[str, Any]] = []
    pending: list[Mapping[str, Any]] = []
    completed: list[Mapping[str, Any]] = []
    for task in tasks:
        if is_completed(task):
            completed.append(task)
        elif is_in_progress(task):
            in_progress.append(task)
        else:
            pending.append(task)
    return TaskBreakdown(
        project_name=project_name,
        in_progress=tuple(in_progress),
        pending=tuple(pending),
        completed=tuple(completed),
    )
