from __future__ import annotations

from typing import Any, Callable, Iterable, Mapping

from ..models import CandidateKind, NotificationCandidate, RenderedMessage
from ..summary import ProjectSummary, TaskBreakdown, group_tasks


def format_file_size(size: int) -> str:
    if size <= 0:
        return "0 Bytes"
    units = ("Bytes", "KB", "MB", "GB")
    value = float(size)
    i = 0
    while value >= 1024 and i < len(units) - 1:
        value /= 1024
        i += 1
    return f"{round(value, 2):g} {units[i]}"


def progress_bar(percent: int) -> str:
    filled = max(0, min(10, round(percent / 10)))
    return "`" + "█" * filled + "░" * (10 - filled) + "`"


def _section(text: str) -> Mapping[str, Any]:
    return {"type": "section", "text": {"type": "mrkdwn", "text": text}}


def _header(text: str) -> Mapping[str, Any]:
    return {"type": "header", "text": {"type": "plain_text", "text": text, "emoji": True}}


def _fields(*texts: str) -> Mapping[str, Any]:
    return {"type": "section", "fields": [{"type": "mrkdwn", "text": t} for t in texts]}


def _link(url: str, label: str) -> str:
    return f"<{url}|{label}>" if url else label


def _context_time(prefix: str, candidate: NotificationCandidate) -> Mapping[str, Any]:
    ts = int(candidate.occurred_at.timestamp())
    iso = candidate.occurred_at.isoformat()
    return {
        "type": "context",
        "elements": [{"type": "mrkdwn", "text": f"{prefix} <!date^{ts}^{{date_short_pretty}} at {{time}}|{iso}>"}],
    }


def render_candidate(candidate: NotificationCandidate) -> RenderedMessage:
    """
    默认渲染：Slack Block Kit。

    text 字段同时作为推送摘要，blocks 负责富文本展示。
    """
    details = candidate.details
    if candidate.kind is CandidateKind.TASK_COMPLETED:
        assignees = ", ".join(details.get("assignees") or ()) or "Unassigned"
        project = details.get("project_path") or candidate.origin or "-"
        blocks = (
            _header("✅ Task Completed"),
            _section(f"*{_link(candidate.url, candidate.subject_name)}*"),
            _fields(f"*Project:*\n{project}", f"*Assignee:*\n{assignees}"),
            _context_time("Completed at", candidate),
            {"type": "divider"},
        )
        return RenderedMessage(text=f"✅ Task completed: {candidate.subject_name}", blocks=blocks)

    folder = details.get("folder") or "/"
    size = format_file_size(int(details.get("size") or 0))
    blocks = (
        _header("📁 New File Uploaded"),
        _section(f"*{_link(candidate.url, candidate.subject_name)}*"),
        _fields(f"*Folder:*\n{folder}", f"*Size:*\n{size}"),
        _context_time("Uploaded at", candidate),
        {"type": "divider"},
    )
    return RenderedMessage(text=f"📁 New file uploaded: {candidate.subject_name}", blocks=blocks)


def render_project_summary(summary: ProjectSummary) -> RenderedMessage:
    percent = summary.completion_percent
    blocks: list[Mapping[str, Any]] = [
        _header(f"📊 {summary.client_name} - Project Status"),
        _section(f"*Overall Progress:* {percent}%\n{progress_bar(percent)}"),
        _fields(
            f"*Total Tasks:*\n{summary.total_tasks}",
            f"*Completed:*\n{summary.completed_tasks}",
            f"*In Progress:*\n{summary.in_progress_tasks}",
            f"*Remaining:*\n{summary.remaining_tasks}",
        ),
        {"type": "divider"},
    ]
    for project in summary.projects:
        project_percent = round(project.completed_count * 100 / project.task_count) if project.task_count else 0
        blocks.append(
            _section(f"*{project.name}*\n{project.completed_count}/{project.task_count} tasks ({project_percent}%)")
        )
    return RenderedMessage(text=f"📊 Project status for {summary.client_name}", blocks=tuple(blocks))


def format_project_summary_text(summary: ProjectSummary) -> str:
    """终端输出用的纯文本版本。"""
    lines = [
        f"Project status: {summary.client_name}",
        f"progress: {summary.completion_percent}% {progress_bar(summary.completion_percent).strip('`')}",
        f"total: {summary.total_tasks}",
        f"completed: {summary.completed_tasks}",
        f"in_progress: {summary.in_progress_tasks}",
        f"remaining: {summary.remaining_tasks}",
    ]
    if summary.projects:
        lines.append("")
        for p in summary.projects:
            lines.append(f"- {p.name}: {p.completed_count}/{p.task_count}")
    return "\n".join(lines)


TASK_LIST_LIMITS = {"in_progress": 10, "pending": 10, "completed": 5}


def _assignee_names(task: Mapping[str, Any]) -> str:
    names = [
        str(a.get("username") or "")
        for a in task.get("assignees") or []
        if isinstance(a, dict) and a.get("username")
    ]
    return ", ".join(names) or "Unassigned"


def _task_lines(tasks: tuple[Mapping[str, Any], ...], limit: int, line: Callable[[Mapping[str, Any]], str]) -> list[str]:
    lines = [line(t) for t in tasks[:limit]]
    if len(tasks) > limit:
        lines.append(f"_...and {len(tasks) - limit} more_")
    return lines


def _in_progress_line(task: Mapping[str, Any]) -> str:
    name = str(task.get("name") or "-")
    return f"• {_link(str(task.get('url') or ''), name)} - {_assignee_names(task)}"


def _pending_line(task: Mapping[str, Any]) -> str:
    return f"• {_link(str(task.get('url') or ''), str(task.get('name') or '-'))}"


def _completed_line(task: Mapping[str, Any]) -> str:
    return f"• ~{task.get('name') or '-'}~"


def render_task_list(project_name: str, tasks: Iterable[Mapping[str, Any]]) -> RenderedMessage:
    """
    单个项目（list）的任务明细：进行中（带负责人）/ 待办 / 已完成（删除线）。

    每组最多展示 10 / 10 / 5 条，超出部分以 "...and N more" 汇总；空组不出现。
    """
    breakdown = group_tasks(project_name, tasks)
    blocks: list[Mapping[str, Any]] = [
        _header(f"📋 {project_name} - Task Breakdown"),
        _section(f"*{breakdown.total_tasks} total tasks*"),
        {"type": "divider"},
    ]
    for title, lines in _task_sections(breakdown):
        blocks.append(_section(f"*{title}*\n" + "\n".join(lines)))
    return RenderedMessage(text=f"📋 Task breakdown for {project_name}", blocks=tuple(blocks))


def _task_sections(breakdown: TaskBreakdown) -> list[tuple[str, list[str]]]:
    sections: list[tuple[str, list[str]]] = []
    if breakdown.in_progress:
        lines = _task_lines(breakdown.in_progress, TASK_LIST_LIMITS["in_progress"], _in_progress_line)
        sections.append((f"🔄 In Progress ({len(breakdown.in_progress)})", lines))
    if breakdown.pending:
        lines = _task_lines(breakdown.pending, TASK_LIST_LIMITS["pending"], _pending_line)
        sections.append((f"⏳ Pending ({len(breakdown.pending)})", lines))
    if breakdown.completed:
        lines = _task_lines(breakdown.completed, TASK_LIST_LIMITS["completed"], _completed_line)
        sections.append((f"✅ Completed ({len(breakdown.completed)})", lines))
    return sections


def format_task_list_text(project_name: str, tasks: Iterable[Mapping[str, Any]]) -> str:
    breakdown = group_tasks(project_name, tasks)
    lines = [f"Task breakdown: {project_name}", f"total: {breakdown.total_tasks}"]
    for title, section_lines in _task_sections(breakdown):
        lines.append("")
        lines.append(title)
        lines.extend(section_lines)
    return "\n".join(lines)
