from __future__ import annotations

from datetime import UTC, datetime, timedelta

from cnr.models import (
    CandidateKind,
    DeletedEntry,
    FileEntry,
    FolderEntry,
    TaskFieldChange,
    TaskStatus,
    TaskStatusChange,
)
from cnr.rules.event_filter import EventFilter, FilterState, in_watched_prefixes


T0 = datetime(2026, 3, 1, 9, 0, tzinfo=UTC)

OPEN = TaskStatus(status="to do", type="open")
IN_PROGRESS = TaskStatus(status="in progress", type="custom")
CLOSED = TaskStatus(status="complete", type="closed")


def _status_change(before: TaskStatus | None, after: TaskStatus | None, *, task_id: str = "t1") -> TaskStatusChange:
    return TaskStatusChange(task_id=task_id, history_id="h1", before=before, after=after, occurred_at=T0)


def _file(path: str, *, file_id: str = "id:1", minutes: int = 0) -> FileEntry:
    return FileEntry(
        id=file_id,
        path=path,
        name=path.rsplit("/", 1)[-1],
        modified_at=T0 + timedelta(minutes=minutes),
        content_hash="h",
        size=2048,
    )


def test_open_to_closed_yields_exactly_one_completion() -> None:
    candidates = EventFilter().classify([_status_change(OPEN, CLOSED)])

    assert len(candidates) == 1
    c = candidates[0]
    assert c.kind is CandidateKind.TASK_COMPLETED
    assert c.subject_id == "t1"
    assert c.occurred_at == T0
    assert c.details["status"] == "complete"


def test_closed_to_closed_and_non_terminal_moves_yield_nothing() -> None:
    f = EventFilter()

    assert f.classify([_status_change(CLOSED, CLOSED)]) == []
    assert f.classify([_status_change(OPEN, IN_PROGRESS)]) == []
    assert f.classify([_status_change(CLOSED, OPEN)]) == []
    assert f.classify([_status_change(OPEN, None)]) == []


def test_missing_before_status_counts_as_non_terminal() -> None:
    assert len(EventFilter().classify([_status_change(None, CLOSED)])) == 1


def test_terminal_types_are_configurable_and_case_insensitive() -> None:
    f = EventFilter(terminal_types=("Done",))

    assert f.is_terminal(TaskStatus(status="shipped", type="done"))
    assert not f.is_terminal(CLOSED)
    assert len(f.classify([_status_change(OPEN, TaskStatus(status="shipped", type="DONE"))])) == 1


def test_folders_deletions_and_field_changes_are_dropped() -> None:
    entries = [
        FolderEntry(id="id:f", path="/Clients/Acme/new", name="new"),
        DeletedEntry(path="/Clients/Acme/old.pdf", name="old.pdf"),
        TaskFieldChange(task_id="t1", history_id="h2", field="assignee_add", occurred_at=T0),
    ]

    assert EventFilter().classify(entries) == []


def test_file_entry_becomes_upload_candidate() -> None:
    candidates = EventFilter().classify([_file("/Clients/Acme/brief.pdf")])

    assert len(candidates) == 1
    c = candidates[0]
    assert c.kind is CandidateKind.FILE_UPLOADED
    assert c.subject_name == "brief.pdf"
    assert c.origin == "/Clients/Acme/brief.pdf"
    assert c.details["folder"] == "/Clients/Acme"
    assert c.details["size"] == 2048


def test_watched_prefixes_filter_case_insensitively() -> None:
    f = EventFilter(watched_prefixes=("/Clients/LST",))
    entries = [
        _file("/clients/lst/a.pdf", file_id="id:a"),
        _file("/Clients/Other/b.pdf", file_id="id:b"),
    ]

    candidates = f.classify(entries)

    assert [c.subject_name for c in candidates] == ["a.pdf"]


def test_empty_watched_prefixes_keep_everything() -> None:
    entries = [_file("/a/x.pdf", file_id="id:x"), _file("/b/y.pdf", file_id="id:y")]

    assert len(EventFilter().classify(entries)) == 2


def test_same_change_repeated_across_pages_is_emitted_once() -> None:
    f = EventFilter()
    state = FilterState()
    entry = _file("/Clients/Acme/brief.pdf")

    page1 = f.classify([entry, entry], state)
    page2 = f.classify([entry], state)

    assert len(page1) == 1
    assert page2 == []


def test_same_file_modified_again_is_a_new_candidate() -> None:
    f = EventFilter()
    state = FilterState()

    first = f.classify([_file("/a/x.pdf", minutes=0)], state)
    second = f.classify([_file("/a/x.pdf", minutes=5)], state)

    assert len(first) == 1
    assert len(second) == 1


def test_in_watched_prefixes() -> None:
    assert in_watched_prefixes("/Clients/ACME/x", ["/clients/acme"])
    assert not in_watched_prefixes("/Other/x", ["/clients"])
    assert not in_watched_prefixes("/x", [])
