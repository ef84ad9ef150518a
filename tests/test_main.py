from __future__ import annotations

import hashlib
import hmac
import json
from dataclasses import dataclass, field
from typing import Any

import pytest

from cnr.http_utils import HttpResponse
from cnr.main import build_arg_parser, main
from cnr.state.sqlite_store import SqliteStateStore


def _write_config(tmp_path, feeds: dict) -> str:  # noqa: ANN001
    cfg = {
        "state": {"sqlite_path": str(tmp_path / "state.sqlite3")},
        "feeds": feeds,
        "notify": {"slack": {"token_env": "T_SLACK"}},
    }
    path = tmp_path / "config.json"
    path.write_text(json.dumps(cfg), encoding="utf-8")
    return str(path)


CLICKUP = {"clickup": {"token_env": "T_CLICKUP", "team_id": "9001"}}


def test_parser_requires_a_command() -> None:
    with pytest.raises(SystemExit):
        build_arg_parser().parse_args(["--config", "x.json"])

    args = build_arg_parser().parse_args(["--config", "x.json", "status", "Acme", "--post", "acme-chan"])
    assert args.command == "status"
    assert args.client == "Acme"
    assert args.post == "acme-chan"


def test_missing_config_exits_with_config_error_code(tmp_path) -> None:  # noqa: ANN001
    assert main(["--config", str(tmp_path / "nope.json"), "sync"]) == 2


def test_sync_without_feeds_is_a_no_op(tmp_path) -> None:  # noqa: ANN001
    assert main(["--config", _write_config(tmp_path, {}), "sync"]) == 0


def test_sync_of_unconfigured_feed_is_a_config_error(tmp_path, monkeypatch) -> None:  # noqa: ANN001
    monkeypatch.setenv("T_SLACK", "xoxb")
    monkeypatch.setenv("T_CLICKUP", "pk")

    assert main(["--config", _write_config(tmp_path, CLICKUP), "sync", "--feed", "dropbox"]) == 2


def test_missing_credentials_is_a_config_error(tmp_path, monkeypatch) -> None:  # noqa: ANN001
    monkeypatch.delenv("T_SLACK", raising=False)
    monkeypatch.delenv("T_CLICKUP", raising=False)

    assert main(["--config", _write_config(tmp_path, CLICKUP), "sync"]) == 2


def test_enqueue_without_sync_only_queues_the_payload(tmp_path, monkeypatch) -> None:  # noqa: ANN001
    monkeypatch.setenv("T_SLACK", "xoxb")
    monkeypatch.setenv("T_CLICKUP", "pk")
    payload = tmp_path / "payload.json"
    payload.write_text(json.dumps({"event": "taskStatusUpdated", "task_id": "t1", "history_items": []}), encoding="utf-8")

    code = main(["--config", _write_config(tmp_path, CLICKUP), "enqueue-clickup", str(payload), "--no-sync"])

    assert code == 0
    state = SqliteStateStore(str(tmp_path / "state.sqlite3"))
    items = state.read_inbox("clickup:9001:tasks", after_seq=0, limit=10)
    assert [i.payload["task_id"] for i in items] == ["t1"]
    assert state.get_cursor("clickup:9001:tasks") is None


def test_enqueue_then_sync_consumes_payload_without_network(tmp_path, monkeypatch) -> None:  # noqa: ANN001
    monkeypatch.setenv("T_SLACK", "xoxb")
    monkeypatch.setenv("T_CLICKUP", "pk")
    payload = tmp_path / "payload.json"
    # 非状态事件不会产生候选，因此整轮无需访问 ClickUp / Slack。
    payload.write_text(json.dumps({"event": "taskCreated", "task_id": "t1"}), encoding="utf-8")

    code = main(["--config", _write_config(tmp_path, CLICKUP), "enqueue-clickup", str(payload)])

    assert code == 0
    state = SqliteStateStore(str(tmp_path / "state.sqlite3"))
    assert state.get_cursor("clickup:9001:tasks") == "1"


def test_enqueue_rejects_non_object_payload(tmp_path, monkeypatch) -> None:  # noqa: ANN001
    monkeypatch.setenv("T_SLACK", "xoxb")
    monkeypatch.setenv("T_CLICKUP", "pk")
    payload = tmp_path / "payload.json"
    payload.write_text("[1, 2]", encoding="utf-8")

    assert main(["--config", _write_config(tmp_path, CLICKUP), "enqueue-clickup", str(payload), "--no-sync"]) == 2


def test_reset_cursor_needs_no_credentials(tmp_path, monkeypatch) -> None:  # noqa: ANN001
    monkeypatch.delenv("T_SLACK", raising=False)
    monkeypatch.delenv("T_CLICKUP", raising=False)
    config = _write_config(tmp_path, CLICKUP)
    state = SqliteStateStore(str(tmp_path / "state.sqlite3"))
    state.set_cursor("clickup:9001:tasks", "42")
    state.set_cursor("dropbox:files", "AAA")

    assert main(["--config", config, "reset-cursor", "--feed", "clickup"]) == 0

    assert state.get_cursor("clickup:9001:tasks") is None
    assert state.get_cursor("dropbox:files") == "AAA"
    assert main(["--config", config, "reset-cursor", "--feed", "dropbox"]) == 2


def _payload_file(tmp_path, payload: dict) -> tuple[str, bytes]:  # noqa: ANN001
    body = json.dumps(payload).encode("utf-8")
    path = tmp_path / "payload.json"
    path.write_bytes(body)
    return str(path), body


STATUS_PAYLOAD = {"event": "taskStatusUpdated", "task_id": "t1", "history_items": []}


def _queued(tmp_path) -> list[str]:  # noqa: ANN001
    state = SqliteStateStore(str(tmp_path / "state.sqlite3"))
    return [i.payload["task_id"] for i in state.read_inbox("clickup:9001:tasks", after_seq=0, limit=10)]


def test_enqueue_without_sync_needs_no_credentials(tmp_path, monkeypatch) -> None:  # noqa: ANN001
    monkeypatch.delenv("T_SLACK", raising=False)
    monkeypatch.delenv("T_CLICKUP", raising=False)
    monkeypatch.delenv("CLICKUP_WEBHOOK_SECRET", raising=False)
    feeds = {**CLICKUP, "dropbox": {"token_env": "T_DROPBOX"}}
    path, _ = _payload_file(tmp_path, STATUS_PAYLOAD)

    assert main(["--config", _write_config(tmp_path, feeds), "enqueue-clickup", path, "--no-sync"]) == 0
    assert _queued(tmp_path) == ["t1"]


def test_enqueue_accepts_a_valid_signature(tmp_path, monkeypatch) -> None:  # noqa: ANN001
    monkeypatch.setenv("CLICKUP_WEBHOOK_SECRET", "s3cret")
    path, body = _payload_file(tmp_path, STATUS_PAYLOAD)
    signature = hmac.new(b"s3cret", body, hashlib.sha256).hexdigest()

    code = main(
        ["--config", _write_config(tmp_path, CLICKUP), "enqueue-clickup", path, "--no-sync", "--signature", signature]
    )

    assert code == 0
    assert _queued(tmp_path) == ["t1"]


@pytest.mark.parametrize("extra", [["--signature", "00" * 32], []])
def test_enqueue_rejects_bad_or_missing_signature(tmp_path, monkeypatch, extra: list[str]) -> None:  # noqa: ANN001
    monkeypatch.setenv("CLICKUP_WEBHOOK_SECRET", "s3cret")
    path, _ = _payload_file(tmp_path, STATUS_PAYLOAD)

    code = main(["--config", _write_config(tmp_path, CLICKUP), "enqueue-clickup", path, "--no-sync", *extra])

    assert code == 1
    assert _queued(tmp_path) == []


@dataclass
class FakeHttpClient:
    """替换 cnr.main.HttpClient：GET 按 URL 子串匹配，POST 记录请求体并回 ok。"""

    routes: dict[str, Any]
    posted: list[dict[str, Any]] = field(default_factory=list)

    def __call__(self, **kwargs: Any) -> FakeHttpClient:
        return self

    def get(self, url: str, *, headers=None) -> HttpResponse:  # noqa: ANN001
        for fragment, payload in self.routes.items():
            if fragment in url:
                return HttpResponse(status=200, url=url, headers={}, body=json.dumps(payload).encode("utf-8"))
        raise KeyError(url)

    def post_json(self, url: str, payload: Any, *, headers=None) -> HttpResponse:  # noqa: ANN001
        self.posted.append(payload)
        return HttpResponse(status=200, url=url, headers={}, body=b'{"ok": true}')


def _clickup_http() -> FakeHttpClient:
    return FakeHttpClient(
        routes={
            "/team/9001/space": {"spaces": [{"id": "s1", "name": "Acme"}, {"id": "s2", "name": "Beta"}]},
            "/space/s1/list": {"lists": []},
            "/space/s1/folder": {"folders": []},
            "/space/s2/list": {"lists": [{"id": "l7", "name": "Website"}]},
            "/list/l7/task": {
                "tasks": [
                    {"name": "Hero banner", "status": {"status": "in progress", "type": "custom"}},
                    {"name": "Launch", "status": {"status": "done", "type": "closed"}},
                ],
                "last_page": True,
            },
        }
    )


def test_tasks_prints_and_posts_the_breakdown(tmp_path, monkeypatch, capsys) -> None:  # noqa: ANN001
    monkeypatch.setenv("T_SLACK", "xoxb")
    monkeypatch.setenv("T_CLICKUP", "pk")
    http = _clickup_http()
    monkeypatch.setattr("cnr.main.HttpClient", http)

    code = main(["--config", _write_config(tmp_path, CLICKUP), "tasks", "website", "--post", "acme-chan"])

    assert code == 0
    out = capsys.readouterr().out
    assert "Task breakdown: Website" in out
    assert "• ~Launch~" in out
    assert len(http.posted) == 1
    assert http.posted[0]["channel"] == "acme-chan"
    assert http.posted[0]["text"] == "📋 Task breakdown for Website"


def test_tasks_for_unknown_project(tmp_path, monkeypatch, capsys) -> None:  # noqa: ANN001
    monkeypatch.setenv("T_CLICKUP", "pk")
    http = _clickup_http()
    http.routes["/space/s2/folder"] = {"folders": []}
    monkeypatch.setattr("cnr.main.HttpClient", http)

    code = main(["--config", _write_config(tmp_path, CLICKUP), "tasks", "Nope"])

    assert code == 1
    assert 'Project "Nope" not found.' in capsys.readouterr().out
    assert http.posted == []
