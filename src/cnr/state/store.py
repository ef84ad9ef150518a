from __future__ import annotations

from typing import Protocol


class CursorStore(Protocol):
    """
    单个上游 feed 的 cursor 存取接口：

    - load：返回最近一次持久化成功的 cursor；从未同步过返回 None
    - save：原子替换；并发的 load 不会读到半写入的值
    - reset：显式回退（删除 cursor），下次同步将全量重来

    失败一律抛 CursorStoreError，不允许静默吞掉。
    """

    def load(self) -> str | None: ...

    def save(self, cursor: str) -> None: ...

    def reset(self) -> None: ...


class DispatchFailureLog(Protocol):
    """通知失败留痕（不做重试队列，只保证可追踪）。"""

    def record_dispatch_failure(self, *, feed_key: str, subject_id: str, channel: str, error: str) -> None: ...
