from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol

from ..models import NotificationCandidate, RawChangeEntry


@dataclass(frozen=True, slots=True)
class ChangePage:
    """
    一页变更。

    调用方必须在 has_more 为真时继续用 next_cursor 拉取，整组页都拉完才算完成。
    """

    entries: list[RawChangeEntry]
    next_cursor: str
    has_more: bool


class ChangeFeed(Protocol):
    """
    上游变更源接口：

    - key：cursor 存储的命名空间，不同 feed 互不干扰
    - fetch_page：从 cursor 处继续拉取一页；cursor 为 None 表示首次全量
    - enrich：派发前补全候选的实体详情（任务名、所属 space、分享链接等）

    上游错误按 errors 模块分类抛出（AuthError / TransientFetchError / FetchError）。
    """

    def key(self) -> str: ...

    def fetch_page(self, cursor: str | None) -> ChangePage: ...

    def enrich(self, candidate: NotificationCandidate) -> NotificationCandidate: ...
