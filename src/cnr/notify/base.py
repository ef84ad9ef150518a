from __future__ import annotations

from typing import Protocol

from ..models import RenderedMessage


class Notifier(Protocol):
    """
    消息出口：向指定 channel 发送一条已渲染的消息。

    约定：
    - send 失败抛异常（推荐 DispatchError），由 dispatcher 统一捕获并记录
    - 每次调用只发送一条消息，不在内部重试
    """

    def send(self, channel: str, message: RenderedMessage) -> None: ...
