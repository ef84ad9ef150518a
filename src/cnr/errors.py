"""
错误分类（taxonomy）。

所有异常都继承自 RelayError，runner 只需要捕获这一个基类即可区分
“致命（中止本轮，不推进 cursor）”与“单条失败（记录后继续）”。
"""

from __future__ import annotations


class RelayError(Exception):
    """Base exception for all relay failures."""


class ConfigError(RelayError):
    """缺少凭据或映射配置非法：本轮直接中止，cursor 不变。"""


class AuthError(RelayError):
    """凭据无效或过期：需要人工处理，本轮中止。"""

    def __init__(self, provider: str, detail: str) -> None:
        self.provider = provider
        self.detail = detail
        super().__init__(f"{provider} rejected credentials: {detail}")


class FetchError(RelayError):
    """上游变更接口返回了无法继续处理的结果（非瞬时）。"""


class TransientFetchError(FetchError):
    """网络错误 / 限流 / 5xx：本轮中止，下次触发时从原 cursor 重试即可。"""


class CursorResetRequired(FetchError):
    """上游宣告 cursor 已失效，只能显式 reset 后重新全量同步。"""

    def __init__(self, feed_key: str) -> None:
        self.feed_key = feed_key
        super().__init__(f"upstream invalidated the cursor of {feed_key}; run reset-cursor to resync")


class CursorStoreError(RelayError):
    """cursor 读写失败。"""


class DispatchError(RelayError):
    """单条通知发送失败：记录后继续处理后续候选。"""

    def __init__(self, channel: str, reason: str) -> None:
        self.channel = channel
        self.reason = reason
        super().__init__(f"dispatch to {channel} failed: {reason}")
