from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from ..errors import DispatchError
from ..http_utils import HttpClient
from ..models import RenderedMessage
from .base import Notifier


SLACK_API_BASE = "https://slack.com/api"


@dataclass(slots=True)
class SlackNotifier(Notifier):
    """
    Slack Bot 通知（chat.postMessage）。

    说明：
    - channel 可以是频道名（可带 #）或频道 ID，bot 需要已加入该频道
    - Slack 即使失败也常返回 HTTP 200，需检查响应体中的 "ok"
    - text 作为通知摘要与不支持 blocks 时的降级内容，总是发送
    """

    token: str
    http: HttpClient
    api_base: str = SLACK_API_BASE

    def send(self, channel: str, message: RenderedMessage) -> None:
        payload = self._build_payload(channel, message)
        try:
            resp = self.http.post_json(
                f"{self.api_base}/chat.postMessage",
                payload,
                headers={"Authorization": f"Bearer {self.token}"},
            )
        except Exception as e:  # noqa: BLE001
            raise DispatchError(channel, f"{type(e).__name__}: {e}") from e

        try:
            data = resp.json()
        except Exception as e:  # noqa: BLE001
            raise DispatchError(channel, f"invalid JSON response: {resp.body[:200]!r}") from e

        if not isinstance(data, dict) or data.get("ok") is not True:
            error = data.get("error") if isinstance(data, dict) else data
            raise DispatchError(channel, f"slack returned error: {error!r}")

    def _build_payload(self, channel: str, message: RenderedMessage) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "channel": channel,
            "text": message.text or "-",
            "unfurl_links": False,
        }
        if message.blocks:
            payload["blocks"] = [dict(b) for b in message.blocks]
        return payload
