from __future__ import annotations

import json
import ssl
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass
from typing import Any, Mapping

from .errors import AuthError, FetchError, TransientFetchError


TRANSIENT_STATUS_CODES = (429, 500, 502, 503, 504)


@dataclass(frozen=True, slots=True)
class HttpResponse:
    status: int
    url: str
    headers: Mapping[str, str]
    body: bytes

    def text(self, encoding: str = "utf-8") -> str:
        return self.body.decode(encoding, errors="replace")

    def json(self) -> Any:
        return json.loads(self.body.decode("utf-8"))


class HttpClient:
    """
    轻量 HTTP 客户端（仅依赖标准库），供 Sources 与 Notifier 共用。

    策略：
    - 统一超时、User-Agent、SSL context
    - 不做任何重试：一次同步运行内失败即失败，重试依靠下一次触发
    - HTTP 错误原样抛出 urllib.error.HTTPError，由调用方按语义归类
    """

    def __init__(
        self,
        *,
        timeout_seconds: float = 20.0,
        user_agent: str = "change-notify-relay/0",
        verify_ssl: bool = True,
    ) -> None:
        self._timeout_seconds = timeout_seconds
        self._user_agent = user_agent
        self._ssl_context = ssl.create_default_context() if verify_ssl else ssl._create_unverified_context()

    @property
    def timeout_seconds(self) -> float:
        return self._timeout_seconds

    def get(self, url: str, *, headers: Mapping[str, str] | None = None) -> HttpResponse:
        return self._send(url, method="GET", data=None, headers=headers)

    def post_json(
        self,
        url: str,
        payload: Any,
        *,
        headers: Mapping[str, str] | None = None,
    ) -> HttpResponse:
        data = json.dumps(payload, ensure_ascii=False).encode("utf-8")
        request_headers = {"Content-Type": "application/json; charset=utf-8"}
        if headers:
            request_headers.update(dict(headers))
        return self._send(url, method="POST", data=data, headers=request_headers)

    def _send(
        self,
        url: str,
        *,
        method: str,
        data: bytes | None,
        headers: Mapping[str, str] | None,
    ) -> HttpResponse:
        request_headers = {"User-Agent": self._user_agent}
        if headers:
            request_headers.update(dict(headers))

        req = urllib.request.Request(url=url, data=data, headers=request_headers, method=method)
        with urllib.request.urlopen(req, timeout=self._timeout_seconds, context=self._ssl_context) as resp:  # noqa: S310
            resp_headers = {k: v for k, v in resp.headers.items()}
            return HttpResponse(
                status=getattr(resp, "status", 200),
                url=resp.geturl(),
                headers=resp_headers,
                body=resp.read(),
            )


def _error_body(error: urllib.error.HTTPError) -> str:
    try:
        body = error.read()
    except Exception:  # noqa: BLE001
        return ""
    if not body:
        return ""
    return body[:300].decode("utf-8", errors="replace")


def classify_upstream_error(error: Exception, *, provider: str) -> Exception:
    """
    将一次上游调用抛出的异常归类到错误分类中。

    - 401/403 -> AuthError
    - 429/5xx、网络错误、超时 -> TransientFetchError
    - 其余 HTTP 错误 -> FetchError
    - 已经归类过的异常原样返回
    """
    if isinstance(error, (AuthError, FetchError)):
        return error
    if isinstance(error, urllib.error.HTTPError):
        body = _error_body(error)
        if error.code in (401, 403):
            return AuthError(provider, f"status={error.code} body={body!r}")
        if error.code in TRANSIENT_STATUS_CODES:
            return TransientFetchError(f"{provider} API unavailable: status={error.code} body={body!r}")
        return FetchError(f"{provider} API error: status={error.code} body={body!r}")
    if isinstance(error, (urllib.error.URLError, TimeoutError, ConnectionError)):
        return TransientFetchError(f"{provider} API unreachable: {type(error).__name__}: {error}")
    if isinstance(error, (ValueError, KeyError, TypeError)):
        return FetchError(f"{provider} API returned malformed data: {type(error).__name__}: {error}")
    return error


def with_query_params(url: str, params: Mapping[str, str | None]) -> str:
    parsed = urllib.parse.urlparse(url)
    q = dict(urllib.parse.parse_qsl(parsed.query, keep_blank_values=True))
    q.update({k: v for k, v in params.items() if v is not None})
    new_query = urllib.parse.urlencode(q)
    return urllib.parse.urlunparse(parsed._replace(query=new_query))
