from __future__ import annotations

import dataclasses
import logging
import urllib.error
from dataclasses import dataclass
from typing import Any, Mapping

from ..errors import AuthError, CursorResetRequired, FetchError
from ..http_utils import HttpClient, classify_upstream_error
from ..models import (
    DeletedEntry,
    FileEntry,
    FolderEntry,
    NotificationCandidate,
    RawChangeEntry,
    parse_rfc3339_datetime,
)
from .base import ChangePage


logger = logging.getLogger(__name__)

DROPBOX_API_BASE = "https://api.dropboxapi.com/2"
DROPBOX_FEED_KEY = "dropbox:files"


def parse_entry(it: Mapping[str, Any]) -> RawChangeEntry | None:
    """
    将 list_folder 返回的一条 metadata 按 ".tag" 解析为封闭变体。

    未知 tag 返回 None（调用方跳过）；字段缺失视为上游数据损坏。
    """
    tag = it.get(".tag")
    path = str(it.get("path_display") or it.get("path_lower") or "")
    name = str(it.get("name") or "")
    if tag == "file":
        modified = it.get("server_modified")
        if not isinstance(modified, str) or not it.get("id"):
            raise FetchError(f"Dropbox file entry missing id/server_modified: {path!r}")
        return FileEntry(
            id=str(it["id"]),
            path=path,
            name=name,
            modified_at=parse_rfc3339_datetime(modified),
            content_hash=str(it.get("content_hash") or ""),
            size=int(it.get("size") or 0),
        )
    if tag == "folder":
        return FolderEntry(id=str(it.get("id") or ""), path=path, name=name)
    if tag == "deleted":
        return DeletedEntry(path=path, name=name)
    return None


def _is_reset_error(error: urllib.error.HTTPError) -> bool:
    if error.code != 409:
        return False
    try:
        body = error.read().decode("utf-8", errors="replace")
    except Exception:  # noqa: BLE001
        return False
    return "reset" in body


@dataclass(slots=True)
class DropboxChangeFeed:
    """
    Dropbox 文件变更 feed。

    - 无 cursor：files/list_folder 对根目录递归全量列出（首次 bootstrap）
    - 有 cursor：files/list_folder/continue 从该位置继续
    cursor 语义：Dropbox 返回的不透明 cursor 字符串，原样保存。
    """

    http: HttpClient
    token: str
    root_path: str = ""
    api_base: str = DROPBOX_API_BASE

    def key(self) -> str:
        return DROPBOX_FEED_KEY

    def _headers(self) -> Mapping[str, str]:
        return {"Authorization": f"Bearer {self.token}"}

    def _call(self, endpoint: str, payload: Mapping[str, Any]) -> Any:
        resp = self.http.post_json(f"{self.api_base}{endpoint}", payload, headers=self._headers())
        return resp.json()

    def fetch_page(self, cursor: str | None) -> ChangePage:
        try:
            if cursor:
                data = self._call("/files/list_folder/continue", {"cursor": cursor})
            else:
                data = self._call(
                    "/files/list_folder",
                    {"path": self.root_path, "recursive": True, "include_deleted": False},
                )
        except urllib.error.HTTPError as e:
            if cursor and _is_reset_error(e):
                raise CursorResetRequired(self.key()) from e
            raise classify_upstream_error(e, provider="dropbox") from e
        except Exception as e:  # noqa: BLE001
            raise classify_upstream_error(e, provider="dropbox") from e

        if not isinstance(data, dict) or not isinstance(data.get("cursor"), str):
            raise FetchError(f"Dropbox list_folder returned unexpected body: {type(data)}")

        entries: list[RawChangeEntry] = []
        for it in data.get("entries") or []:
            if not isinstance(it, dict):
                continue
            entry = parse_entry(it)
            if entry is None:
                logger.warning("dropbox entry skipped: tag=%r path=%r", it.get(".tag"), it.get("path_display"))
                continue
            entries.append(entry)

        return ChangePage(entries=entries, next_cursor=data["cursor"], has_more=bool(data.get("has_more")))

    def enrich(self, candidate: NotificationCandidate) -> NotificationCandidate:
        """文件候选补全分享链接；拿不到链接时退回网页端路径（鉴权失败除外）。"""
        try:
            url = self.shared_link(candidate.origin)
        except AuthError:
            raise
        except Exception as e:  # noqa: BLE001
            logger.warning("dropbox shared link failed, using web path: path=%s error=%s", candidate.origin, e)
            url = f"https://www.dropbox.com/home{candidate.origin}"
        return dataclasses.replace(candidate, url=url)

    def shared_link(self, path: str) -> str:
        try:
            existing = self._list_shared_links(path)
            if existing:
                return existing
            try:
                data = self._call(
                    "/sharing/create_shared_link_with_settings",
                    {"path": path, "settings": {"requested_visibility": "public"}},
                )
            except urllib.error.HTTPError as e:
                # 并发创建时 Dropbox 返回 409 shared_link_already_exists，再查一次即可。
                if e.code == 409:
                    existing = self._list_shared_links(path)
                    if existing:
                        return existing
                raise
        except Exception as e:  # noqa: BLE001
            raise classify_upstream_error(e, provider="dropbox") from e

        url = data.get("url") if isinstance(data, dict) else None
        if not isinstance(url, str) or not url:
            raise FetchError(f"Dropbox did not return a shared link for {path!r}")
        return url

    def _list_shared_links(self, path: str) -> str | None:
        data = self._call("/sharing/list_shared_links", {"path": path, "direct_only": True})
        links = data.get("links") if isinstance(data, dict) else None
        if isinstance(links, list):
            for link in links:
                if isinstance(link, dict) and isinstance(link.get("url"), str):
                    return link["url"]
        return None
