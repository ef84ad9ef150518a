from __future__ import annotations

import concurrent.futures
import logging
from dataclasses import dataclass
from typing import Callable, Iterable, Sequence

from ..models import DispatchResult, NotificationCandidate, RenderedMessage
from ..state.store import DispatchFailureLog
from .base import Notifier
from .formatter import render_candidate


logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class RoutedCandidate:
    candidate: NotificationCandidate
    channel: str


@dataclass(slots=True)
class NotificationDispatcher:
    """
    派发器：每个候选每轮至多尝试一次，失败只记录不重试，也不影响后续候选。

    - render：渲染协作者（默认 Slack Block Kit 渲染）
    - failure_log：失败留痕（可选）
    - max_workers > 1 时同一页内的候选并发发送，结果按排序后的候选顺序返回
    - timeout_seconds：并发模式下等待全部发送完成的上限，超时的候选记为失败
    """

    notifier: Notifier
    render: Callable[[NotificationCandidate], RenderedMessage] = render_candidate
    failure_log: DispatchFailureLog | None = None
    feed_key: str = ""
    max_workers: int = 1
    timeout_seconds: float = 30.0

    def dispatch(self, candidate: NotificationCandidate, channel: str) -> DispatchResult:
        try:
            message = self.render(candidate)
            self.notifier.send(channel, message)
        except Exception as e:  # noqa: BLE001
            reason = f"{type(e).__name__}: {e}"
            logger.exception(
                "dispatch failed: feed=%s channel=%s kind=%s subject_id=%s",
                self.feed_key,
                channel,
                candidate.kind.value,
                candidate.subject_id,
            )
            return self._failed(candidate, channel, reason)

        logger.info(
            "dispatched: feed=%s channel=%s kind=%s subject=%s",
            self.feed_key,
            channel,
            candidate.kind.value,
            candidate.subject_name,
        )
        return DispatchResult.ok(candidate, channel)

    def dispatch_all(
        self,
        routed: Iterable[RoutedCandidate],
        *,
        dispatched: set[tuple[str, str]] | None = None,
    ) -> list[DispatchResult]:
        """
        排序 + 去重后逐个派发。

        dispatched 为本轮已派发过的 dedup key 集合（跨页共享），命中的候选直接跳过。
        """
        if dispatched is None:
            dispatched = set()

        # 排序保证通知顺序稳定（避免同一批候选在不同运行中顺序抖动）。
        ordered = sorted(routed, key=lambda r: (r.candidate.occurred_at, r.candidate.subject_id))
        batch: list[RoutedCandidate] = []
        for r in ordered:
            key = r.candidate.dedup_key()
            if key in dispatched:
                continue
            dispatched.add(key)
            batch.append(r)

        if not batch:
            return []
        if self.max_workers <= 1 or len(batch) == 1:
            return [self.dispatch(r.candidate, r.channel) for r in batch]
        return self._dispatch_concurrently(batch)

    def _dispatch_concurrently(self, batch: Sequence[RoutedCandidate]) -> list[DispatchResult]:
        executor = concurrent.futures.ThreadPoolExecutor(
            max_workers=min(self.max_workers, len(batch)),
            thread_name_prefix="cnr-dispatch",
        )
        try:
            futures = [executor.submit(self.dispatch, r.candidate, r.channel) for r in batch]
            concurrent.futures.wait(futures, timeout=self.timeout_seconds)
            results: list[DispatchResult] = []
            for r, future in zip(batch, futures):
                if future.done():
                    results.append(future.result())
                    continue
                future.cancel()
                logger.error(
                    "dispatch timed out: feed=%s channel=%s subject_id=%s timeout_seconds=%s",
                    self.feed_key,
                    r.channel,
                    r.candidate.subject_id,
                    self.timeout_seconds,
                )
                results.append(self._failed(r.candidate, r.channel, f"timed out after {self.timeout_seconds}s"))
            return results
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

    def _failed(self, candidate: NotificationCandidate, channel: str, reason: str) -> DispatchResult:
        if self.failure_log is not None:
            try:
                self.failure_log.record_dispatch_failure(
                    feed_key=self.feed_key,
                    subject_id=candidate.subject_id,
                    channel=channel,
                    error=reason,
                )
            except Exception:  # noqa: BLE001
                logger.exception("dispatch failure could not be recorded: subject_id=%s", candidate.subject_id)
        return DispatchResult.failed(candidate, channel, reason)
