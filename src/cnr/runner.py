from __future__ import annotations

import enum
import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Sequence

from .config import AppConfig
from .errors import AuthError, ConfigError, CursorStoreError, FetchError, RelayError
from .http_utils import HttpClient
from .models import DispatchResult, NotificationCandidate, utc_now
from .notify.dispatcher import NotificationDispatcher, RoutedCandidate
from .notify.slack import SlackNotifier
from .rules.event_filter import EventFilter, FilterState
from .rules.routing import RouteTable
from .sources.base import ChangeFeed, ChangePage
from .sources.clickup import ClickUpClient, ClickUpInboxFeed
from .sources.dropbox import DropboxChangeFeed
from .state.sqlite_store import SqliteCursorStore, SqliteStateStore
from .state.store import CursorStore


logger = logging.getLogger(__name__)


class SyncPhase(str, enum.Enum):
    IDLE = "idle"
    FETCHING = "fetching"
    CLASSIFYING = "classifying"
    ROUTING = "routing"
    DISPATCHING = "dispatching"
    PERSISTING = "persisting"


class RunStatus(str, enum.Enum):
    COMPLETED = "completed"
    ABORTED = "aborted"
    COALESCED = "coalesced"


@dataclass(slots=True)
class SyncReport:
    feed_key: str
    status: RunStatus
    started_at: datetime
    finished_at: datetime | None = None
    duration_ms: int = 0
    cursor_before: str | None = None
    cursor_after: str | None = None
    pages: int = 0
    fetched: int = 0
    classified: int = 0
    dispatched: int = 0
    failed: int = 0
    results: list[DispatchResult] = field(default_factory=list)
    error: str | None = None
    passes: int = 1

    @property
    def ok(self) -> bool:
        return self.status is not RunStatus.ABORTED


def merge_reports(reports: Sequence[SyncReport]) -> SyncReport:
    """
    合并同一次 run_sync 内的多轮报告（合并补跑时出现）。

    - 任一轮 aborted 则整体 aborted，error 取第一个
    - 计数与派发结果累加；cursor_before 取第一轮，cursor_after 取最后一轮
    """
    if len(reports) == 1:
        return reports[0]
    first, last = reports[0], reports[-1]
    errors = [r.error for r in reports if r.error]
    return SyncReport(
        feed_key=first.feed_key,
        status=RunStatus.ABORTED if any(r.status is RunStatus.ABORTED for r in reports) else RunStatus.COMPLETED,
        started_at=first.started_at,
        finished_at=last.finished_at,
        duration_ms=sum(r.duration_ms for r in reports),
        cursor_before=first.cursor_before,
        cursor_after=last.cursor_after,
        pages=sum(r.pages for r in reports),
        fetched=sum(r.fetched for r in reports),
        classified=sum(r.classified for r in reports),
        dispatched=sum(r.dispatched for r in reports),
        failed=sum(r.failed for r in reports),
        results=[res for r in reports for res in r.results],
        error=errors[0] if errors else None,
        passes=len(reports),
    )


@dataclass(slots=True)
class _RunContext:
    """一次运行内的可变状态；cursor 只在这里推进，成功后才落盘。"""

    report: SyncReport
    cursor: str | None
    filter_state: FilterState = field(default_factory=FilterState)
    dispatched: set[tuple[str, str]] = field(default_factory=set)
    page: ChangePage | None = None
    candidates: list[NotificationCandidate] = field(default_factory=list)
    routed: list[RoutedCandidate] = field(default_factory=list)


@dataclass(slots=True)
class SyncLoop:
    """
    同步编排器：单个 feed 的一次完整数据流闭环。

    FETCHING -> CLASSIFYING -> ROUTING -> DISPATCHING -> (has_more ? FETCHING) -> PERSISTING -> IDLE

    - 由外部触发（webhook / 手动），自身不持有任何定时器
    - cursor 只在整组分页全部成功后一次性保存；任何致命错误都在 PERSISTING 之前中止，
      保留旧 cursor，下次从同一位置继续（绝不跳过未处理的变更）
    - 单条派发失败不致命
    - 不可重入：运行期间到达的触发被合并为“当前运行结束后再跑一轮”
    """

    feed: ChangeFeed
    store: CursorStore
    event_filter: EventFilter
    routes: RouteTable
    dispatcher: NotificationDispatcher
    phase: SyncPhase = field(default=SyncPhase.IDLE, init=False)
    _guard: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)
    _running: bool = field(default=False, init=False, repr=False)
    _rerun_requested: bool = field(default=False, init=False, repr=False)

    def run_sync(self) -> SyncReport:
        """
        唯一入口。

        若已有运行在进行，立即返回 status=coalesced 的报告，并由正在运行的线程在结束后补跑一轮。
        返回值为本线程执行的所有轮次合并后的报告（见 merge_reports）。
        """
        with self._guard:
            if self._running:
                self._rerun_requested = True
                logger.info("sync coalesced: feed=%s (run already in progress)", self.feed.key())
                return SyncReport(feed_key=self.feed.key(), status=RunStatus.COALESCED, started_at=utc_now(), passes=0)
            self._running = True

        reports: list[SyncReport] = []
        try:
            while True:
                reports.append(self._run_once())
                with self._guard:
                    if not self._rerun_requested:
                        self._running = False
                        return merge_reports(reports)
                    self._rerun_requested = False
        except BaseException:
            with self._guard:
                self._running = False
                self._rerun_requested = False
            raise

    def _run_once(self) -> SyncReport:
        feed_key = self.feed.key()
        start_t = time.monotonic()
        report = SyncReport(feed_key=feed_key, status=RunStatus.COMPLETED, started_at=utc_now())

        try:
            cursor = self.store.load()
        except RelayError as e:
            return self._abort(report, e, start_t)

        report.cursor_before = cursor
        report.cursor_after = cursor
        ctx = _RunContext(report=report, cursor=cursor)

        self._enter(SyncPhase.FETCHING)
        try:
            while self.phase is not SyncPhase.IDLE:
                if self.phase is SyncPhase.FETCHING:
                    self._fetch(ctx)
                    self._enter(SyncPhase.CLASSIFYING)
                elif self.phase is SyncPhase.CLASSIFYING:
                    self._classify(ctx)
                    self._enter(SyncPhase.ROUTING)
                elif self.phase is SyncPhase.ROUTING:
                    self._route(ctx)
                    self._enter(SyncPhase.DISPATCHING)
                elif self.phase is SyncPhase.DISPATCHING:
                    self._dispatch(ctx)
                    page = self._current_page(ctx)
                    ctx.cursor = page.next_cursor
                    self._enter(SyncPhase.FETCHING if page.has_more else SyncPhase.PERSISTING)
                elif self.phase is SyncPhase.PERSISTING:
                    self._persist(ctx)
                    self._enter(SyncPhase.IDLE)
        except RelayError as e:
            self._enter(SyncPhase.IDLE)
            return self._abort(report, e, start_t)
        except BaseException:
            self._enter(SyncPhase.IDLE)
            raise

        report.finished_at = utc_now()
        report.duration_ms = int((time.monotonic() - start_t) * 1000)
        logger.info(
            "sync done: feed=%s pages=%d fetched=%d classified=%d dispatched=%d failed=%d cursor_advanced=%s duration_ms=%d",
            feed_key,
            report.pages,
            report.fetched,
            report.classified,
            report.dispatched,
            report.failed,
            report.cursor_after != report.cursor_before,
            report.duration_ms,
        )
        return report

    def _enter(self, phase: SyncPhase) -> None:
        logger.debug("sync phase: feed=%s %s -> %s", self.feed.key(), self.phase.value, phase.value)
        self.phase = phase

    def _fetch(self, ctx: _RunContext) -> None:
        try:
            page = self.feed.fetch_page(ctx.cursor)
        except RelayError:
            raise
        except Exception as e:  # noqa: BLE001
            raise FetchError(f"{self.feed.key()} fetch failed: {type(e).__name__}: {e}") from e
        if page.has_more and page.next_cursor == ctx.cursor:
            raise FetchError(f"{self.feed.key()} reported more pages without advancing the cursor")
        ctx.page = page
        ctx.report.pages += 1
        ctx.report.fetched += len(page.entries)
        logger.debug(
            "page fetched: feed=%s page=%d entries=%d has_more=%s",
            self.feed.key(),
            ctx.report.pages,
            len(page.entries),
            page.has_more,
        )

    def _current_page(self, ctx: _RunContext) -> ChangePage:
        if ctx.page is None:
            raise FetchError(f"{self.feed.key()} has no fetched page in phase {self.phase.value}")
        return ctx.page

    def _classify(self, ctx: _RunContext) -> None:
        ctx.candidates = self.event_filter.classify(self._current_page(ctx).entries, ctx.filter_state)
        ctx.report.classified += len(ctx.candidates)

    def _route(self, ctx: _RunContext) -> None:
        """先 enrich（任务的 space 只有拉到详情后才知道），再解析 channel。"""
        ctx.routed = []
        for candidate in ctx.candidates:
            try:
                enriched = self.feed.enrich(candidate)
            except AuthError:
                raise
            except Exception as e:  # noqa: BLE001
                channel = self.routes.resolve(candidate)
                logger.exception(
                    "enrich failed: feed=%s kind=%s subject_id=%s",
                    self.feed.key(),
                    candidate.kind.value,
                    candidate.subject_id,
                )
                self._record(ctx, DispatchResult.failed(candidate, channel, f"enrich failed: {type(e).__name__}: {e}"))
                continue
            ctx.routed.append(RoutedCandidate(candidate=enriched, channel=self.routes.resolve(enriched)))

    def _dispatch(self, ctx: _RunContext) -> None:
        for result in self.dispatcher.dispatch_all(ctx.routed, dispatched=ctx.dispatched):
            self._record(ctx, result)
        ctx.routed = []
        ctx.candidates = []

    def _persist(self, ctx: _RunContext) -> None:
        if ctx.cursor is None or ctx.cursor == ctx.report.cursor_before:
            return
        try:
            self.store.save(ctx.cursor)
        except CursorStoreError:
            logger.exception("cursor save failed, retrying once: feed=%s", self.feed.key())
            self.store.save(ctx.cursor)
        ctx.report.cursor_after = ctx.cursor

    @staticmethod
    def _record(ctx: _RunContext, result: DispatchResult) -> None:
        ctx.report.results.append(result)
        if result.delivered:
            ctx.report.dispatched += 1
        else:
            ctx.report.failed += 1

    def _abort(self, report: SyncReport, error: Exception, start_t: float) -> SyncReport:
        report.status = RunStatus.ABORTED
        report.error = f"{type(error).__name__}: {error}"
        report.cursor_after = report.cursor_before
        report.finished_at = utc_now()
        report.duration_ms = int((time.monotonic() - start_t) * 1000)
        logger.error(
            "sync aborted, cursor unchanged: feed=%s error=%s pages=%d dispatched=%d failed=%d",
            report.feed_key,
            report.error,
            report.pages,
            report.dispatched,
            report.failed,
            exc_info=error,
        )
        return report


def build_sync_loops(config: AppConfig, *, state: SqliteStateStore | None = None) -> dict[str, SyncLoop]:
    """
    根据配置构建每个 feed 的 SyncLoop（key 为 "dropbox" / "clickup"）。

    - 统一在这里做“配置 -> 实例”的装配，SyncLoop 内只关注流程编排
    - 凭据只从环境变量读取；已配置的 feed 或 Slack 缺少凭据时抛 ConfigError
    """
    if config.dropbox is None and config.clickup is None:
        return {}
    if config.slack is None:
        raise ConfigError("notify.slack is required when a feed is configured")

    http = HttpClient(timeout_seconds=config.http_timeout_seconds)
    if state is None:
        state = SqliteStateStore(config.sqlite_path)
    notifier = SlackNotifier(token=config.require_env(config.slack.token_env, what="Slack bot token"), http=http)

    feeds: dict[str, tuple[ChangeFeed, EventFilter, RouteTable]] = {}
    if config.dropbox is not None:
        feed = DropboxChangeFeed(
            http=http,
            token=config.require_env(config.dropbox.token_env, what="Dropbox access token"),
            root_path=config.dropbox.root_path,
        )
        feeds["dropbox"] = (
            feed,
            EventFilter(watched_prefixes=config.dropbox.watched_folders),
            RouteTable(rules=config.dropbox.routes, default_channel=config.default_channel),
        )

    if config.clickup is not None:
        if not config.clickup.team_id:
            raise ConfigError("ClickUp team id not configured (feeds.clickup.team_id or CLICKUP_TEAM_ID)")
        client = ClickUpClient(http=http, token=config.require_env(config.clickup.token_env, what="ClickUp API token"))
        feed = ClickUpInboxFeed(
            state=state,
            client=client,
            team_id=config.clickup.team_id,
            page_size=config.clickup.page_size,
        )
        feeds["clickup"] = (
            feed,
            EventFilter(terminal_types=config.clickup.terminal_status_types),
            RouteTable(rules=config.clickup.routes, default_channel=config.default_channel),
        )

    loops: dict[str, SyncLoop] = {}
    for name, (feed, event_filter, routes) in feeds.items():
        loops[name] = SyncLoop(
            feed=feed,
            store=SqliteCursorStore(state=state, feed_key=feed.key()),
            event_filter=event_filter,
            routes=routes,
            dispatcher=NotificationDispatcher(
                notifier=notifier,
                failure_log=state,
                feed_key=feed.key(),
                max_workers=config.dispatch_max_workers,
                timeout_seconds=config.dispatch_timeout_seconds,
            ),
        )
    return loops
