"""
Change Notify Relay (cnr)

把上游变更（Dropbox 文件上传 / ClickUp 任务完成）转发为 Slack 通知：
按可恢复的 cursor 增量拉取变更，过滤去重为通知候选，按最长前缀规则路由到 channel，
每个候选每轮至多派发一次；另提供按客户聚合任务状态的查询。
"""

from .models import DispatchResult, NotificationCandidate
from .runner import SyncLoop, SyncReport

__all__ = [
    "DispatchResult",
    "NotificationCandidate",
    "SyncLoop",
    "SyncReport",
]
