from .base import Notifier
from .dispatcher import NotificationDispatcher, RoutedCandidate
from .formatter import render_candidate, render_project_summary
from .slack import SlackNotifier

__all__ = [
    "NotificationDispatcher",
    "Notifier",
    "RoutedCandidate",
    "SlackNotifier",
    "render_candidate",
    "render_project_summary",
]
