"""
Post Scheduling and Dispatch

Schedules paid posts into channels as one or more fire times and delivers
them from a periodic sweep.
"""

from .engine import DispatchEngine
from .models import (
    AdPost,
    Channel,
    FireTime,
    FireTimeStatus,
    PostStatus,
    SweepResult,
)
from .scheduling import PostScheduler
from .senders import MessageSender, RecordingSender, TelegramSender

__all__ = [
    "DispatchEngine",
    "AdPost",
    "Channel",
    "FireTime",
    "FireTimeStatus",
    "PostStatus",
    "SweepResult",
    "PostScheduler",
    "MessageSender",
    "RecordingSender",
    "TelegramSender",
]
