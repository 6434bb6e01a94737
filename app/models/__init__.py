"""
All database models. Imported here so Base.metadata sees them for create_all().
"""

from .base import TimestampMixin
from .setting import Setting
from .skill import Skill, SkillCategory, TriggerType
from .conversation import Thread, ThreadCategory, Message
from .summary import ThreadSummary, ArchivedMessage
from .memory import UserMemory

__all__ = [
    "TimestampMixin",
    "Setting",
    "Skill", "SkillCategory", "TriggerType",
    "Thread", "ThreadCategory", "Message",
    "ThreadSummary", "ArchivedMessage",
    "UserMemory",
]
