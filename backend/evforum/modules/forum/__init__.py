"""
Forum Module - Community discussions.

Features:
- Categories with derived counters
- Threads and nested replies
- Up/down votes with quality scoring
- Moderation flags with an audit log
"""

from evforum.modules.forum.categories import CategoryRegistry
from evforum.modules.forum.moderation import ModerationController
from evforum.modules.forum.query import ThreadFilters, ThreadQuery
from evforum.modules.forum.replies import ReplyTreeEngine
from evforum.modules.forum.threads import ThreadService
from evforum.modules.forum.votes import VoteAggregator, quality_of

__all__ = [
    "CategoryRegistry",
    "ModerationController",
    "ReplyTreeEngine",
    "ThreadFilters",
    "ThreadQuery",
    "ThreadService",
    "VoteAggregator",
    "quality_of",
]
