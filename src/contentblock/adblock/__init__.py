"""
Content blocking for contentblock.

Parses Adblock Plus filter lists, compiles them into indexed matchers and
decides for every request whether it is allowed or blocked.
"""

from .engine import ContentBlocker, ProfileInfo
from .evaluator import Evaluation, RequestEvaluator
from .matcher import Decision, MatchDecision
from .parser import ResourceType, parse_filter_list, parse_line
from .profiles import Profile, ProfileStore
from .updater import UpdateOutcome, UpdateScheduler, UpdateState

__all__ = [
    "ContentBlocker",
    "Decision",
    "Evaluation",
    "MatchDecision",
    "Profile",
    "ProfileInfo",
    "ProfileStore",
    "RequestEvaluator",
    "ResourceType",
    "UpdateOutcome",
    "UpdateScheduler",
    "UpdateState",
    "parse_filter_list",
    "parse_line",
]
