from __future__ import annotations

"""Read-only lookup of learning goals and milestones.

Goal and milestone CRUD lives outside the gateway; the chat only needs the
goal title and the milestone the learner is currently working on to frame
the tutor prompt.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Protocol, Tuple
import logging
import os

from ..domain.chat_models import GoalContext


logger = logging.getLogger("tutorchat.goals")


class GoalDirectory(Protocol):
    async def get_goal_context(self, user_id: int, goal_id: int) -> Optional[GoalContext]: ...


@dataclass
class Milestone:
    id: int
    title: str
    order: int
    completed: bool = False


@dataclass
class Goal:
    id: int
    user_id: int
    title: str
    milestones: List[Milestone] = field(default_factory=list)


def current_milestone(goal: Goal) -> Optional[Milestone]:
    """First milestone, in order, that is not completed yet."""
    for milestone in sorted(goal.milestones, key=lambda m: (m.order, m.id)):
        if not milestone.completed:
            return milestone
    return None


def goal_context(goal: Goal) -> GoalContext:
    milestone = current_milestone(goal)
    return GoalContext(
        goal_id=goal.id,
        goal_title=goal.title,
        milestone_id=milestone.id if milestone else None,
        milestone_title=milestone.title if milestone else None,
    )


class InMemoryGoalDirectory:
    def __init__(self) -> None:
        self._goals: Dict[Tuple[int, int], Goal] = {}

    def add_goal(self, goal: Goal) -> Goal:
        self._goals[(goal.user_id, goal.id)] = goal
        return goal

    async def get_goal_context(self, user_id: int, goal_id: int) -> Optional[GoalContext]:
        goal = self._goals.get((user_id, goal_id))
        if goal is None:
            return None
        return goal_context(goal)


_directory: GoalDirectory | None = None


def get_goal_directory() -> GoalDirectory:
    global _directory
    if _directory is not None:
        return _directory
    impl = os.getenv("TUTORCHAT_GOAL_DIRECTORY_IMPL", "memory").lower()
    if impl == "mongo":
        try:
            from .directory_mongo import MongoGoalDirectory

            _directory = MongoGoalDirectory.from_env()
            return _directory
        except Exception:
            logger.exception("Mongo goal directory unavailable; falling back to in-memory directory")
            _directory = None
    if _directory is None:
        _directory = InMemoryGoalDirectory()
    return _directory


def reset_goal_directory() -> None:
    """Drop the cached directory (useful for tests)."""
    global _directory
    _directory = None
