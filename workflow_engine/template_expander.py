import logging
import re
import sqlite3
from typing import Callable, Optional

from workflow_engine import db
from workflow_engine.domain import ResourceType, StateChangeEvent

logger = logging.getLogger(__name__)

CREATED_PLACEHOLDER = "(created)"
UNKNOWN_PROJECT = "Unknown Project"
UNKNOWN_USER = "Unknown User"


def father_link(resource_type: ResourceType, resource_id: int) -> str:
    if resource_type is ResourceType.TASK:
        return f"[Task #{resource_id}](/tasks/{resource_id})"
    if resource_type is ResourceType.CARD:
        return f"[Card #{resource_id}](/cards/{resource_id})"
    raise ValueError(f"Unknown resource type: {resource_type}")


class ExpansionContext:
    """Values for template tokens. Name lookups run at most once, on first use."""

    def __init__(
        self,
        event: StateChangeEvent,
        project_name: Callable[[], Optional[str]],
        user_name: Callable[[], Optional[str]],
    ):
        self.event = event
        self._project_name = project_name
        self._user_name = user_name
        self._cache = {}

    @classmethod
    def from_connection(cls, conn, event: StateChangeEvent) -> "ExpansionContext":
        return cls(
            event,
            project_name=lambda: db.project_name(conn, event.project_id),
            user_name=lambda: db.user_display_name(conn, event.user_id),
        )

    def _lookup(self, key: str, fetch, fallback: str) -> str:
        if key not in self._cache:
            try:
                value = fetch()
            except sqlite3.Error as exc:
                logger.warning("%s lookup failed for template expansion: %s", key, exc)
                value = None
            self._cache[key] = value or fallback
        return self._cache[key]

    def father(self) -> str:
        return father_link(self.event.resource_type, self.event.resource_id)

    def from_state(self) -> str:
        return self.event.from_state or CREATED_PLACEHOLDER

    def to_state(self) -> str:
        return self.event.to_state

    def project(self) -> str:
        return self._lookup("project", self._project_name, UNKNOWN_PROJECT)

    def user(self) -> str:
        return self._lookup("user", self._user_name, UNKNOWN_USER)


TOKEN_PATTERN = re.compile(r"\{\{(\w+)\}\}")

TOKENS = {
    "father": ExpansionContext.father,
    "from_state": ExpansionContext.from_state,
    "to_state": ExpansionContext.to_state,
    "project": ExpansionContext.project,
    "user": ExpansionContext.user,
}


def expand(text: Optional[str], context: ExpansionContext) -> str:
    if not text:
        return ""

    def replace_token(match):
        resolve = TOKENS.get(match.group(1))
        if resolve is None:
            return match.group(0)  # unknown tokens stay as written
        return resolve(context)

    # one pass; substituted values are never rescanned
    return TOKEN_PATTERN.sub(replace_token, text)
