from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union


class TaskStatus(str, Enum):
    AVAILABLE = "available"
    CLAIMED = "claimed"
    COMPLETED = "completed"


class ClaimMode(str, Enum):
    TAKEN = "taken"
    ONGOING = "ongoing"


class CardState(str, Enum):
    PENDIENTE = "pendiente"
    EN_CURSO = "en_curso"
    CERRADA = "cerrada"


class ResourceType(str, Enum):
    TASK = "task"
    CARD = "card"


@dataclass
class Task:
    id: int
    project_id: int
    type_id: int
    title: str
    priority: int
    status: TaskStatus
    version: int
    created_by: int
    created_at: str
    description: Optional[str] = None
    claimed_by: Optional[int] = None
    claimed_at: Optional[str] = None
    completed_at: Optional[str] = None
    card_id: Optional[int] = None
    # only meaningful while CLAIMED; derived from open work sessions
    claim_mode: Optional[ClaimMode] = None

    @classmethod
    def from_row(cls, row, ongoing: bool = False) -> "Task":
        status = TaskStatus(row["status"])
        claim_mode = None
        if status is TaskStatus.CLAIMED:
            claim_mode = ClaimMode.ONGOING if ongoing else ClaimMode.TAKEN

        return cls(
            id=row["id"],
            project_id=row["project_id"],
            type_id=row["type_id"],
            title=row["title"],
            description=row["description"],
            priority=row["priority"],
            status=status,
            version=row["version"],
            created_by=row["created_by"],
            created_at=row["created_at"],
            claimed_by=row["claimed_by"],
            claimed_at=row["claimed_at"],
            completed_at=row["completed_at"],
            card_id=row["card_id"],
            claim_mode=claim_mode,
        )


@dataclass
class Card:
    id: int
    project_id: int
    title: str
    state: CardState
    task_count: int
    completed_count: int
    available_count: int
    description: Optional[str] = None
    color: Optional[str] = None
    milestone_id: Optional[int] = None


@dataclass(frozen=True)
class TaskRule:
    to_state: str
    task_type_id: Optional[int] = None

    @property
    def resource_type(self) -> ResourceType:
        return ResourceType.TASK


@dataclass(frozen=True)
class CardRule:
    to_state: str

    @property
    def resource_type(self) -> ResourceType:
        return ResourceType.CARD


RuleTarget = Union[TaskRule, CardRule]


def target_from_row(resource_type: str, to_state: str, task_type_id: Optional[int]) -> RuleTarget:
    kind = ResourceType(resource_type)
    if kind is ResourceType.TASK:
        return TaskRule(to_state=to_state, task_type_id=task_type_id)
    if kind is ResourceType.CARD:
        return CardRule(to_state=to_state)
    raise ValueError(f"Unknown resource type: {resource_type}")


@dataclass
class Rule:
    id: int
    workflow_id: int
    name: str
    target: RuleTarget
    active: bool
    goal: Optional[str] = None

    @classmethod
    def from_row(cls, row) -> "Rule":
        return cls(
            id=row["id"],
            workflow_id=row["workflow_id"],
            name=row["name"],
            goal=row["goal"],
            target=target_from_row(row["resource_type"], row["to_state"], row["task_type_id"]),
            active=bool(row["active"]),
        )


@dataclass
class TaskTemplate:
    id: int
    org_id: int
    name: str
    type_id: int
    priority: int
    project_id: Optional[int] = None
    description: Optional[str] = None
    execution_order: int = 0

    @classmethod
    def from_row(cls, row) -> "TaskTemplate":
        keys = row.keys()
        return cls(
            id=row["id"],
            org_id=row["org_id"],
            project_id=row["project_id"],
            name=row["name"],
            description=row["description"],
            type_id=row["type_id"],
            priority=row["priority"],
            execution_order=row["execution_order"] if "execution_order" in keys else 0,
        )


@dataclass(frozen=True)
class StateChange:
    from_state: Optional[str]
    to_state: str


@dataclass(frozen=True)
class StateChangeEvent:
    resource_type: ResourceType
    resource_id: int
    to_state: str
    project_id: int
    org_id: int
    user_id: int
    user_triggered: bool
    from_state: Optional[str] = None
    task_type_id: Optional[int] = None
    # inherited by tasks a rule creates; always None for card events
    card_id: Optional[int] = None


@dataclass(frozen=True)
class Applied:
    count: int

    @property
    def outcome(self) -> str:
        return "applied"


@dataclass(frozen=True)
class Suppressed:
    reason: str

    @property
    def outcome(self) -> str:
        return "suppressed"


Outcome = Union[Applied, Suppressed]

IDEMPOTENT = "idempotent"


@dataclass(frozen=True)
class RuleExecution:
    id: int
    rule_id: int
    origin_type: str
    origin_id: int
    outcome: Outcome
    created_at: str
    user_id: Optional[int] = None
