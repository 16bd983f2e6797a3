from fastapi import FastAPI, HTTPException
from pydantic import BaseModel
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager
from typing import Callable, Optional
import logging

from workflow_engine import cards, execution_log, lifecycle
from workflow_engine.auth import project_org, require_project_member
from workflow_engine.config import EngineConfig
from workflow_engine.contracts import (
    CreateTaskRequest,
    TaskActionRequest,
    UpdateTaskRequest,
    WorkSessionRequest,
)
from workflow_engine.db import init_db
from workflow_engine.domain import (
    Applied,
    Card,
    CardState,
    ResourceType,
    RuleExecution,
    StateChangeEvent,
    Suppressed,
    Task,
)
from workflow_engine.errors import (
    AlreadyClaimed,
    ClaimOwnershipConflict,
    DbError,
    InvalidTransition,
    NotAuthorized,
    NotFound,
    ValidationError,
    VersionConflict,
    WorkflowError,
)
from workflow_engine.rule_engine import RuleEngine, RuleResult

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    init_db()
    yield
    # Shutdown (nothing needed yet)


CONFIG = EngineConfig.from_env()
ENGINE = RuleEngine(CONFIG)

ERROR_STATUS = {
    ValidationError: 422,
    NotAuthorized: 403,
    NotFound: 404,
    VersionConflict: 409,
    ClaimOwnershipConflict: 409,
    AlreadyClaimed: 409,
    InvalidTransition: 409,
    DbError: 500,
}


# API contracts

class TaskResponse(BaseModel):
    id: int
    project_id: int
    type_id: int
    title: str
    description: Optional[str]
    priority: int
    status: str
    claim_mode: Optional[str]
    claimed_by: Optional[int]
    card_id: Optional[int]
    version: int
    next_allowed_actions: list[str]


class RuleResultResponse(BaseModel):
    rule_id: int
    outcome: str
    created_count: int = 0
    reason: Optional[str] = None


class TaskActionResponse(BaseModel):
    task: TaskResponse
    rule_results: list[RuleResultResponse]


class CardResponse(BaseModel):
    id: int
    project_id: int
    milestone_id: Optional[int]
    title: str
    description: Optional[str]
    color: Optional[str]
    state: str
    task_count: int
    completed_count: int
    available_count: int


class RuleExecutionResponse(BaseModel):
    id: int
    origin_type: str
    origin_id: int
    outcome: str
    suppression_reason: Optional[str]
    created_count: int
    user_id: Optional[int]
    created_at: str


class RuleExecutionsPage(BaseModel):
    rule_id: int
    total: int
    executions: list[RuleExecutionResponse]


def to_http(exc: WorkflowError) -> HTTPException:
    for error_type, status in ERROR_STATUS.items():
        if isinstance(exc, error_type):
            detail = str(exc)
            if isinstance(exc, ClaimOwnershipConflict):
                detail = {"message": str(exc), "holder": exc.holder}
            return HTTPException(status_code=status, detail=detail)
    return HTTPException(status_code=500, detail=str(exc))


def task_response(task: Task) -> TaskResponse:
    return TaskResponse(
        id=task.id,
        project_id=task.project_id,
        type_id=task.type_id,
        title=task.title,
        description=task.description,
        priority=task.priority,
        status=task.status.value,
        claim_mode=task.claim_mode.value if task.claim_mode else None,
        claimed_by=task.claimed_by,
        card_id=task.card_id,
        version=task.version,
        next_allowed_actions=lifecycle.next_allowed_actions(task),
    )


def rule_result_response(rule_id: int, outcome) -> RuleResultResponse:
    if isinstance(outcome, Applied):
        return RuleResultResponse(rule_id=rule_id, outcome=outcome.outcome, created_count=outcome.count)
    if isinstance(outcome, Suppressed):
        return RuleResultResponse(rule_id=rule_id, outcome=outcome.outcome, reason=outcome.reason)
    raise ValueError(f"Unknown outcome: {outcome!r}")


def card_response(card: Card) -> CardResponse:
    return CardResponse(
        id=card.id,
        project_id=card.project_id,
        milestone_id=card.milestone_id,
        title=card.title,
        description=card.description,
        color=card.color,
        state=card.state.value,
        task_count=card.task_count,
        completed_count=card.completed_count,
        available_count=card.available_count,
    )


def execution_response(execution: RuleExecution) -> RuleExecutionResponse:
    outcome = execution.outcome
    return RuleExecutionResponse(
        id=execution.id,
        origin_type=execution.origin_type,
        origin_id=execution.origin_id,
        outcome=outcome.outcome,
        suppression_reason=outcome.reason if isinstance(outcome, Suppressed) else None,
        created_count=outcome.count if isinstance(outcome, Applied) else 0,
        user_id=execution.user_id,
        created_at=execution.created_at,
    )


def _card_state(card_id: Optional[int]) -> Optional[CardState]:
    if card_id is None:
        return None
    return cards.get_card(card_id).state


def _evaluate(event: StateChangeEvent) -> list[RuleResult]:
    # the mutation already committed; rule failures must not undo it
    try:
        return ENGINE.evaluate_rules(event)
    except WorkflowError:
        logger.exception(
            "rule evaluation failed for %s %s -> %s",
            event.resource_type.value, event.resource_id, event.to_state,
        )
        return []


def fire_rules(
    result: lifecycle.TransitionResult,
    actor_id: int,
    card_before: Optional[CardState],
) -> list[RuleResult]:
    """Raise state-change events for a committed task mutation and run the rules."""
    task = result.task
    if result.change is None:
        return []

    try:
        org_id = project_org(task.project_id)
        # read before task rules run; tasks they add to the card are their own effect
        card_after = _card_state(task.card_id)
    except WorkflowError:
        # the mutation already committed; a vanished project or card only skips the rules
        logger.exception("could not build rule events for task %s", task.id)
        return []

    results = _evaluate(
        StateChangeEvent(
            resource_type=ResourceType.TASK,
            resource_id=task.id,
            from_state=result.change.from_state,
            to_state=result.change.to_state,
            project_id=task.project_id,
            org_id=org_id,
            user_id=actor_id,
            user_triggered=True,
            task_type_id=task.type_id,
            card_id=task.card_id,
        )
    )

    if card_after is not None and card_after != card_before:
        results += _evaluate(
            StateChangeEvent(
                resource_type=ResourceType.CARD,
                resource_id=task.card_id,
                from_state=card_before.value if card_before else None,
                to_state=card_after.value,
                project_id=task.project_id,
                org_id=org_id,
                user_id=actor_id,
                user_triggered=True,
            )
        )
    return results


def action_response(result: lifecycle.TransitionResult, rule_results: list[RuleResult]) -> TaskActionResponse:
    return TaskActionResponse(
        task=task_response(result.task),
        rule_results=[rule_result_response(rule_id, outcome) for rule_id, outcome in rule_results],
    )


def _run_transition(
    task_id: int,
    actor_id: int,
    mutate: Callable[[], lifecycle.TransitionResult],
) -> TaskActionResponse:
    try:
        current = lifecycle.get_task(task_id)
        require_project_member(current.project_id, actor_id)
        card_before = _card_state(current.card_id)
        result = mutate()
        rule_results = fire_rules(result, actor_id, card_before)
    except WorkflowError as exc:
        raise to_http(exc) from exc

    return action_response(result, rule_results)


# FASTAPI app

app = FastAPI(lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# END points

@app.post("/projects/{project_id}/tasks", response_model=TaskActionResponse)
def create_task(project_id: int, req: CreateTaskRequest):
    try:
        require_project_member(project_id, req.actor_id)
        card_before = _card_state(req.card_id)
        result = lifecycle.create_task(
            project_id=project_id,
            type_id=req.type_id,
            title=req.title,
            description=req.description,
            priority=req.priority,
            created_by=req.actor_id,
            card_id=req.card_id,
        )
        rule_results = fire_rules(result, req.actor_id, card_before)
    except WorkflowError as exc:
        raise to_http(exc) from exc

    return action_response(result, rule_results)


@app.get("/tasks/{task_id}", response_model=TaskResponse)
def get_task(task_id: int):
    try:
        task = lifecycle.get_task(task_id)
    except WorkflowError as exc:
        raise to_http(exc) from exc
    return task_response(task)


@app.get("/tasks/{task_id}/events")
def get_task_events(task_id: int):
    try:
        events = lifecycle.load_task_events(task_id)
    except WorkflowError as exc:
        raise to_http(exc) from exc

    return {
        "task_id": task_id,
        "events": events
    }


@app.post("/tasks/{task_id}/claim", response_model=TaskActionResponse)
def claim_task(task_id: int, req: TaskActionRequest):
    return _run_transition(task_id, req.actor_id, lambda: lifecycle.claim(task_id, req.actor_id, req.version))


@app.post("/tasks/{task_id}/release", response_model=TaskActionResponse)
def release_task(task_id: int, req: TaskActionRequest):
    return _run_transition(task_id, req.actor_id, lambda: lifecycle.release(task_id, req.actor_id, req.version))


@app.post("/tasks/{task_id}/complete", response_model=TaskActionResponse)
def complete_task(task_id: int, req: TaskActionRequest):
    return _run_transition(task_id, req.actor_id, lambda: lifecycle.complete(task_id, req.actor_id, req.version))


@app.patch("/tasks/{task_id}", response_model=TaskActionResponse)
def update_task(task_id: int, req: UpdateTaskRequest):
    return _run_transition(
        task_id,
        req.actor_id,
        lambda: lifecycle.update(task_id, req.actor_id, req.version, req.changed_fields()),
    )


@app.post("/tasks/{task_id}/start", response_model=TaskResponse)
def start_work(task_id: int, req: WorkSessionRequest):
    try:
        task = lifecycle.start_work(task_id, req.actor_id)
    except WorkflowError as exc:
        raise to_http(exc) from exc
    return task_response(task)


@app.post("/tasks/{task_id}/pause", response_model=TaskResponse)
def pause_work(task_id: int, req: WorkSessionRequest):
    try:
        task = lifecycle.pause_work(task_id, req.actor_id)
    except WorkflowError as exc:
        raise to_http(exc) from exc
    return task_response(task)


@app.get("/cards/{card_id}", response_model=CardResponse)
def get_card(card_id: int):
    try:
        card = cards.get_card(card_id)
    except WorkflowError as exc:
        raise to_http(exc) from exc
    return card_response(card)


@app.get("/rules/{rule_id}/executions", response_model=RuleExecutionsPage)
def get_rule_executions(rule_id: int, limit: int = 50, offset: int = 0):
    if limit < 1 or limit > 500 or offset < 0:
        raise HTTPException(status_code=422, detail="limit must be 1-500 and offset >= 0")
    try:
        executions = execution_log.list_executions(rule_id, limit, offset)
        total = execution_log.count_executions(rule_id)
    except WorkflowError as exc:
        raise to_http(exc) from exc

    return RuleExecutionsPage(
        rule_id=rule_id,
        total=total,
        executions=[execution_response(e) for e in executions],
    )
