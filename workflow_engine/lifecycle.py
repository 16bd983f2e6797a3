"""Task state machine.

available -> claimed(taken) <-> claimed(ongoing) -> completed
claimed(*) -> available (release)

Versioned transitions are conditional updates keyed on (id, version); when
no row is affected the task is re-read inside the same transaction to tell
a lost version race from an ownership conflict.
"""
import logging
import sqlite3
from dataclasses import dataclass
from typing import Optional

from workflow_engine import db
from workflow_engine.domain import StateChange, Task, TaskStatus
from workflow_engine.errors import (
    AlreadyClaimed,
    ClaimOwnershipConflict,
    InvalidTransition,
    NotAuthorized,
    NotFound,
    ValidationError,
    VersionConflict,
)

logger = logging.getLogger(__name__)

# Lifecycle rules
STATE_TRANSITIONS = {
    TaskStatus.AVAILABLE: {
        "claim": TaskStatus.CLAIMED,
    },
    TaskStatus.CLAIMED: {
        "release": TaskStatus.AVAILABLE,
        "complete": TaskStatus.COMPLETED,
        "start": TaskStatus.CLAIMED,
        "pause": TaskStatus.CLAIMED,
    },
    TaskStatus.COMPLETED: {},
}

UPDATABLE_FIELDS = ("title", "description", "priority", "type_id")
MIN_PRIORITY = 1
MAX_PRIORITY = 5


@dataclass
class TransitionResult:
    task: Task
    # None when the mutation left the status untouched
    change: Optional[StateChange] = None


def next_allowed_actions(task: Task) -> list[str]:
    return list(STATE_TRANSITIONS.get(task.status, {}).keys())


def _load(conn, task_id: int) -> Task:
    row = db.fetch_task(conn, task_id)
    if not row:
        raise NotFound(f"task {task_id} not found")
    return Task.from_row(row, ongoing=bool(row["is_ongoing"]))


def _validate_title(title) -> str:
    if title is None or not str(title).strip():
        raise ValidationError("title must not be empty")
    return str(title).strip()


def _validate_priority(priority) -> int:
    if isinstance(priority, bool) or not isinstance(priority, int):
        raise ValidationError("priority must be an integer")
    if not MIN_PRIORITY <= priority <= MAX_PRIORITY:
        raise ValidationError(f"priority must be between {MIN_PRIORITY} and {MAX_PRIORITY}")
    return priority


def _claim_failure(conn, task_id: int, user_id: int, version: int):
    row = db.fetch_task(conn, task_id)
    if not row:
        return NotFound(f"task {task_id} not found")

    holder = row["claimed_by"]
    if holder is not None and holder != user_id:
        return ClaimOwnershipConflict(task_id, holder)
    if holder == user_id:
        return AlreadyClaimed(f"task {task_id} is already claimed by you")
    if row["version"] != version:
        return VersionConflict(task_id, version, row["version"])
    return InvalidTransition(f"cannot claim task {task_id} from state {row['status']}")


def _owner_failure(conn, task_id: int, user_id: int, version: int, action: str):
    row = db.fetch_task(conn, task_id)
    if not row:
        return NotFound(f"task {task_id} not found")

    holder = row["claimed_by"]
    if holder is not None and holder != user_id:
        return ClaimOwnershipConflict(task_id, holder)
    if row["version"] != version:
        return VersionConflict(task_id, version, row["version"])
    return InvalidTransition(f"cannot {action} task {task_id} from state {row['status']}")


def _end_work_session_best_effort(conn, user_id: int, task_id: int):
    try:
        with db.transaction(conn):
            db.end_work_session(conn, user_id, task_id)
    except sqlite3.Error as exc:
        logger.warning("could not end work session user=%s task=%s: %s", user_id, task_id, exc)


def get_task(task_id: int) -> Task:
    conn = db.get_connection()
    try:
        with db.storage_errors():
            return _load(conn, task_id)
    finally:
        conn.close()


def load_task_events(task_id: int) -> list[dict]:
    conn = db.get_connection()
    try:
        with db.storage_errors():
            _load(conn, task_id)
            return db.load_task_events(conn, task_id)
    finally:
        conn.close()


def create_task(
    project_id: int,
    type_id: int,
    title: str,
    created_by: int,
    description: Optional[str] = None,
    priority: int = 3,
    card_id: Optional[int] = None,
    conn=None,
) -> TransitionResult:
    """Create an available task at version 1.

    When `conn` is given the caller owns the transaction (rule-created tasks
    run inside the rule's transaction); otherwise one is opened here.
    """
    title = _validate_title(title)
    priority = _validate_priority(priority)

    own_conn = conn is None
    if own_conn:
        conn = db.get_connection()
    try:
        with db.storage_errors():
            if own_conn:
                with db.transaction(conn):
                    task = _insert_task(conn, project_id, type_id, title, created_by, description, priority, card_id)
            else:
                task = _insert_task(conn, project_id, type_id, title, created_by, description, priority, card_id)
    finally:
        if own_conn:
            conn.close()

    logger.info("task %s created in project %s by user %s", task.id, project_id, created_by)
    return TransitionResult(task, StateChange(None, TaskStatus.AVAILABLE.value))


def _insert_task(conn, project_id, type_id, title, created_by, description, priority, card_id) -> Task:
    if not db.task_type_in_project(conn, type_id, project_id):
        raise ValidationError(f"task type {type_id} does not belong to project {project_id}")
    if card_id is not None and not db.card_in_project(conn, card_id, project_id):
        raise ValidationError(f"card {card_id} does not belong to project {project_id}")

    task_id = db.insert_task(
        conn,
        project_id=project_id,
        type_id=type_id,
        title=title,
        description=description,
        priority=priority,
        created_by=created_by,
        card_id=card_id,
    )
    db.append_task_event(
        conn,
        task_id=task_id,
        project_id=project_id,
        actor_user_id=created_by,
        event_type="task_created",
        from_state=None,
        to_state=TaskStatus.AVAILABLE.value,
        version=1,
    )
    return _load(conn, task_id)


def claim(task_id: int, user_id: int, version: int) -> TransitionResult:
    conn = db.get_connection()
    try:
        with db.storage_errors():
            with db.transaction(conn):
                if db.claim_task(conn, task_id, user_id, version) == 0:
                    raise _claim_failure(conn, task_id, user_id, version)
                task = _load(conn, task_id)
                db.append_task_event(
                    conn,
                    task_id=task_id,
                    project_id=task.project_id,
                    actor_user_id=user_id,
                    event_type="task_claimed",
                    from_state=TaskStatus.AVAILABLE.value,
                    to_state=TaskStatus.CLAIMED.value,
                    version=task.version,
                )
    finally:
        conn.close()

    logger.info("task %s claimed by user %s (v%s)", task_id, user_id, task.version)
    return TransitionResult(task, StateChange(TaskStatus.AVAILABLE.value, TaskStatus.CLAIMED.value))


def release(task_id: int, user_id: int, version: int) -> TransitionResult:
    return _finish_claim(task_id, user_id, version, "release")


def complete(task_id: int, user_id: int, version: int) -> TransitionResult:
    return _finish_claim(task_id, user_id, version, "complete")


def _finish_claim(task_id: int, user_id: int, version: int, action: str) -> TransitionResult:
    to_status = STATE_TRANSITIONS[TaskStatus.CLAIMED][action]
    if to_status is TaskStatus.AVAILABLE:
        mutate, event_type = db.release_task, "task_released"
    elif to_status is TaskStatus.COMPLETED:
        mutate, event_type = db.complete_task, "task_completed"
    else:
        raise ValueError(f"Unknown claim-ending action: {action}")

    conn = db.get_connection()
    try:
        with db.storage_errors():
            with db.transaction(conn):
                if mutate(conn, task_id, user_id, version) == 0:
                    raise _owner_failure(conn, task_id, user_id, version, action)
                task = _load(conn, task_id)
                db.append_task_event(
                    conn,
                    task_id=task_id,
                    project_id=task.project_id,
                    actor_user_id=user_id,
                    event_type=event_type,
                    from_state=TaskStatus.CLAIMED.value,
                    to_state=to_status.value,
                    version=task.version,
                )

        # best-effort: the claim has already ended
        _end_work_session_best_effort(conn, user_id, task_id)
    finally:
        conn.close()

    logger.info("task %s %sd by user %s (v%s)", task_id, action, user_id, task.version)
    return TransitionResult(task, StateChange(TaskStatus.CLAIMED.value, to_status.value))


def update(task_id: int, user_id: int, version: int, fields: dict) -> TransitionResult:
    unknown = set(fields) - set(UPDATABLE_FIELDS)
    if unknown:
        raise ValidationError(f"cannot update fields: {', '.join(sorted(unknown))}")

    changes = {}
    if "title" in fields:
        changes["title"] = _validate_title(fields["title"])
    if "description" in fields:
        changes["description"] = fields["description"] or None
    if "priority" in fields:
        changes["priority"] = _validate_priority(fields["priority"])
    if "type_id" in fields:
        changes["type_id"] = fields["type_id"]
    if not changes:
        raise ValidationError("no fields to update")

    conn = db.get_connection()
    try:
        with db.storage_errors():
            with db.transaction(conn):
                current = db.fetch_task(conn, task_id)
                if current and "type_id" in changes:
                    if not db.task_type_in_project(conn, changes["type_id"], current["project_id"]):
                        raise ValidationError(
                            f"task type {changes['type_id']} does not belong to project {current['project_id']}"
                        )
                if db.update_task_fields(conn, task_id, user_id, version, changes) == 0:
                    raise _owner_failure(conn, task_id, user_id, version, "update")
                task = _load(conn, task_id)
                db.append_task_event(
                    conn,
                    task_id=task_id,
                    project_id=task.project_id,
                    actor_user_id=user_id,
                    event_type="task_updated",
                    from_state=task.status.value,
                    to_state=task.status.value,
                    version=task.version,
                )
    finally:
        conn.close()

    return TransitionResult(task, None)


def _require_claimant(task: Task, user_id: int, action: str):
    if task.status is not TaskStatus.CLAIMED:
        raise InvalidTransition(f"cannot {action} work on task {task.id} from state {task.status.value}")
    if task.claimed_by != user_id:
        raise NotAuthorized(f"task {task.id} is not claimed by user {user_id}")


def start_work(task_id: int, user_id: int) -> Task:
    """Claimed(Taken) -> Claimed(Ongoing). No-op when already ongoing."""
    conn = db.get_connection()
    try:
        with db.storage_errors():
            with db.transaction(conn):
                _require_claimant(_load(conn, task_id), user_id, "start")
                db.start_work_session(conn, user_id, task_id)
                return _load(conn, task_id)
    finally:
        conn.close()


def pause_work(task_id: int, user_id: int) -> Task:
    """Claimed(Ongoing) -> Claimed(Taken). No-op when not ongoing."""
    conn = db.get_connection()
    try:
        with db.storage_errors():
            with db.transaction(conn):
                _require_claimant(_load(conn, task_id), user_id, "pause")
                db.end_work_session(conn, user_id, task_id)
                return _load(conn, task_id)
    finally:
        conn.close()
