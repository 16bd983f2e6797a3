from workflow_engine import db
from workflow_engine.domain import Applied, Outcome, RuleExecution, StateChangeEvent, Suppressed


def log_execution(conn, rule_id: int, event: StateChangeEvent, outcome: Outcome) -> int:
    """Persist the outcome of evaluating `rule_id` against `event`.

    Lets sqlite3.IntegrityError through when the (rule, origin) pair has
    already been recorded.
    """
    if isinstance(outcome, Applied):
        reason, count = None, outcome.count
    elif isinstance(outcome, Suppressed):
        reason, count = outcome.reason, 0
    else:
        raise ValueError(f"Unknown outcome: {outcome!r}")

    return db.insert_rule_execution(
        conn,
        rule_id=rule_id,
        origin_type=event.resource_type.value,
        origin_id=event.resource_id,
        outcome=outcome.outcome,
        suppression_reason=reason,
        created_count=count,
        user_id=event.user_id,
    )


def outcome_from_row(row) -> Outcome:
    if row["outcome"] == "applied":
        return Applied(row["created_count"])
    if row["outcome"] == "suppressed":
        return Suppressed(row["suppression_reason"])
    raise ValueError(f"Unknown outcome: {row['outcome']!r}")


def execution_from_row(row) -> RuleExecution:
    return RuleExecution(
        id=row["id"],
        rule_id=row["rule_id"],
        origin_type=row["origin_type"],
        origin_id=row["origin_id"],
        outcome=outcome_from_row(row),
        user_id=row["user_id"],
        created_at=row["created_at"],
    )


def list_executions(rule_id: int, limit: int = 50, offset: int = 0) -> list[RuleExecution]:
    conn = db.get_connection()
    try:
        with db.storage_errors():
            rows = db.list_rule_executions(conn, rule_id, limit, offset)
    finally:
        conn.close()
    return [execution_from_row(row) for row in rows]


def count_executions(rule_id: int) -> int:
    conn = db.get_connection()
    try:
        with db.storage_errors():
            return db.count_rule_executions(conn, rule_id)
    finally:
        conn.close()
