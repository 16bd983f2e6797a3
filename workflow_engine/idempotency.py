"""At-most-once rule application per (rule, origin resource).

The read in `already_executed` is only a fast path. The UNIQUE key on
rule_executions is what decides: losing the insert race surfaces as
DuplicateExecution and the caller rolls back whatever the rule created.
"""
import sqlite3

from workflow_engine import db, execution_log
from workflow_engine.domain import IDEMPOTENT, Outcome, StateChangeEvent, Suppressed


class DuplicateExecution(Exception):
    def __init__(self, rule_id: int, event: StateChangeEvent):
        super().__init__(
            f"rule {rule_id} already executed for {event.resource_type.value} {event.resource_id}"
        )
        self.rule_id = rule_id
        self.event = event


SUPPRESSED_IDEMPOTENT = Suppressed(IDEMPOTENT)


def already_executed(conn, rule_id: int, event: StateChangeEvent) -> bool:
    row = db.find_rule_execution(conn, rule_id, event.resource_type.value, event.resource_id)
    return row is not None


def record_once(conn, rule_id: int, event: StateChangeEvent, outcome: Outcome) -> int:
    try:
        return execution_log.log_execution(conn, rule_id, event, outcome)
    except sqlite3.IntegrityError as exc:
        raise DuplicateExecution(rule_id, event) from exc
