"""Event-to-outcomes pipeline for workflow automation rules.

matcher -> idempotency guard -> task factory -> execution log, one rule at a
time. Each rule commits in its own transaction; a storage failure on a later
rule leaves earlier rules applied and surfaces as DbError.
"""
import logging
from typing import Optional

from workflow_engine import db, idempotency, rule_matcher, task_factory
from workflow_engine.config import EngineConfig
from workflow_engine.domain import Applied, Outcome, Rule, StateChangeEvent
from workflow_engine.idempotency import SUPPRESSED_IDEMPOTENT, DuplicateExecution

logger = logging.getLogger(__name__)

RuleResult = tuple[int, Outcome]


class RuleEngine:
    def __init__(self, config: Optional[EngineConfig] = None):
        self.config = config or EngineConfig()

    def evaluate_rules(self, event: StateChangeEvent) -> list[RuleResult]:
        # rule-created tasks are not user triggered; stopping here keeps
        # rules from cascading into each other
        if not event.user_triggered:
            return []

        conn = db.get_connection()
        try:
            with db.storage_errors():
                candidates = rule_matcher.find_matching_rules(conn, event)
                results = []
                for rule in candidates:
                    outcome = self._evaluate_rule(conn, rule, event)
                    self._report(rule, event, outcome)
                    results.append((rule.id, outcome))
        finally:
            conn.close()

        return results

    def _evaluate_rule(self, conn, rule: Rule, event: StateChangeEvent) -> Outcome:
        try:
            with db.transaction(conn):
                if idempotency.already_executed(conn, rule.id, event):
                    return SUPPRESSED_IDEMPOTENT

                created = task_factory.create_tasks_for_rule(conn, rule, event)
                outcome = Applied(created)
                idempotency.record_once(conn, rule.id, event, outcome)
        except DuplicateExecution:
            # a concurrent evaluation recorded this pair first; our tasks were rolled back
            return SUPPRESSED_IDEMPOTENT

        return outcome

    def _report(self, rule: Rule, event: StateChangeEvent, outcome: Outcome):
        if not self.config.log_executions:
            return
        if isinstance(outcome, Applied):
            logger.info(
                "rule %s (%s) applied to %s %s: %d task(s) created",
                rule.id, rule.name, event.resource_type.value, event.resource_id, outcome.count,
            )
        else:
            logger.info(
                "rule %s (%s) suppressed for %s %s: %s",
                rule.id, rule.name, event.resource_type.value, event.resource_id, outcome.reason,
            )
