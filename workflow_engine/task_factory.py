import logging
from typing import Optional

from workflow_engine import db, lifecycle
from workflow_engine.domain import ResourceType, Rule, StateChangeEvent, TaskTemplate
from workflow_engine.errors import ValidationError
from workflow_engine.template_expander import ExpansionContext, expand

logger = logging.getLogger(__name__)


def inherited_card(event: StateChangeEvent) -> Optional[int]:
    if event.resource_type is ResourceType.TASK:
        return event.card_id
    if event.resource_type is ResourceType.CARD:
        # cards are the top of the hierarchy
        return None
    raise ValueError(f"Unknown resource type: {event.resource_type}")


def templates_for_rule(conn, rule_id: int) -> list[TaskTemplate]:
    return [TaskTemplate.from_row(row) for row in db.templates_for_rule(conn, rule_id)]


def create_tasks_for_rule(conn, rule: Rule, event: StateChangeEvent) -> int:
    """Instantiate every template attached to `rule`; returns how many tasks were created.

    Runs inside the caller's transaction. Each template gets its own
    savepoint so one bad template does not undo the others. Storage
    errors are not a bad template; they propagate and abort the rule.
    """
    card_id = inherited_card(event)
    context = ExpansionContext.from_connection(conn, event)
    created = 0

    for template in templates_for_rule(conn, rule.id):
        try:
            with db.savepoint(conn, f"template_{template.id}"):
                result = lifecycle.create_task(
                    project_id=event.project_id,
                    type_id=template.type_id,
                    title=expand(template.name, context),
                    description=expand(template.description, context) or None,
                    priority=template.priority,
                    created_by=event.user_id,
                    card_id=card_id,
                    conn=conn,
                )
        except ValidationError as exc:
            logger.warning(
                "rule %s: template %s skipped for %s %s: %s",
                rule.id, template.id, event.resource_type.value, event.resource_id, exc,
            )
            continue

        created += 1
        logger.debug("rule %s: template %s created task %s", rule.id, template.id, result.task.id)

    return created
