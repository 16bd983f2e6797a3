from workflow_engine import db
from workflow_engine.domain import ResourceType, Rule, StateChangeEvent


def find_matching_rules(conn, event: StateChangeEvent) -> list[Rule]:
    """Active rules in active workflows whose target matches `event`.

    Project-scoped workflows come before org-wide ones, then rule id. Every
    match is returned; several rules may fire for one event.
    """
    if event.resource_type is ResourceType.TASK:
        task_type_id = event.task_type_id
    elif event.resource_type is ResourceType.CARD:
        task_type_id = None
    else:
        raise ValueError(f"Unknown resource type: {event.resource_type}")

    rows = db.find_matching_rules(
        conn,
        resource_type=event.resource_type.value,
        to_state=event.to_state,
        project_id=event.project_id,
        org_id=event.org_id,
        task_type_id=task_type_id,
    )
    return [Rule.from_row(row) for row in rows]
