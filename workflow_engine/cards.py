from typing import Optional

from workflow_engine import db
from workflow_engine.domain import Card, CardState
from workflow_engine.errors import NotFound


def derive_card_state(task_count: int, completed_count: int, available_count: int) -> CardState:
    if task_count == 0:
        return CardState.PENDIENTE
    if task_count == completed_count:
        return CardState.CERRADA
    # something has been picked up or finished, but not everything is done
    if available_count < task_count:
        return CardState.EN_CURSO
    return CardState.PENDIENTE


def card_from_row(row) -> Card:
    return Card(
        id=row["id"],
        project_id=row["project_id"],
        milestone_id=row["milestone_id"],
        title=row["title"],
        description=row["description"],
        color=row["color"],
        task_count=row["task_count"],
        completed_count=row["completed_count"],
        available_count=row["available_count"],
        state=derive_card_state(row["task_count"], row["completed_count"], row["available_count"]),
    )


def read_card(conn, card_id: int) -> Optional[Card]:
    row = db.fetch_card_with_counts(conn, card_id)
    return card_from_row(row) if row else None


def get_card(card_id: int) -> Card:
    conn = db.get_connection()
    try:
        with db.storage_errors():
            card = read_card(conn, card_id)
    finally:
        conn.close()

    if card is None:
        raise NotFound(f"card {card_id} not found")
    return card
