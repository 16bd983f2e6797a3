from workflow_engine import db
from workflow_engine.errors import NotAuthorized, NotFound


def project_org(project_id: int) -> int:
    conn = db.get_connection()
    try:
        with db.storage_errors():
            row = db.fetch_project(conn, project_id)
    finally:
        conn.close()

    if not row:
        raise NotFound(f"project {project_id} not found")
    return row["org_id"]


def require_project_member(project_id: int, actor_id: int):
    """Server-authoritative membership check; the state machine trusts its callers."""
    conn = db.get_connection()
    try:
        with db.storage_errors():
            is_member = db.is_project_member(conn, project_id, actor_id)
    finally:
        conn.close()

    if not is_member:
        raise NotAuthorized(f"user {actor_id} is not a member of project {project_id}")
