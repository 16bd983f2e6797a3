from types import SimpleNamespace

import pytest

from workflow_engine import db

ORG_ID = 1


@pytest.fixture(autouse=True)
def isolated_db(tmp_path, monkeypatch):
    test_db = tmp_path / "test_workflow.db"
    monkeypatch.setenv("WORKFLOW_DB_PATH", str(test_db))
    monkeypatch.setattr(db, "DB_PATH", test_db)
    db.init_db()
    yield test_db


@pytest.fixture
def conn():
    connection = db.get_connection()
    yield connection
    connection.close()


@pytest.fixture
def seed(conn):
    alice = db.create_user(conn, "alice@example.com", "Alice")
    bob = db.create_user(conn, "bob@example.com")
    project_id = db.create_project(conn, ORG_ID, "Apollo")
    other_project_id = db.create_project(conn, ORG_ID, "Gemini")
    for user_id in (alice, bob):
        db.add_project_member(conn, project_id, user_id)

    return SimpleNamespace(
        org_id=ORG_ID,
        alice=alice,
        bob=bob,
        outsider=db.create_user(conn, "eve@example.com"),
        project_id=project_id,
        other_project_id=other_project_id,
        type_id=db.create_task_type(conn, project_id, "Bug"),
        other_type_id=db.create_task_type(conn, project_id, "Chore"),
        foreign_type_id=db.create_task_type(conn, other_project_id, "Bug"),
        card_id=db.create_card(conn, project_id, "Release 1.0", alice),
    )


@pytest.fixture
def make_rule(conn, seed):
    """Create an active rule (and its workflow) with templates attached in order."""

    def _make_rule(
        resource_type="task",
        to_state="claimed",
        templates=(),
        task_type_id=None,
        project_id=seed.project_id,
        org_id=seed.org_id,
        workflow_active=True,
        rule_active=True,
    ):
        workflow_id = db.create_workflow(
            conn, org_id, "Automation", project_id=project_id, active=workflow_active
        )
        rule_id = db.create_rule(
            conn,
            workflow_id,
            f"on {resource_type} {to_state}",
            resource_type,
            to_state,
            task_type_id=task_type_id,
            active=rule_active,
        )
        for order, (name, description) in enumerate(templates):
            template_id = db.create_task_template(
                conn,
                org_id,
                name,
                seed.type_id,
                priority=2,
                description=description,
                project_id=project_id,
            )
            db.attach_rule_template(conn, rule_id, template_id, order)
        return rule_id

    return _make_rule


@pytest.fixture
def count_rows(conn):
    def _count_rows(table):
        return conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]

    return _count_rows
