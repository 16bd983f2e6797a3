from dataclasses import fields, replace
import logging
import sqlite3

import pytest

from workflow_engine import db, execution_log, idempotency, lifecycle, task_factory
from workflow_engine.config import EngineConfig
from workflow_engine.domain import Applied, ResourceType, StateChangeEvent, Suppressed
from workflow_engine.errors import DbError
from workflow_engine.rule_engine import RuleEngine

FOLLOW_UP = ("Follow up on {{father}} ({{from_state}} -> {{to_state}})", "Raised by {{user}} in {{project}}")


@pytest.fixture
def engine():
    return RuleEngine(EngineConfig(log_executions=True))


@pytest.fixture
def task_event(seed):
    def _task_event(task, from_state="available", to_state="claimed", user_triggered=True, task_type_id=None):
        return StateChangeEvent(
            resource_type=ResourceType.TASK,
            resource_id=task.id,
            from_state=from_state,
            to_state=to_state,
            project_id=task.project_id,
            org_id=seed.org_id,
            user_id=seed.alice,
            user_triggered=user_triggered,
            task_type_id=task_type_id if task_type_id is not None else task.type_id,
            card_id=task.card_id,
        )

    return _task_event


@pytest.fixture
def card_task(seed):
    return lifecycle.create_task(
        seed.project_id, seed.type_id, "Parent", seed.alice, card_id=seed.card_id
    ).task


def tasks_created_by_rules(conn, exclude_id):
    return conn.execute(
        "SELECT * FROM tasks WHERE id != ? ORDER BY id", (exclude_id,)
    ).fetchall()


def test_same_event_twice_is_applied_then_suppressed(engine, make_rule, task_event, card_task, count_rows):
    rule_id = make_rule(templates=[FOLLOW_UP])
    event = task_event(card_task)

    assert engine.evaluate_rules(event) == [(rule_id, Applied(1))]
    assert engine.evaluate_rules(event) == [(rule_id, Suppressed("idempotent"))]

    assert count_rows("rule_executions") == 1
    assert count_rows("tasks") == 2


def test_not_user_triggered_event_is_ignored_without_touching_storage(
    engine, make_rule, task_event, card_task, count_rows, monkeypatch
):
    make_rule(templates=[FOLLOW_UP])
    event = task_event(card_task, user_triggered=False)

    opened = []
    real_get_connection = db.get_connection

    def tracking_get_connection():
        opened.append(1)
        return real_get_connection()

    monkeypatch.setattr(db, "get_connection", tracking_get_connection)
    assert engine.evaluate_rules(event) == []
    assert opened == []

    assert count_rows("rule_executions") == 0
    assert count_rows("tasks") == 1


def test_two_templates_create_two_tasks_inheriting_the_card(
    engine, make_rule, task_event, card_task, conn, seed
):
    rule_id = make_rule(templates=[FOLLOW_UP, ("Review {{father}}", "")])

    results = engine.evaluate_rules(task_event(card_task))

    assert results == [(rule_id, Applied(2))]
    created = tasks_created_by_rules(conn, card_task.id)
    assert [row["title"] for row in created] == [
        f"Follow up on [Task #{card_task.id}](/tasks/{card_task.id}) (available -> claimed)",
        f"Review [Task #{card_task.id}](/tasks/{card_task.id})",
    ]
    assert created[0]["description"] == "Raised by Alice in Apollo"
    assert created[1]["description"] is None
    assert {row["card_id"] for row in created} == {seed.card_id}
    assert {row["created_by"] for row in created} == {seed.alice}
    assert {row["status"] for row in created} == {"available"}
    assert {row["priority"] for row in created} == {2}

    executions = conn.execute("SELECT * FROM rule_executions").fetchall()
    assert len(executions) == 1
    assert executions[0]["outcome"] == "applied"
    assert executions[0]["created_count"] == 2
    assert executions[0]["origin_type"] == "task"
    assert executions[0]["origin_id"] == card_task.id


def test_templates_follow_execution_order(engine, make_rule, task_event, card_task, conn, seed):
    rule_id = make_rule(templates=[("first", None), ("second", None)])
    templates = task_factory.templates_for_rule(conn, rule_id)
    # move "first" behind "second"; re-attaching only updates the order
    db.attach_rule_template(conn, rule_id, templates[0].id, 5)

    engine.evaluate_rules(task_event(card_task))

    assert [row["title"] for row in tasks_created_by_rules(conn, card_task.id)] == ["second", "first"]


def test_rule_without_templates_is_applied_with_zero(engine, make_rule, task_event, card_task, conn):
    rule_id = make_rule()

    assert engine.evaluate_rules(task_event(card_task)) == [(rule_id, Applied(0))]
    row = conn.execute("SELECT outcome, created_count FROM rule_executions").fetchone()
    assert (row["outcome"], row["created_count"]) == ("applied", 0)


def test_no_matching_rule_is_an_empty_result(engine, make_rule, task_event, card_task, count_rows):
    make_rule(to_state="completed", templates=[FOLLOW_UP])

    assert engine.evaluate_rules(task_event(card_task)) == []
    assert count_rows("rule_executions") == 0


def test_matching_respects_activity_scope_and_task_type(engine, make_rule, task_event, card_task, seed):
    project_rule = make_rule()
    org_rule = make_rule(project_id=None)
    typed_rule = make_rule(task_type_id=seed.type_id)
    make_rule(task_type_id=seed.other_type_id)
    make_rule(project_id=seed.other_project_id)
    make_rule(org_id=seed.org_id + 1, project_id=None)
    make_rule(rule_active=False)
    make_rule(workflow_active=False)
    make_rule(resource_type="card")

    results = engine.evaluate_rules(task_event(card_task))

    # project-scoped workflows first, then org-wide
    assert [rule_id for rule_id, _ in results] == [project_rule, typed_rule, org_rule]


def test_event_without_task_type_matches_typed_rules(engine, make_rule, task_event, card_task, seed):
    typed_rule = make_rule(task_type_id=seed.other_type_id)
    event = replace(task_event(card_task), task_type_id=None)

    assert [rule_id for rule_id, _ in engine.evaluate_rules(event)] == [typed_rule]


def test_card_events_never_propagate_a_card(engine, make_rule, conn, seed):
    rule_id = make_rule(resource_type="card", to_state="cerrada", templates=[("Retro for {{father}}", None)])
    event = StateChangeEvent(
        resource_type=ResourceType.CARD,
        resource_id=seed.card_id,
        from_state="en_curso",
        to_state="cerrada",
        project_id=seed.project_id,
        org_id=seed.org_id,
        user_id=seed.bob,
        user_triggered=True,
        card_id=seed.card_id,
    )

    assert engine.evaluate_rules(event) == [(rule_id, Applied(1))]
    row = conn.execute("SELECT title, card_id, created_by FROM tasks").fetchone()
    assert row["title"] == f"Retro for [Card #{seed.card_id}](/cards/{seed.card_id})"
    assert row["card_id"] is None
    assert row["created_by"] == seed.bob


def test_each_rule_fires_once_per_resource(engine, make_rule, task_event, card_task, seed):
    first = make_rule()
    second = make_rule(project_id=None)
    event = task_event(card_task)

    assert engine.evaluate_rules(event) == [(first, Applied(0)), (second, Applied(0))]
    # a different resource is a fresh origin
    other = lifecycle.create_task(seed.project_id, seed.type_id, "Other", seed.alice).task
    assert engine.evaluate_rules(task_event(other)) == [(first, Applied(0)), (second, Applied(0))]
    assert engine.evaluate_rules(event) == [
        (first, Suppressed("idempotent")),
        (second, Suppressed("idempotent")),
    ]


def test_failing_template_does_not_block_the_others(engine, make_rule, task_event, card_task, conn, seed):
    rule_id = make_rule(templates=[FOLLOW_UP])
    broken = db.create_task_template(conn, seed.org_id, "Broken", seed.foreign_type_id, project_id=seed.project_id)
    db.attach_rule_template(conn, rule_id, broken, 0)
    empty_title = db.create_task_template(conn, seed.org_id, "", seed.type_id, project_id=seed.project_id)
    db.attach_rule_template(conn, rule_id, empty_title, 0)

    assert engine.evaluate_rules(task_event(card_task)) == [(rule_id, Applied(1))]
    assert len(tasks_created_by_rules(conn, card_task.id)) == 1


def test_losing_the_insert_race_is_suppressed_and_rolled_back(
    engine, make_rule, task_event, card_task, count_rows, monkeypatch
):
    rule_id = make_rule(templates=[FOLLOW_UP])
    event = task_event(card_task)
    engine.evaluate_rules(event)

    # simulate a concurrent evaluation that passed the read check
    monkeypatch.setattr(idempotency, "already_executed", lambda *args: False)

    assert engine.evaluate_rules(event) == [(rule_id, Suppressed("idempotent"))]
    assert count_rows("rule_executions") == 1
    assert count_rows("tasks") == 2


def test_storage_error_aborts_but_keeps_earlier_rules(
    engine, make_rule, task_event, card_task, count_rows, monkeypatch
):
    first = make_rule(templates=[FOLLOW_UP])
    make_rule(project_id=None, templates=[FOLLOW_UP])
    real_create = task_factory.create_tasks_for_rule

    def create_then_fail(conn, rule, event):
        if rule.id != first:
            raise sqlite3.OperationalError("database is locked")
        return real_create(conn, rule, event)

    monkeypatch.setattr(task_factory, "create_tasks_for_rule", create_then_fail)

    with pytest.raises(DbError):
        engine.evaluate_rules(task_event(card_task))

    assert count_rows("rule_executions") == 1
    assert count_rows("tasks") == 2


def test_storage_error_in_a_template_is_not_recorded_and_can_be_retried(
    engine, make_rule, task_event, card_task, conn, count_rows, monkeypatch
):
    rule_id = make_rule(templates=[FOLLOW_UP])
    event = task_event(card_task)
    real_insert = db.insert_task

    def failing_insert(*args, **kwargs):
        raise sqlite3.OperationalError("disk I/O error")

    monkeypatch.setattr(db, "insert_task", failing_insert)

    with pytest.raises(DbError):
        engine.evaluate_rules(event)

    assert count_rows("rule_executions") == 0
    assert count_rows("tasks") == 1

    monkeypatch.setattr(db, "insert_task", real_insert)

    assert engine.evaluate_rules(event) == [(rule_id, Applied(1))]
    assert len(tasks_created_by_rules(conn, card_task.id)) == 1


def test_rule_created_tasks_do_not_cascade(engine, make_rule, task_event, card_task, conn, seed):
    make_rule(to_state="available", templates=[FOLLOW_UP])
    engine.evaluate_rules(task_event(card_task, from_state=None, to_state="available"))

    child = tasks_created_by_rules(conn, card_task.id)[0]
    child_task = lifecycle.get_task(child["id"])
    event = task_event(child_task, from_state=None, to_state="available", user_triggered=False)

    assert engine.evaluate_rules(event) == []


def test_outcomes_are_logged_when_enabled(engine, make_rule, task_event, card_task, caplog):
    make_rule(templates=[FOLLOW_UP])
    event = task_event(card_task)

    with caplog.at_level(logging.INFO, logger="workflow_engine.rule_engine"):
        engine.evaluate_rules(event)
        engine.evaluate_rules(event)

    messages = [r.getMessage() for r in caplog.records if r.name == "workflow_engine.rule_engine"]
    assert any("applied" in m and "1 task(s)" in m for m in messages)
    assert any("suppressed" in m and "idempotent" in m for m in messages)


def test_config_from_env_only_carries_the_logging_toggle(monkeypatch):
    monkeypatch.setenv("RULE_ENGINE_LOG", " Yes ")
    assert EngineConfig.from_env() == EngineConfig(log_executions=True)
    assert [f.name for f in fields(EngineConfig)] == ["log_executions"]

    monkeypatch.delenv("RULE_ENGINE_LOG")
    assert EngineConfig.from_env() == EngineConfig()


def test_outcome_logging_is_off_by_default(make_rule, task_event, card_task, caplog):
    make_rule()

    with caplog.at_level(logging.INFO, logger="workflow_engine.rule_engine"):
        RuleEngine().evaluate_rules(task_event(card_task))

    assert [r for r in caplog.records if r.name == "workflow_engine.rule_engine"] == []


def test_listed_executions_carry_the_outcome_union(engine, make_rule, task_event, card_task, conn, seed):
    rule_id = make_rule(templates=[FOLLOW_UP])
    engine.evaluate_rules(task_event(card_task))
    other = lifecycle.create_task(seed.project_id, seed.type_id, "Other", seed.alice).task
    with db.transaction(conn):
        execution_log.log_execution(conn, rule_id, task_event(other), Suppressed("idempotent"))

    executions = execution_log.list_executions(rule_id)

    assert {e.origin_id: e.outcome for e in executions} == {
        card_task.id: Applied(1),
        other.id: Suppressed("idempotent"),
    }
    assert execution_log.count_executions(rule_id) == 2
