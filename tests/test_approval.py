import math
import sqlite3

import pytest

import db
from engines.approval import READING_CHAPTER
from errors import Conflict, NotFound, ValidationFailed


@pytest.fixture
def rule(engines):
    return engines.approval.create_rule("essay-pass", "essay", 70, 100, description="Essay threshold", created_by="admin")


def test_default_rules_are_created_once(engines):
    rules = engines.approval.list_rules()
    assert {r["subject_type"] for r in rules} == {"reading_chapter", "interview_practice"}

    assert engines.approval.ensure_default_rules({READING_CHAPTER: 90}) == []
    assert engines.approval.get_active_rule(READING_CHAPTER)["min_score"] == 70


def test_score_above_threshold_passes(engines, rule):
    evaluation = engines.approval.evaluate(rule["id"], "alice", "essay-1", 72)

    assert evaluation["passed"] is True
    assert evaluation["threshold"] == 70
    assert evaluation["rule_version"] == 1
    assert evaluation["subject_type"] == "essay"


def test_score_equal_to_threshold_passes(engines, rule):
    assert engines.approval.evaluate(rule["id"], "alice", "essay-1", 70)["passed"] is True


def test_score_below_threshold_fails(engines, rule):
    assert engines.approval.evaluate(rule["id"], "alice", "essay-1", 69.99)["passed"] is False


@pytest.mark.parametrize("score", ["abc", None, math.nan, math.inf, -1, 100.5, True])
def test_malformed_scores_are_rejected(engines, rule, score):
    with pytest.raises(ValidationFailed):
        engines.approval.evaluate(rule["id"], "alice", "essay-1", score)
    assert db.list_approval_evaluations(rule_id=rule["id"]) == []


def test_empty_subject_id_is_rejected(engines, rule):
    with pytest.raises(ValidationFailed):
        engines.approval.evaluate(rule["id"], "alice", "  ", 80)


def test_unknown_rule_is_not_found(engines):
    with pytest.raises(NotFound):
        engines.approval.evaluate("missing", "alice", "essay-1", 80)


def test_create_rule_validates_bounds(engines):
    with pytest.raises(ValidationFailed):
        engines.approval.create_rule("bad", "essay", 120, 100)
    with pytest.raises(ValidationFailed):
        engines.approval.create_rule("bad", "essay", -5, 100)
    with pytest.raises(ValidationFailed):
        engines.approval.create_rule("", "essay", 50, 100)


def test_percentage_subjects_require_max_score_of_100(engines):
    for subject_type in ("reading_chapter", "interview_practice"):
        rule = engines.approval.get_active_rule(subject_type)
        with pytest.raises(ValidationFailed):
            engines.approval.replace_rule(rule["id"], max_score=10)
        assert engines.approval.get_active_rule(subject_type)["id"] == rule["id"]

    # Other subjects keep their own scale.
    essay = engines.approval.create_rule("essay-ten", "essay", 7, 10)
    assert engines.approval.evaluate(essay["id"], "alice", "essay-1", 10)["passed"] is True


def test_duplicate_active_rule_name_conflicts(engines, rule):
    with pytest.raises(Conflict):
        engines.approval.create_rule("essay-pass", "essay", 60)


def test_evaluations_are_append_only(engines, rule):
    evaluation = engines.approval.evaluate(rule["id"], "alice", "essay-1", 80)

    with pytest.raises(sqlite3.DatabaseError):
        db._exec("UPDATE approval_evaluations SET passed = 0 WHERE id = ?", (evaluation["id"],))
    with pytest.raises(sqlite3.DatabaseError):
        db._exec("DELETE FROM approval_evaluations WHERE id = ?", (evaluation["id"],))

    assert db.get_approval_evaluation(evaluation["id"])["passed"] is True


def test_rule_content_cannot_be_edited_in_place(engines, rule):
    with pytest.raises(sqlite3.DatabaseError):
        db._exec("UPDATE approval_rules SET min_score = 10 WHERE id = ?", (rule["id"],))


def test_replace_rule_creates_new_version(engines, rule):
    old_eval = engines.approval.evaluate(rule["id"], "alice", "essay-1", 75)

    successor = engines.approval.replace_rule(rule["id"], min_score=80, created_by="admin")

    assert successor["version"] == 2
    assert successor["supersedes_id"] == rule["id"]
    assert successor["min_score"] == 80
    assert successor["description"] == "Essay threshold"
    assert engines.approval.get_rule(rule["id"])["is_active"] is False
    assert engines.approval.get_active_rule("essay")["id"] == successor["id"]

    # History keeps the outcome recorded under the old version.
    stored = engines.approval.get_evaluation(old_eval["id"])
    assert stored["passed"] is True
    assert stored["rule_version"] == 1

    new_eval = engines.approval.evaluate_for_subject("essay", "alice", "essay-2", 75)
    assert new_eval["passed"] is False
    assert new_eval["rule_version"] == 2


def test_superseded_rule_cannot_be_replaced_or_used(engines, rule):
    engines.approval.replace_rule(rule["id"], min_score=80)

    with pytest.raises(Conflict):
        engines.approval.replace_rule(rule["id"], min_score=90)
    with pytest.raises(Conflict):
        engines.approval.evaluate(rule["id"], "alice", "essay-1", 90)


def test_replace_rule_rejects_unknown_fields(engines, rule):
    with pytest.raises(ValidationFailed):
        engines.approval.replace_rule(rule["id"], name="renamed")


def test_superseded_rule_cannot_be_reactivated(engines, rule):
    engines.approval.replace_rule(rule["id"], min_score=80)

    with pytest.raises(sqlite3.DatabaseError):
        db._exec("UPDATE approval_rules SET is_active = 1 WHERE id = ?", (rule["id"],))


def test_metrics_are_recomputed_from_evaluations(engines, rule):
    for user, score in (("a", 90), ("b", 70), ("c", 40), ("d", 55)):
        engines.approval.evaluate(rule["id"], user, "essay-1", score)

    metrics = engines.approval.get_metrics(rule["id"])

    assert metrics["total"] == 4
    assert metrics["passed"] == 2
    assert metrics["failed"] == 2
    assert metrics["pass_rate"] == 0.5
    assert metrics["average_score"] == 63.75
    assert metrics["lowest_score"] == 40
    assert metrics["highest_score"] == 90
    assert metrics["rule_name"] == "essay-pass"

    engines.approval.evaluate(rule["id"], "e", "essay-1", 100)
    assert engines.approval.get_metrics(rule["id"])["total"] == 5
    assert db.get_approval_metrics(rule["id"])["total"] == 5


def test_metrics_for_rule_without_evaluations(engines, rule):
    metrics = engines.approval.get_metrics(rule["id"])

    assert metrics["total"] == 0
    assert metrics["pass_rate"] is None
    assert metrics["average_score"] is None


def test_list_evaluations_filters_by_user(engines, rule):
    engines.approval.evaluate(rule["id"], "alice", "essay-1", 80)
    engines.approval.evaluate(rule["id"], "bob", "essay-1", 60)

    alice = engines.approval.list_evaluations(user_id="alice")
    assert [item["user_id"] for item in alice] == ["alice"]
    assert len(engines.approval.list_evaluations(rule_id=rule["id"])) == 2


def test_details_are_persisted(engines, rule):
    evaluation = engines.approval.evaluate(rule["id"], "alice", "essay-1", 80, details={"words": 250})

    assert engines.approval.get_evaluation(evaluation["id"])["details"] == {"words": 250}
