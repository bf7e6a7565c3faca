"""Approval rules, append-only evaluations and derived metrics.

A rule is a named threshold for one subject type (``reading_chapter``,
``interview_practice`` ...). Rules are never edited: a change inserts a new
version that supersedes the old one. Evaluations record the outcome of one
submission against one rule version and are never modified afterwards; the
database rejects updates and deletes. Metrics are recomputed from evaluations
whenever they are read.
"""

from __future__ import annotations

import logging
import math
import uuid
from datetime import datetime
from typing import Any, Callable, Dict, Mapping, Optional

import db
from errors import Conflict, NotFound, ValidationFailed

_LOGGER = logging.getLogger("elearn.approval")

READING_CHAPTER = "reading_chapter"
INTERVIEW_PRACTICE = "interview_practice"

DEFAULT_RULES: Dict[str, Dict[str, Any]] = {
    READING_CHAPTER: {
        "name": "reading-chapter-pass",
        "description": "Minimum quiz percentage required to complete a reading chapter.",
    },
    INTERVIEW_PRACTICE: {
        "name": "interview-practice-pass",
        "description": "Minimum overall score for an interview practice session to count as passed.",
    },
}

_REPLACEABLE_FIELDS = {"min_score", "max_score", "description", "subject_type"}

# Subjects graded as a 0-100 percentage.
PERCENTAGE_SUBJECTS = frozenset({READING_CHAPTER, INTERVIEW_PRACTICE})


def _clean_text(value: Any, field: str) -> str:
    text = str(value or "").strip()
    if not text:
        raise ValidationFailed(f"{field} is required")
    return text


def _coerce_score(value: Any, field: str) -> float:
    if isinstance(value, bool):
        raise ValidationFailed(f"{field} must be a number")
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ValidationFailed(f"{field} must be a number") from None
    if not math.isfinite(number):
        raise ValidationFailed(f"{field} must be a finite number")
    return number


def _validate_bounds(subject_type: str, min_score: float, max_score: float) -> None:
    if max_score <= 0:
        raise ValidationFailed("max_score must be positive")
    if subject_type in PERCENTAGE_SUBJECTS and max_score != 100:
        raise ValidationFailed(f"{subject_type} rules are graded out of 100")
    if min_score < 0 or min_score > max_score:
        raise ValidationFailed("min_score must be between 0 and max_score")


class ApprovalEngine:
    def __init__(self, store: Any = db, *, clock: Optional[Callable[[], datetime]] = None):
        self.store = store
        self._clock = clock or db.utcnow

    def _now_iso(self) -> str:
        return db.to_iso(self._clock())

    # ---------- rules ----------
    def create_rule(
        self,
        name: str,
        subject_type: str,
        min_score: Any,
        max_score: Any = 100,
        *,
        description: Optional[str] = None,
        created_by: Optional[str] = None,
    ) -> Dict[str, Any]:
        name = _clean_text(name, "name")
        subject_type = _clean_text(subject_type, "subject_type")
        low = _coerce_score(min_score, "min_score")
        high = _coerce_score(max_score, "max_score")
        _validate_bounds(subject_type, low, high)
        if self.store.find_active_approval_rule_by_name(name):
            raise Conflict(f"an active rule named '{name}' already exists; replace it instead")
        rule = self.store.insert_approval_rule(
            {
                "id": str(uuid.uuid4()),
                "name": name,
                "subject_type": subject_type,
                "version": 1,
                "min_score": low,
                "max_score": high,
                "description": description,
                "is_active": True,
                "supersedes_id": None,
                "created_by": created_by,
                "created_at": self._now_iso(),
            }
        )
        _LOGGER.info("Created approval rule %s (%s >= %s)", rule["name"], subject_type, low)
        return rule

    def replace_rule(self, rule_id: str, *, created_by: Optional[str] = None, **changes: Any) -> Dict[str, Any]:
        """Supersede ``rule_id`` with a new version carrying ``changes``."""
        unknown = set(changes) - _REPLACEABLE_FIELDS
        if unknown:
            raise ValidationFailed(f"cannot change {', '.join(sorted(unknown))}")
        current = self.get_rule(rule_id)
        if not current["is_active"]:
            raise Conflict("rule has already been superseded")
        merged = {key: current[key] for key in _REPLACEABLE_FIELDS}
        merged.update({key: value for key, value in changes.items() if value is not None})
        subject_type = _clean_text(merged["subject_type"], "subject_type")
        low = _coerce_score(merged["min_score"], "min_score")
        high = _coerce_score(merged["max_score"], "max_score")
        _validate_bounds(subject_type, low, high)
        successor = {
            "id": str(uuid.uuid4()),
            "name": current["name"],
            "subject_type": subject_type,
            "version": int(current["version"]) + 1,
            "min_score": low,
            "max_score": high,
            "description": merged.get("description"),
            "is_active": True,
            "supersedes_id": current["id"],
            "created_by": created_by,
            "created_at": self._now_iso(),
        }
        try:
            rule = self.store.replace_approval_rule(current["id"], successor)
        except ValueError:
            raise Conflict("rule has already been superseded") from None
        _LOGGER.info("Replaced approval rule %s v%s -> v%s", rule["name"], current["version"], rule["version"])
        return rule

    def get_rule(self, rule_id: str) -> Dict[str, Any]:
        rule = self.store.get_approval_rule(rule_id)
        if rule is None:
            raise NotFound("approval rule not found")
        return rule

    def get_active_rule(self, subject_type: str) -> Dict[str, Any]:
        rule = self.store.get_active_approval_rule(subject_type)
        if rule is None:
            raise NotFound(f"no active approval rule for '{subject_type}'")
        return rule

    def list_rules(self, subject_type: Optional[str] = None, *, include_inactive: bool = False) -> list[Dict[str, Any]]:
        return self.store.list_approval_rules(subject_type, include_inactive)

    def ensure_default_rules(self, thresholds: Mapping[str, float]) -> list[Dict[str, Any]]:
        """Create the built-in rule for each subject type that has no active rule."""
        created = []
        for subject_type, threshold in thresholds.items():
            if self.store.get_active_approval_rule(subject_type) is not None:
                continue
            template = DEFAULT_RULES.get(subject_type, {"name": f"{subject_type}-pass", "description": None})
            created.append(
                self.create_rule(
                    template["name"],
                    subject_type,
                    threshold,
                    100,
                    description=template["description"],
                    created_by="system",
                )
            )
        return created

    # ---------- evaluations ----------
    def evaluate(
        self,
        rule_id: str,
        user_id: str,
        subject_id: Any,
        score: Any,
        *,
        details: Optional[Mapping[str, Any]] = None,
    ) -> Dict[str, Any]:
        rule = self.get_rule(rule_id)
        if not rule["is_active"]:
            raise Conflict("rule has been superseded; evaluate against the current version")
        return self._record(rule, user_id, subject_id, score, details)

    def evaluate_for_subject(
        self,
        subject_type: str,
        user_id: str,
        subject_id: Any,
        score: Any,
        *,
        details: Optional[Mapping[str, Any]] = None,
    ) -> Dict[str, Any]:
        rule = self.get_active_rule(subject_type)
        return self._record(rule, user_id, subject_id, score, details)

    def _record(
        self,
        rule: Mapping[str, Any],
        user_id: str,
        subject_id: Any,
        score: Any,
        details: Optional[Mapping[str, Any]],
    ) -> Dict[str, Any]:
        user_id = _clean_text(user_id, "user_id")
        subject_id = _clean_text(subject_id, "subject_id")
        value = _coerce_score(score, "score")
        if value < 0 or value > float(rule["max_score"]):
            raise ValidationFailed(f"score must be between 0 and {rule['max_score']:g}")
        if details is not None and not isinstance(details, Mapping):
            raise ValidationFailed("details must be an object")
        threshold = float(rule["min_score"])
        passed = value >= threshold
        evaluation = self.store.insert_approval_evaluation(
            {
                "id": str(uuid.uuid4()),
                "rule_id": rule["id"],
                "rule_version": rule["version"],
                "user_id": user_id,
                "subject_type": rule["subject_type"],
                "subject_id": subject_id,
                "score": value,
                "threshold": threshold,
                "passed": passed,
                "details": dict(details or {}),
                "created_at": self._now_iso(),
            }
        )
        _LOGGER.info(
            "Evaluated %s/%s for %s: %.2f vs %.2f -> %s",
            rule["subject_type"],
            subject_id,
            user_id,
            value,
            threshold,
            "pass" if passed else "fail",
        )
        return evaluation

    def get_evaluation(self, evaluation_id: str) -> Dict[str, Any]:
        evaluation = self.store.get_approval_evaluation(evaluation_id)
        if evaluation is None:
            raise NotFound("approval evaluation not found")
        return evaluation

    def list_evaluations(
        self,
        *,
        rule_id: Optional[str] = None,
        user_id: Optional[str] = None,
        subject_type: Optional[str] = None,
        subject_id: Optional[str] = None,
        limit: int = 100,
    ) -> list[Dict[str, Any]]:
        return self.store.list_approval_evaluations(
            rule_id=rule_id,
            user_id=user_id,
            subject_type=subject_type,
            subject_id=subject_id,
            limit=max(1, min(int(limit), 500)),
        )

    # ---------- metrics ----------
    def get_metrics(self, rule_id: str) -> Dict[str, Any]:
        rule = self.get_rule(rule_id)
        aggregate = self.store.aggregate_approval_evaluations(rule["id"])
        total = int(aggregate["total"] or 0)
        passed = int(aggregate["passed"] or 0)
        average = aggregate["average_score"]
        snapshot = self.store.save_approval_metrics(
            {
                "rule_id": rule["id"],
                "total": total,
                "passed": passed,
                "failed": total - passed,
                "pass_rate": round(passed / total, 4) if total else None,
                "average_score": round(float(average), 2) if average is not None else None,
                "lowest_score": aggregate["lowest_score"],
                "highest_score": aggregate["highest_score"],
                "last_evaluated_at": aggregate["last_evaluated_at"],
                "computed_at": self._now_iso(),
            }
        )
        snapshot["rule_name"] = rule["name"]
        snapshot["rule_version"] = rule["version"]
        snapshot["subject_type"] = rule["subject_type"]
        return snapshot

    def list_metrics(self, subject_type: Optional[str] = None) -> list[Dict[str, Any]]:
        rules = self.store.list_approval_rules(subject_type, True)
        return [self.get_metrics(rule["id"]) for rule in rules]
