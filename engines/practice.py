"""Practice history: one record per vocabulary, reading or quiz session.

The reading and progress engines write a record as a side effect of their own
steps. Records are only read back for history and per-type summaries; the
progress rows stay the source of truth for unlocking.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Any, Callable, Dict, Mapping, Optional

import db
from errors import ValidationFailed

_LOGGER = logging.getLogger("elearn.practice")

VOCABULARY = "vocabulary"
QUIZ = "quiz"
READING = "reading"
PRACTICE_TYPES = (VOCABULARY, QUIZ, READING)


def _check_type(practice_type: Optional[str]) -> Optional[str]:
    if practice_type is not None and practice_type not in PRACTICE_TYPES:
        raise ValidationFailed(f"practice_type must be one of {', '.join(PRACTICE_TYPES)}")
    return practice_type


class PracticeLog:
    def __init__(self, store: Any = db, *, clock: Optional[Callable[[], datetime]] = None):
        self.store = store
        self._clock = clock or db.utcnow

    def record(
        self,
        user_id: str,
        practice_type: str,
        unit_id: str,
        *,
        score: Optional[float] = None,
        passed: Optional[bool] = None,
        details: Optional[Mapping[str, Any]] = None,
    ) -> Dict[str, Any]:
        _check_type(practice_type)
        session = self.store.insert_practice_session(
            {
                "id": str(uuid.uuid4()),
                "user_id": user_id,
                "practice_type": practice_type,
                "unit_id": unit_id,
                "score": score,
                "passed": passed,
                "details": dict(details or {}),
                "created_at": db.to_iso(self._clock()),
            }
        )
        _LOGGER.debug("Recorded %s practice on %s for %s", practice_type, unit_id, user_id)
        return session

    def list_history(
        self,
        user_id: str,
        practice_type: Optional[str] = None,
        *,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Dict[str, Any]]:
        _check_type(practice_type)
        return self.store.list_practice_sessions(user_id, practice_type, limit=limit, offset=offset)

    def get_summary(self, user_id: str) -> Dict[str, Any]:
        rows = {row["practice_type"]: row for row in self.store.summarize_practice_sessions(user_id)}
        by_type = {}
        for practice_type in PRACTICE_TYPES:
            row = rows.get(practice_type)
            average = row["average_score"] if row else None
            by_type[practice_type] = {
                "total": int(row["total"]) if row else 0,
                "passed": int(row["passed"]) if row else 0,
                "average_score": round(float(average), 2) if average is not None else None,
                "last_practiced_at": row["last_practiced_at"] if row else None,
            }
        return {
            "user_id": user_id,
            "total": sum(entry["total"] for entry in by_type.values()),
            "by_type": by_type,
        }
