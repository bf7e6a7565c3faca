"""Vocabulary chapters and per-user progress.

Chapters unlock in order: the first chapter is always open and every later
chapter opens once the one before it is completed. The same rule is shared
with the reading flow through :func:`annotate_statuses`.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, Mapping, Optional

import db
from errors import ChapterLocked, NotFound, ValidationFailed

_LOGGER = logging.getLogger("elearn.progress")

VOCABULARY_CHAPTER = "chapter"
COMPLETED = "completed"


def new_progress(user_id: str, unit_type: str, unit_id: str, status: str, now_iso: str) -> Dict[str, Any]:
    return {
        "user_id": user_id,
        "unit_type": unit_type,
        "unit_id": unit_id,
        "status": status,
        "score": None,
        "best_score": None,
        "attempts": 0,
        "score_history": [],
        "started_at": now_iso,
        "content_viewed_at": None,
        "quiz_started_at": None,
        "completed_at": None,
        "updated_at": now_iso,
    }


def annotate_statuses(
    units: Iterable[Mapping[str, Any]],
    progress: Mapping[str, Mapping[str, Any]],
) -> list[Dict[str, Any]]:
    """Attach ``status``/``unlocked``/``best_score``/``attempts`` to ordered units."""
    annotated: list[Dict[str, Any]] = []
    previous_completed = True
    for unit in units:
        item = dict(unit)
        record = progress.get(item["id"])
        unlocked = previous_completed or record is not None
        if record is not None:
            status = record["status"]
        else:
            status = "available" if unlocked else "locked"
        item["status"] = status
        item["unlocked"] = unlocked
        item["best_score"] = record.get("best_score") if record else None
        item["attempts"] = int(record.get("attempts") or 0) if record else 0
        item["completed_at"] = record.get("completed_at") if record else None
        annotated.append(item)
        previous_completed = status == COMPLETED
    return annotated


def record_attempt(progress: Dict[str, Any], score: float, passed: bool, now_iso: str, **extra: Any) -> Dict[str, Any]:
    """Append one graded attempt to ``progress`` in place."""
    attempt = int(progress.get("attempts") or 0) + 1
    history = list(progress.get("score_history") or [])
    entry = {"attempt": attempt, "score": score, "passed": passed, "evaluated_at": now_iso}
    entry.update(extra)
    history.append(entry)
    best = progress.get("best_score")
    progress.update(
        attempts=attempt,
        score=score,
        best_score=score if best is None else max(float(best), score),
        score_history=history,
        updated_at=now_iso,
    )
    return progress


class ProgressEngine:
    def __init__(
        self,
        store: Any = db,
        *,
        lives: Any = None,
        practice: Any = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.lives = lives
        self.practice = practice
        self._clock = clock or db.utcnow

    def _now_iso(self) -> str:
        return db.to_iso(self._clock())

    def _progress_map(self, user_id: str, unit_type: str) -> Dict[str, Dict[str, Any]]:
        return {row["unit_id"]: row for row in self.store.list_progress(user_id, unit_type)}

    def list_chapters(self, user_id: str) -> list[Dict[str, Any]]:
        return annotate_statuses(self.store.list_chapters(), self._progress_map(user_id, VOCABULARY_CHAPTER))

    def _require_unlocked(self, user_id: str, chapter_id: str) -> Dict[str, Any]:
        for chapter in self.list_chapters(user_id):
            if chapter["id"] == chapter_id:
                if not chapter["unlocked"]:
                    raise ChapterLocked("complete the previous chapter first")
                return chapter
        raise NotFound("chapter not found")

    def get_chapter(self, user_id: str, chapter_id: str) -> Dict[str, Any]:
        chapter = self._require_unlocked(user_id, chapter_id)
        progress = self.store.get_progress(user_id, VOCABULARY_CHAPTER, chapter_id)
        if progress is None:
            now = self._now_iso()
            progress = new_progress(user_id, VOCABULARY_CHAPTER, chapter_id, "in_progress", now)
            progress["content_viewed_at"] = now
            progress = self.store.save_progress(progress)
            chapter["status"] = progress["status"]
        chapter["vocabulary"] = self.store.list_vocabulary(chapter_id)
        return chapter

    def complete_chapter(self, user_id: str, chapter_id: str, score: Optional[float] = None) -> Dict[str, Any]:
        self._require_unlocked(user_id, chapter_id)
        if score is not None and not 0 <= float(score) <= 100:
            raise ValidationFailed("score must be between 0 and 100")
        now = self._now_iso()
        progress = self.store.get_progress(user_id, VOCABULARY_CHAPTER, chapter_id)
        if progress is None:
            progress = new_progress(user_id, VOCABULARY_CHAPTER, chapter_id, "in_progress", now)
        value = 100.0 if score is None else round(float(score), 2)
        record_attempt(progress, value, True, now)
        if progress["status"] != COMPLETED:
            progress["status"] = COMPLETED
            progress["completed_at"] = now
        saved = self.store.save_progress(progress)
        if self.practice is not None:
            self.practice.record(
                user_id, "vocabulary", chapter_id, score=value, passed=True, details={"attempt": saved["attempts"]}
            )
        _LOGGER.info("User %s completed vocabulary chapter %s (%.1f)", user_id, chapter_id, value)
        return saved

    def get_summary(self, user_id: str) -> Dict[str, Any]:
        records = self.store.list_progress(user_id)
        summary: Dict[str, Any] = {"user_id": user_id, "units": {}}
        totals = {
            VOCABULARY_CHAPTER: len(self.store.list_chapters()),
            "reading_chapter": len(self.store.list_reading_chapters()),
        }
        best_scores = []
        for unit_type, total in totals.items():
            rows = [row for row in records if row["unit_type"] == unit_type]
            completed = sum(1 for row in rows if row["status"] == COMPLETED)
            summary["units"][unit_type] = {
                "total": total,
                "started": len(rows),
                "completed": completed,
            }
            best_scores.extend(float(row["best_score"]) for row in rows if row.get("best_score") is not None)
        summary["average_best_score"] = round(sum(best_scores) / len(best_scores), 2) if best_scores else None
        if self.lives is not None:
            summary["lives"] = self.lives.get_status(user_id).to_dict()
        return summary
