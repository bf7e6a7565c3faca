"""Reading comprehension flow: status → content → quiz → answers → completion.

There is no central state machine. Every step re-reads the caller's persisted
progress and checks its own precondition, so steps can be retried safely and
calls made out of order fail with a clear error instead of corrupting state.

Progress statuses for a reading chapter:

``available``/``locked``
    no progress row yet (derived from the previous chapter)
``reading``
    content has been fetched
``quiz``
    quiz questions have been fetched for the current attempt
``completed``
    an attempt passed the active ``reading_chapter`` approval rule
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, Dict, Optional

import db
from engines.approval import READING_CHAPTER, ApprovalEngine
from engines.lives import LivesEngine
from engines.progress import COMPLETED, annotate_statuses, new_progress, record_attempt
from errors import ChapterLocked, NotFound, PreconditionFailed, ValidationFailed

_LOGGER = logging.getLogger("elearn.reading")


def _normalize_answer(value: Any) -> str:
    return " ".join(str(value or "").split()).lower()


def _public_question(question: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": question["id"],
        "prompt": question["prompt"],
        "options": question["options"],
        "position": question["position"],
    }


class ReadingFlowEngine:
    def __init__(
        self,
        store: Any = db,
        *,
        lives: LivesEngine,
        approval: ApprovalEngine,
        practice: Any = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.lives = lives
        self.approval = approval
        self.practice = practice
        self._clock = clock or db.utcnow

    def _now_iso(self) -> str:
        return db.to_iso(self._clock())

    def _chapters(self, user_id: str) -> list[Dict[str, Any]]:
        progress = {row["unit_id"]: row for row in self.store.list_progress(user_id, READING_CHAPTER)}
        return annotate_statuses(self.store.list_reading_chapters(), progress)

    def _unlocked_chapter(self, user_id: str, chapter_id: str) -> Dict[str, Any]:
        for chapter in self._chapters(user_id):
            if chapter["id"] == chapter_id:
                if not chapter["unlocked"]:
                    raise ChapterLocked("complete the previous reading chapter first")
                return chapter
        raise NotFound("reading chapter not found")

    def _progress(self, user_id: str, chapter_id: str) -> Optional[Dict[str, Any]]:
        return self.store.get_progress(user_id, READING_CHAPTER, chapter_id)

    def _current_attempt(self, progress: Dict[str, Any]) -> int:
        return int(progress.get("attempts") or 0) + 1

    # ---------- steps ----------
    def get_chapters_status(self, user_id: str) -> Dict[str, Any]:
        chapters = self._chapters(user_id)
        return {
            "chapters": chapters,
            "total": len(chapters),
            "completed": sum(1 for chapter in chapters if chapter["status"] == COMPLETED),
        }

    def get_content(self, user_id: str, chapter_id: str) -> Dict[str, Any]:
        chapter = self._unlocked_chapter(user_id, chapter_id)
        content = self.store.get_reading_content(chapter_id)
        if content is None:
            raise NotFound("reading content not found")
        now = self._now_iso()
        progress = self._progress(user_id, chapter_id)
        if progress is None:
            progress = new_progress(user_id, READING_CHAPTER, chapter_id, "reading", now)
        if not progress.get("content_viewed_at"):
            progress["content_viewed_at"] = now
            progress["updated_at"] = now
            progress = self.store.save_progress(progress)
            _LOGGER.info("User %s started reading %s", user_id, chapter_id)
            if self.practice is not None:
                self.practice.record(
                    user_id,
                    "reading",
                    chapter_id,
                    details={"word_count": content["word_count"], "estimated_minutes": content["estimated_minutes"]},
                )
        chapter["status"] = progress["status"]
        return {"chapter": chapter, "content": content, "progress": progress}

    def get_quiz_questions(self, user_id: str, chapter_id: str) -> Dict[str, Any]:
        self._unlocked_chapter(user_id, chapter_id)
        progress = self._progress(user_id, chapter_id)
        if progress is None or not progress.get("content_viewed_at"):
            raise PreconditionFailed("read the chapter content before starting the quiz")
        questions = self.store.list_quiz_questions(chapter_id)
        if progress["status"] == COMPLETED:
            lives = self.lives.get_status(user_id)
        else:
            lives = self.lives.ensure_available(user_id)
            if progress["status"] != "quiz" or not progress.get("quiz_started_at"):
                now = self._now_iso()
                progress.update(status="quiz", quiz_started_at=now, updated_at=now)
                progress = self.store.save_progress(progress)
        attempt = self._current_attempt(progress)
        answered = [row["question_id"] for row in self.store.list_quiz_answers(user_id, chapter_id, attempt)]
        return {
            "chapter_id": chapter_id,
            "status": progress["status"],
            "attempt": attempt,
            "questions": [_public_question(question) for question in questions],
            "answered_question_ids": answered,
            "lives": lives.to_dict(),
        }

    def submit_quiz_answer(self, user_id: str, chapter_id: str, question_id: str, answer: Any) -> Dict[str, Any]:
        self._unlocked_chapter(user_id, chapter_id)
        question = self.store.get_quiz_question(question_id)
        if question is None or question["chapter_id"] != chapter_id:
            raise NotFound("question not found in this chapter")
        progress = self._progress(user_id, chapter_id)
        if progress is None or not progress.get("quiz_started_at"):
            raise PreconditionFailed("fetch the quiz questions before answering")
        if progress["status"] == COMPLETED:
            raise PreconditionFailed("chapter already completed")

        normalized = _normalize_answer(answer)
        if not normalized:
            raise ValidationFailed("answer is required")
        options = {_normalize_answer(option) for option in question["options"] or []}
        if options and normalized not in options:
            raise ValidationFailed("answer must be one of the options")

        self.lives.ensure_available(user_id)
        correct = normalized == _normalize_answer(question["correct_answer"])
        attempt = self._current_attempt(progress)
        # A wrong answer is only stored once its life has been paid for.
        lives = self.lives.get_status(user_id) if correct else self.lives.consume_life(user_id)
        self.store.record_quiz_answer(
            user_id, chapter_id, question_id, attempt, str(answer).strip(), correct, self._now_iso()
        )
        _LOGGER.debug("User %s answered %s (%s)", user_id, question_id, "correct" if correct else "wrong")
        return {
            "question_id": question_id,
            "attempt": attempt,
            "correct": correct,
            "correct_answer": question["correct_answer"],
            "explanation": question.get("explanation"),
            "lives": lives.to_dict(),
        }

    def complete_chapter(self, user_id: str, chapter_id: str) -> Dict[str, Any]:
        self._unlocked_chapter(user_id, chapter_id)
        progress = self._progress(user_id, chapter_id)
        if progress is None or not progress.get("quiz_started_at"):
            raise PreconditionFailed("take the quiz before completing the chapter")
        if progress["status"] == COMPLETED:
            raise PreconditionFailed("chapter already completed")

        attempt = self._current_attempt(progress)
        questions = self.store.list_quiz_questions(chapter_id)
        answers = {row["question_id"]: row for row in self.store.list_quiz_answers(user_id, chapter_id, attempt)}
        missing = [question["id"] for question in questions if question["id"] not in answers]
        if missing:
            raise PreconditionFailed(f"{len(missing)} question(s) still unanswered")

        total = len(questions)
        correct = sum(1 for question in questions if answers[question["id"]]["is_correct"])
        score = round(correct / total * 100, 2) if total else 100.0
        evaluation = self.approval.evaluate_for_subject(
            READING_CHAPTER,
            user_id,
            chapter_id,
            score,
            details={"attempt": attempt, "correct": correct, "total": total},
        )
        passed = evaluation["passed"]
        now = self._now_iso()
        record_attempt(progress, score, passed, now, evaluation_id=evaluation["id"])
        if passed:
            progress.update(status=COMPLETED, completed_at=now)
        else:
            # A failed attempt reopens the quiz; answers are tracked per attempt.
            progress.update(status="quiz", quiz_started_at=now)
        progress = self.store.save_progress(progress)
        if self.practice is not None:
            self.practice.record(
                user_id,
                "quiz",
                chapter_id,
                score=score,
                passed=passed,
                details={"attempt": attempt, "correct": correct, "total": total, "evaluation_id": evaluation["id"]},
            )

        next_chapter_id = None
        if passed:
            chapters = self._chapters(user_id)
            ids = [chapter["id"] for chapter in chapters]
            position = ids.index(chapter_id)
            if position + 1 < len(ids):
                next_chapter_id = ids[position + 1]
        _LOGGER.info(
            "User %s finished attempt %d of %s with %.1f%% (%s)",
            user_id,
            attempt,
            chapter_id,
            score,
            "passed" if passed else "failed",
        )
        return {
            "chapter_id": chapter_id,
            "attempt": attempt,
            "score": score,
            "correct": correct,
            "total": total,
            "passed": passed,
            "evaluation": evaluation,
            "progress": progress,
            "next_chapter_id": next_chapter_id,
        }
