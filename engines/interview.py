"""Interview practice sessions with rule-based scoring.

Answers are scored offline from the transcript: fluency, grammar, vocabulary,
confidence and completeness on a 0-100 scale. Pronunciation needs audio and is
left empty. The overall score is graded by the active ``interview_practice``
approval rule.
"""

from __future__ import annotations

import logging
import re
import uuid
from datetime import datetime, timedelta
from statistics import mean
from typing import Any, Callable, Dict, Iterable, Optional, Sequence

import db
from content import interview_questions_for
from engines.approval import INTERVIEW_PRACTICE, ApprovalEngine
from errors import Conflict, Forbidden, NotFound, PreconditionFailed, ValidationFailed

_LOGGER = logging.getLogger("elearn.interview")

INTERVIEW_TYPES = ("job", "academic", "visa", "general")
DIFFICULTIES = ("beginner", "intermediate", "advanced")
SPEAKERS = ("interviewer", "candidate")
TIMEFRAMES: Dict[str, Optional[int]] = {"7d": 7, "30d": 30, "90d": 90, "all": None}
SCORE_FIELDS = (
    "fluency_score",
    "grammar_score",
    "vocabulary_score",
    "confidence_score",
    "completeness_score",
)

_WORD_RE = re.compile(r"[A-Za-z']+")
_SENTENCE_RE = re.compile(r"[^.!?]+[.!?]?")
_FILLERS = {"um", "uh", "er", "erm", "hmm", "like", "basically", "literally"}
_HEDGES = ("i think", "i guess", "maybe", "probably", "not sure", "kind of", "sort of")

_STRENGTHS = {
    "fluency_score": "Answers are developed and flow well.",
    "grammar_score": "Sentences are well formed.",
    "vocabulary_score": "Uses a varied vocabulary.",
    "confidence_score": "Speaks with confidence and few fillers.",
    "completeness_score": "Answered all of the questions.",
}
_AREAS = {
    "fluency_score": "Give longer, more developed answers.",
    "grammar_score": "Build complete sentences that start with a capital letter.",
    "vocabulary_score": "Avoid repeating the same words.",
    "confidence_score": "Reduce filler words and hedging phrases.",
    "completeness_score": "Answer every question in the session.",
}
_RECOMMENDATIONS = {
    "fluency_score": "Practise answering with the STAR method: situation, task, action, result.",
    "grammar_score": "Review sentence structure in the grammar chapters and read answers aloud before sending.",
    "vocabulary_score": "Study the workplace vocabulary chapter and use two new words per answer.",
    "confidence_score": "Record yourself and replace 'um' or 'I think' with a short pause.",
    "completeness_score": "Finish the remaining questions before requesting an evaluation.",
}


def _words(text: str) -> list[str]:
    return _WORD_RE.findall(text or "")


def _clamp(value: float) -> float:
    return round(max(0.0, min(100.0, value)), 1)


def _filler_count(words: Sequence[str]) -> int:
    return sum(1 for word in words if word.lower() in _FILLERS)


def response_quality(answer: str) -> str:
    words = _words(answer)
    if not words:
        return "poor"
    filler_ratio = _filler_count(words) / len(words)
    if len(words) >= 40 and filler_ratio < 0.05:
        return "excellent"
    if len(words) >= 20 and filler_ratio < 0.1:
        return "good"
    if len(words) >= 8:
        return "fair"
    return "poor"


def score_transcript(answers: Iterable[str], question_count: int) -> Dict[str, Optional[float]]:
    """Score a list of candidate answers on each dimension (0-100)."""
    texts = [text for text in answers if text and text.strip()]
    words = [word for text in texts for word in _words(text)]
    lowered = [word.lower() for word in words]
    total = len(words)
    filler_ratio = _filler_count(words) / total if total else 0.0

    average_length = total / len(texts) if texts else 0.0
    fluency = min(100.0, average_length / 40 * 100) * (1 - min(filler_ratio * 2, 0.5))

    sentences = [s.strip() for text in texts for s in _SENTENCE_RE.findall(text) if s.strip()]
    well_formed = sum(1 for s in sentences if s[0].isupper() and len(_words(s)) >= 3)
    lowercase_i = sum(1 for word in words if word == "i")
    grammar = (well_formed / len(sentences) * 100 if sentences else 0.0) - 5 * lowercase_i

    if total:
        type_token = len(set(lowered)) / total
        long_ratio = sum(1 for word in lowered if len(word) >= 7) / total
        vocabulary = type_token * 80 * min(1.0, total / 30) + long_ratio * 100
    else:
        vocabulary = 0.0

    joined = " ".join(text.lower() for text in texts)
    hedges = sum(joined.count(phrase) for phrase in _HEDGES)
    confidence = (100 - filler_ratio * 400 - hedges * 5) if total else 0.0

    completeness = len(texts) / question_count * 100 if question_count else 0.0

    scores: Dict[str, Optional[float]] = {
        "fluency_score": _clamp(fluency),
        "grammar_score": _clamp(grammar),
        "vocabulary_score": _clamp(vocabulary),
        "confidence_score": _clamp(confidence),
        "completeness_score": _clamp(completeness),
        "pronunciation_score": None,
    }
    scores["overall_score"] = round(mean(scores[field] for field in SCORE_FIELDS), 1)
    return scores


def _summarize(session: Dict[str, Any]) -> Dict[str, Any]:
    item = dict(session)
    item["question_count"] = len(session.get("questions") or [])
    item["answered_count"] = len(session.get("answers") or [])
    return item


class InterviewPracticeEngine:
    def __init__(
        self,
        store: Any = db,
        *,
        approval: ApprovalEngine,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.approval = approval
        self._clock = clock or db.utcnow

    def _now(self) -> datetime:
        return db._coerce_to_utc(self._clock())

    def _owned(self, user_id: str, session_id: str) -> Dict[str, Any]:
        session = self.store.get_interview_session(session_id)
        if session is None:
            raise NotFound("practice session not found")
        if session["user_id"] != user_id:
            raise Forbidden("practice session belongs to another user")
        return session

    def _open(self, user_id: str, session_id: str) -> Dict[str, Any]:
        session = self._owned(user_id, session_id)
        if session["status"] == "completed":
            raise Conflict("practice session is already completed")
        return session

    def create_session(
        self,
        user_id: str,
        interview_type: str = "general",
        *,
        title: Optional[str] = None,
        difficulty: str = "intermediate",
        questions: Optional[Sequence[str]] = None,
    ) -> Dict[str, Any]:
        if interview_type not in INTERVIEW_TYPES:
            raise ValidationFailed(f"interview_type must be one of {', '.join(INTERVIEW_TYPES)}")
        if difficulty not in DIFFICULTIES:
            raise ValidationFailed(f"difficulty must be one of {', '.join(DIFFICULTIES)}")
        question_list = [q.strip() for q in (questions or []) if q and q.strip()]
        if not question_list:
            question_list = interview_questions_for(interview_type)
        now = db.to_iso(self._now())
        session = self.store.insert_interview_session(
            {
                "id": str(uuid.uuid4()),
                "user_id": user_id,
                "interview_type": interview_type,
                "title": (title or "").strip() or f"{interview_type.title()} interview practice",
                "difficulty": difficulty,
                "status": "in_progress",
                "questions": question_list,
                "answers": [],
                "conversation": [],
                "notes": None,
                "created_at": now,
                "updated_at": now,
            }
        )
        _LOGGER.info("Created %s interview practice %s for %s", interview_type, session["id"], user_id)
        return _summarize(session)

    def get_session(self, user_id: str, session_id: str) -> Dict[str, Any]:
        return _summarize(self._owned(user_id, session_id))

    def update_session(
        self,
        user_id: str,
        session_id: str,
        *,
        title: Optional[str] = None,
        notes: Optional[str] = None,
        difficulty: Optional[str] = None,
    ) -> Dict[str, Any]:
        session = self._open(user_id, session_id)
        if difficulty is not None:
            if difficulty not in DIFFICULTIES:
                raise ValidationFailed(f"difficulty must be one of {', '.join(DIFFICULTIES)}")
            session["difficulty"] = difficulty
        if title is not None:
            if not title.strip():
                raise ValidationFailed("title cannot be empty")
            session["title"] = title.strip()
        if notes is not None:
            session["notes"] = notes
        session["updated_at"] = db.to_iso(self._now())
        return _summarize(self.store.save_interview_session(session))

    def answer_question(
        self,
        user_id: str,
        session_id: str,
        question_index: int,
        answer: str,
        *,
        duration_seconds: Optional[float] = None,
    ) -> Dict[str, Any]:
        session = self._open(user_id, session_id)
        questions = session.get("questions") or []
        if not 0 <= question_index < len(questions):
            raise ValidationFailed(f"question_index must be between 0 and {len(questions) - 1}")
        text = (answer or "").strip()
        if not text:
            raise ValidationFailed("answer is required")
        if duration_seconds is not None and duration_seconds < 0:
            raise ValidationFailed("duration_seconds cannot be negative")
        now = db.to_iso(self._now())
        entry = {
            "question_index": question_index,
            "question": questions[question_index],
            "answer": text,
            "word_count": len(_words(text)),
            "duration_seconds": duration_seconds,
            "response_quality": response_quality(text),
            "answered_at": now,
        }
        answers = [item for item in session.get("answers") or [] if item.get("question_index") != question_index]
        answers.append(entry)
        answers.sort(key=lambda item: item["question_index"])
        session.update(answers=answers, updated_at=now)
        return _summarize(self.store.save_interview_session(session))

    def update_conversation(self, user_id: str, session_id: str, turns: Sequence[Dict[str, Any]]) -> Dict[str, Any]:
        session = self._open(user_id, session_id)
        if not turns:
            raise ValidationFailed("at least one conversation turn is required")
        now = db.to_iso(self._now())
        conversation = list(session.get("conversation") or [])
        for turn in turns:
            speaker = str(turn.get("speaker") or "").strip().lower()
            text = str(turn.get("text") or "").strip()
            if speaker not in SPEAKERS:
                raise ValidationFailed(f"speaker must be one of {', '.join(SPEAKERS)}")
            if not text:
                raise ValidationFailed("conversation text cannot be empty")
            conversation.append({"speaker": speaker, "text": text, "at": now})
        session.update(conversation=conversation, updated_at=now)
        return _summarize(self.store.save_interview_session(session))

    def evaluate(self, user_id: str, session_id: str) -> Dict[str, Any]:
        session = self._open(user_id, session_id)
        answers = session.get("answers") or []
        if not answers:
            raise PreconditionFailed("answer at least one question before requesting an evaluation")
        scores = score_transcript([item["answer"] for item in answers], len(session.get("questions") or []))
        approval = self.approval.evaluate_for_subject(
            INTERVIEW_PRACTICE,
            user_id,
            session_id,
            scores["overall_score"],
            details={field: scores[field] for field in SCORE_FIELDS},
        )
        strengths = [_STRENGTHS[field] for field in SCORE_FIELDS if scores[field] >= 75]
        weak = [field for field in SCORE_FIELDS if scores[field] < 60]
        recommendations = [_RECOMMENDATIONS[field] for field in weak] or [
            "Try the next difficulty level to keep improving."
        ]
        now = db.to_iso(self._now())
        evaluation = {
            "approval_evaluation_id": approval["id"],
            "passed": approval["passed"],
            "threshold": approval["threshold"],
            "strengths": strengths,
            "areas_for_improvement": [_AREAS[field] for field in weak],
            "recommendations": recommendations,
            "evaluated_at": now,
        }
        session.update(scores)
        session.update(evaluation=evaluation, status="completed", completed_at=now, updated_at=now)
        saved = self.store.save_interview_session(session)
        _LOGGER.info(
            "Evaluated interview practice %s for %s: %.1f (%s)",
            session_id,
            user_id,
            scores["overall_score"],
            "passed" if approval["passed"] else "failed",
        )
        return {"session_id": session_id, **scores, **evaluation, "session": _summarize(saved)}

    def list_sessions(
        self,
        user_id: str,
        *,
        interview_type: Optional[str] = None,
        completed: Optional[bool] = None,
        min_score: Optional[float] = None,
        limit: int = 10,
        offset: int = 0,
    ) -> list[Dict[str, Any]]:
        if interview_type is not None and interview_type not in INTERVIEW_TYPES:
            raise ValidationFailed(f"interview_type must be one of {', '.join(INTERVIEW_TYPES)}")
        if offset < 0:
            raise ValidationFailed("offset cannot be negative")
        sessions = self.store.list_interview_sessions(
            user_id,
            interview_type=interview_type,
            completed=completed,
            min_score=min_score,
            limit=max(1, min(int(limit), 100)),
            offset=int(offset),
        )
        return [_summarize(session) for session in sessions]

    def get_stats(self, user_id: str, *, timeframe: str = "30d", interview_type: Optional[str] = None) -> Dict[str, Any]:
        if timeframe not in TIMEFRAMES:
            raise ValidationFailed(f"timeframe must be one of {', '.join(TIMEFRAMES)}")
        if interview_type is not None and interview_type not in INTERVIEW_TYPES:
            raise ValidationFailed(f"interview_type must be one of {', '.join(INTERVIEW_TYPES)}")
        days = TIMEFRAMES[timeframe]
        since = db.to_iso(self._now() - timedelta(days=days)) if days else None
        sessions = self.store.list_interview_sessions(
            user_id, interview_type=interview_type, since=since, limit=None
        )
        evaluated = [s for s in sessions if s.get("overall_score") is not None]
        by_type: Dict[str, int] = {}
        for session in sessions:
            by_type[session["interview_type"]] = by_type.get(session["interview_type"], 0) + 1
        averages = {
            field: round(mean(s[field] for s in evaluated if s.get(field) is not None), 1) if evaluated else None
            for field in SCORE_FIELDS
        }
        passed = sum(1 for s in evaluated if (s.get("evaluation") or {}).get("passed"))
        return {
            "user_id": user_id,
            "timeframe": timeframe,
            "interview_type": interview_type,
            "total_sessions": len(sessions),
            "completed_sessions": sum(1 for s in sessions if s["status"] == "completed"),
            "questions_answered": sum(len(s.get("answers") or []) for s in sessions),
            "average_overall_score": round(mean(s["overall_score"] for s in evaluated), 1) if evaluated else None,
            "best_overall_score": max((s["overall_score"] for s in evaluated), default=None),
            "pass_rate": round(passed / len(evaluated), 4) if evaluated else None,
            "average_scores": averages,
            "sessions_by_type": by_type,
        }

    def get_performance_summary(self, user_id: str, session_id: str) -> Dict[str, Any]:
        session = self._owned(user_id, session_id)
        evaluation = session.get("evaluation")
        if not evaluation:
            raise PreconditionFailed("request an evaluation before viewing the performance summary")
        return {
            "session_id": session_id,
            "overall_score": session["overall_score"],
            "fluency_score": session["fluency_score"],
            "grammar_score": session["grammar_score"],
            "vocabulary_score": session["vocabulary_score"],
            "pronunciation_score": session["pronunciation_score"],
            "confidence_score": session["confidence_score"],
            "completeness_score": session["completeness_score"],
            "passed": evaluation.get("passed"),
            "strengths": evaluation.get("strengths") or [],
            "areas_for_improvement": evaluation.get("areas_for_improvement") or [],
            "recommendations": evaluation.get("recommendations") or [],
        }
