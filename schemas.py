"""Pydantic request and response models for the HTTP API."""

from __future__ import annotations

from typing import Any, Dict, List, Literal

from pydantic import BaseModel, Field

__all__ = [
    "RegisterBody",
    "LoginBody",
    "TokenResponse",
    "LivesResponse",
    "QuizAnswerBody",
    "ChapterCompleteBody",
    "ApprovalRuleBody",
    "ApprovalRuleReplaceBody",
    "ApprovalEvaluationBody",
    "InterviewCreateBody",
    "InterviewUpdateBody",
    "InterviewAnswerBody",
    "ConversationTurn",
    "InterviewConversationBody",
    "PerformanceSummary",
]

InterviewType = Literal["job", "academic", "visa", "general"]
Difficulty = Literal["beginner", "intermediate", "advanced"]


class RegisterBody(BaseModel):
    user_id: str = Field(min_length=1, max_length=64)
    email: str | None = None
    password: str = Field(min_length=8)
    display_name: str | None = None


class LoginBody(BaseModel):
    user_id: str
    password: str


class TokenResponse(BaseModel):
    token: str
    user_id: str
    expires_at: str


class LivesResponse(BaseModel):
    user_id: str
    lives_remaining: int
    max_lives: int
    last_refill_at: str
    next_refill_at: str
    seconds_until_refill: int


class QuizAnswerBody(BaseModel):
    question_id: str
    answer: str


class ChapterCompleteBody(BaseModel):
    score: float | None = Field(default=None, ge=0, le=100)


class ApprovalRuleBody(BaseModel):
    name: str = Field(min_length=1)
    subject_type: str = Field(min_length=1)
    min_score: float
    max_score: float = 100
    description: str | None = None


class ApprovalRuleReplaceBody(BaseModel):
    """Fields left unset keep the value of the rule being replaced."""

    min_score: float | None = None
    max_score: float | None = None
    description: str | None = None
    subject_type: str | None = None


class ApprovalEvaluationBody(BaseModel):
    rule_id: str | None = None
    subject_type: str | None = None
    subject_id: str
    score: float
    details: Dict[str, Any] | None = None


class InterviewCreateBody(BaseModel):
    interview_type: InterviewType = Field(default="general", alias="interviewType")
    title: str | None = None
    difficulty: Difficulty = "intermediate"
    questions: List[str] | None = None

    model_config = {"populate_by_name": True}


class InterviewUpdateBody(BaseModel):
    title: str | None = None
    notes: str | None = None
    difficulty: Difficulty | None = None


class InterviewAnswerBody(BaseModel):
    question_index: int = Field(ge=0, alias="questionIndex")
    answer: str
    duration_seconds: float | None = Field(default=None, ge=0, alias="durationSeconds")

    model_config = {"populate_by_name": True}


class ConversationTurn(BaseModel):
    speaker: Literal["interviewer", "candidate"]
    text: str


class InterviewConversationBody(BaseModel):
    turns: List[ConversationTurn] = Field(min_length=1)


class PerformanceSummary(BaseModel):
    session_id: str
    overall_score: float
    fluency_score: float
    grammar_score: float
    vocabulary_score: float
    pronunciation_score: float | None = None
    confidence_score: float
    completeness_score: float
    passed: bool | None = None
    strengths: List[str]
    areas_for_improvement: List[str]
    recommendations: List[str]
