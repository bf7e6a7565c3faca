# app.py: English learning backend
# - Bearer token auth (opaque tokens stored in sqlite)
# - Daily lives gate quiz attempts; approval rules grade reading and interview practice
# - Global sliding-window rate limit

import logging
import json, hashlib, hmac, secrets
from datetime import timedelta
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Query, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse, Response

import content
import db
from engines.approval import INTERVIEW_PRACTICE, READING_CHAPTER, ApprovalEngine
from engines.interview import InterviewPracticeEngine
from engines.lives import LivesEngine
from engines.practice import PracticeLog
from engines.progress import ProgressEngine
from engines.reading import ReadingFlowEngine
from engines.vocabulary import TranslationService
from env_validation import load_settings, validate_environment
from errors import DomainError, Forbidden, NoLivesRemaining, RateLimited, Unauthorized, ValidationFailed
from rate_limit import SlidingWindowRateLimiter
from schemas import (
    ApprovalEvaluationBody,
    ApprovalRuleBody,
    ApprovalRuleReplaceBody,
    ChapterCompleteBody,
    InterviewAnswerBody,
    InterviewConversationBody,
    InterviewCreateBody,
    InterviewUpdateBody,
    LivesResponse,
    LoginBody,
    PerformanceSummary,
    QuizAnswerBody,
    RegisterBody,
    TokenResponse,
)

logger = logging.getLogger(__name__)
auth_logger = logging.getLogger("elearn.auth")

SETTINGS = load_settings()

LIVES_ENGINE = LivesEngine(
    max_lives=SETTINGS.lives_max,
    refill_interval=timedelta(hours=SETTINGS.lives_refill_hours),
)
APPROVAL_ENGINE = ApprovalEngine()
PRACTICE_LOG = PracticeLog()
TRANSLATION_SERVICE = TranslationService()
PROGRESS_ENGINE = ProgressEngine(lives=LIVES_ENGINE, practice=PRACTICE_LOG)
READING_ENGINE = ReadingFlowEngine(lives=LIVES_ENGINE, approval=APPROVAL_ENGINE, practice=PRACTICE_LOG)
INTERVIEW_ENGINE = InterviewPracticeEngine(approval=APPROVAL_ENGINE)
RATE_LIMITER = SlidingWindowRateLimiter(
    SETTINGS.rate_limit_requests,
    SETTINGS.rate_limit_window_seconds,
)
ADMIN_USER_IDS = set(SETTINGS.admin_user_ids)


def bootstrap() -> None:
    """Create the schema, seed static content and the default approval rules."""
    db.init()
    content.ensure_seed_content()
    APPROVAL_ENGINE.ensure_default_rules(
        {
            READING_CHAPTER: SETTINGS.reading_pass_score,
            INTERVIEW_PRACTICE: SETTINGS.interview_pass_score,
        }
    )


@asynccontextmanager
async def _lifespan(_: FastAPI):
    try:
        # Validate environment variables first
        validate_environment()
        bootstrap()
        logger.info(
            "Lives: %d per %dh | rate limit: %d per %ds",
            SETTINGS.lives_max,
            SETTINGS.lives_refill_hours,
            SETTINGS.rate_limit_requests,
            SETTINGS.rate_limit_window_seconds,
        )
        yield
    except Exception as e:
        logger.error("Failed to initialize application: %s", str(e), exc_info=True)
        raise


app = FastAPI(title="English Learn API", version="1.0.0", lifespan=_lifespan)

_PUBLIC_PATHS = frozenset(
    {"/health", "/auth/register", "/auth/login", "/docs", "/docs/oauth2-redirect", "/openapi.json", "/redoc"}
)


def _normalize_path(path: str) -> str:
    if not path or path == "/":
        return "/"
    return path.rstrip("/")


def _extract_token(header_value: Optional[str]) -> Optional[str]:
    if not header_value:
        return None
    candidate = header_value.strip()
    if not candidate:
        return None
    if " " in candidate:
        prefix, token = candidate.split(" ", 1)
        if prefix.lower() != "bearer":
            return None
        candidate = token.strip()
    return candidate or None


def _authenticate_request(request: Request) -> Optional[str]:
    token = _extract_token(request.headers.get("authorization"))
    if not token:
        return None
    record = db.get_auth_token(token)
    if not record:
        return None
    expires_at = db._parse_timestamp(record["expires_at"])
    if expires_at is None or expires_at <= db.utcnow():
        auth_logger.info("Rejected expired token for %s", record["user_id"])
        return None
    return record["user_id"]


def _json_error(status_code: int, detail: str, code: str, headers: Optional[dict] = None) -> Response:
    return Response(
        status_code=status_code,
        content=json.dumps({"detail": detail, "code": code}),
        media_type="application/json",
        headers=headers,
    )


@app.middleware("http")
async def _enforce_token(request: Request, call_next):
    normalized_path = _normalize_path(request.url.path)
    # Token lookup hits sqlite; keep it off the event loop.
    user_id = await run_in_threadpool(_authenticate_request, request)

    client_key = f"user:{user_id}" if user_id else f"ip:{request.client.host if request.client else 'anonymous'}"
    allowed, retry_after = RATE_LIMITER.hit(client_key)
    if not allowed:
        error = RateLimited(retry_after=retry_after)
        return _json_error(error.status_code, error.message, error.code, {"Retry-After": str(retry_after)})

    if normalized_path not in _PUBLIC_PATHS:
        if not user_id:
            return _json_error(401, "missing or invalid token", Unauthorized.code)
        if normalized_path.startswith("/admin/") and user_id not in ADMIN_USER_IDS:
            auth_logger.warning("User %s denied access to %s", user_id, normalized_path)
            return _json_error(403, "admin privileges required", Forbidden.code)
    request.state.user_id = user_id
    return await call_next(request)


@app.exception_handler(DomainError)
async def _domain_error_handler(request: Request, exc: DomainError):
    headers = None
    retry_after = getattr(exc, "retry_after", None)
    if isinstance(exc, (NoLivesRemaining, RateLimited)) and retry_after is not None:
        headers = {"Retry-After": str(retry_after)}
    if exc.status_code >= 500:
        logger.error("Domain error on %s: %s", request.url.path, exc.message)
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "code": exc.code},
        headers=headers,
    )


@app.exception_handler(Exception)
async def _unexpected_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"detail": "internal server error", "code": "internal_error"})


_PBKDF2_ITERATIONS = 150_000
_PBKDF2_DIGEST = "sha256"


# ---------- Helpers ----------
def _generate_salt() -> str:
    return secrets.token_bytes(16).hex()


def _pbkdf2_hash(password: str, salt_hex: str) -> str:
    try:
        salt_bytes = bytes.fromhex(salt_hex)
    except ValueError:
        raise ValueError("Invalid salt for password hashing") from None
    return hashlib.pbkdf2_hmac(
        _PBKDF2_DIGEST,
        password.encode("utf-8"),
        salt_bytes,
        _PBKDF2_ITERATIONS,
    ).hex()


def _hash_password(password: str) -> tuple[str, str]:
    salt_hex = _generate_salt()
    return _pbkdf2_hash(password, salt_hex), salt_hex


def _verify_password(password: str, stored_hash: str, stored_salt: Optional[str]) -> bool:
    if not stored_salt:
        return False
    try:
        derived = _pbkdf2_hash(password, stored_salt)
    except ValueError:
        return False
    return hmac.compare_digest(stored_hash or "", derived)


def _current_user(request: Request) -> str:
    user_id = getattr(request.state, "user_id", None)
    if not user_id:
        raise Unauthorized("missing or invalid token")
    return user_id


def _is_admin(user_id: str) -> bool:
    return user_id in ADMIN_USER_IDS


def _require_self(request: Request, user_id: str) -> str:
    caller = _current_user(request)
    if caller != user_id:
        raise Forbidden("cannot access another user's practice sessions")
    return caller


@app.get("/health", tags=["system"], summary="Liveness probe")
def health():
    return {"status": "ok"}


# ---------- Auth ----------
@app.post("/auth/register", tags=["auth"], summary="Create an account")
def auth_register(body: RegisterBody):
    user_id = body.user_id.strip()
    if not user_id:
        raise ValidationFailed("user_id required")
    if db.get_user_auth(user_id):
        raise ValidationFailed("user_id exists", code="user_exists")
    email = (body.email or "").strip() or None
    if email and db.get_user_by_email(email):
        raise ValidationFailed("email exists", code="email_exists")
    pw_hash, pw_salt = _hash_password(body.password)
    db.create_user(user_id, email, pw_hash, pw_salt, body.display_name)
    auth_logger.info("Registered user %s", user_id)
    return {"ok": True, "user_id": user_id}


@app.post("/auth/login", response_model=TokenResponse, tags=["auth"], summary="Exchange credentials for a token")
def auth_login(body: LoginBody):
    row = db.get_user_auth(body.user_id)
    if not row or not _verify_password(body.password, row["pw_hash"], row["pw_salt"]):
        auth_logger.info("Failed login for %s", body.user_id)
        raise Unauthorized("invalid credentials")
    now = db.utcnow()
    db.purge_expired_tokens(db.to_iso(now))
    token = secrets.token_urlsafe(24)
    expires_at = db.to_iso(now + timedelta(minutes=SETTINGS.token_ttl_minutes))
    db.store_auth_token(token, body.user_id, expires_at)
    auth_logger.info("User %s logged in", body.user_id)
    return {"token": token, "user_id": body.user_id, "expires_at": expires_at}


@app.post("/auth/logout", tags=["auth"], summary="Revoke the current token")
def auth_logout(request: Request):
    user_id = _current_user(request)
    token = _extract_token(request.headers.get("authorization"))
    revoked = db.revoke_auth_token(token) if token else False
    auth_logger.info("User %s logged out", user_id)
    return {"ok": True, "revoked": revoked}


# ---------- Lives ----------
@app.get("/lives", response_model=LivesResponse, tags=["lives"], summary="Current daily lives")
def lives_status(request: Request):
    return LIVES_ENGINE.get_status(_current_user(request)).to_dict()


@app.post("/lives/consume", response_model=LivesResponse, tags=["lives"], summary="Spend one life")
def lives_consume(request: Request):
    return LIVES_ENGINE.consume_life(_current_user(request)).to_dict()


# ---------- Reading ----------
@app.get("/reading/chapters", tags=["reading"], summary="Reading chapters with unlock status")
def reading_chapters(request: Request):
    return READING_ENGINE.get_chapters_status(_current_user(request))


@app.get("/reading/chapters/{chapter_id}/content", tags=["reading"], summary="Chapter text")
def reading_content(chapter_id: str, request: Request):
    return READING_ENGINE.get_content(_current_user(request), chapter_id)


@app.get("/reading/chapters/{chapter_id}/quiz", tags=["reading"], summary="Quiz questions for a chapter")
def reading_quiz(chapter_id: str, request: Request):
    return READING_ENGINE.get_quiz_questions(_current_user(request), chapter_id)


@app.post("/reading/chapters/{chapter_id}/answers", tags=["reading"], summary="Answer one quiz question")
def reading_answer(chapter_id: str, body: QuizAnswerBody, request: Request):
    return READING_ENGINE.submit_quiz_answer(_current_user(request), chapter_id, body.question_id, body.answer)


@app.post("/reading/chapters/{chapter_id}/complete", tags=["reading"], summary="Grade the current attempt")
def reading_complete(chapter_id: str, request: Request):
    return READING_ENGINE.complete_chapter(_current_user(request), chapter_id)


# ---------- Vocabulary chapters & progress ----------
@app.get("/chapters", tags=["chapters"], summary="Vocabulary chapters with unlock status")
def chapters_list(request: Request):
    return {"chapters": PROGRESS_ENGINE.list_chapters(_current_user(request))}


@app.get("/chapters/{chapter_id}", tags=["chapters"], summary="Vocabulary chapter with its words")
def chapters_get(chapter_id: str, request: Request):
    return PROGRESS_ENGINE.get_chapter(_current_user(request), chapter_id)


@app.post("/chapters/{chapter_id}/complete", tags=["chapters"], summary="Mark a vocabulary chapter completed")
def chapters_complete(chapter_id: str, request: Request, body: Optional[ChapterCompleteBody] = None):
    score = body.score if body else None
    return PROGRESS_ENGINE.complete_chapter(_current_user(request), chapter_id, score)


@app.get("/chapters/{chapter_id}/translations", tags=["chapters"], summary="Translations of a chapter's words")
def chapters_translations(chapter_id: str, language: str = "es"):
    return TRANSLATION_SERVICE.chapter_translations(chapter_id, language)


@app.get("/vocabulary/translate", tags=["chapters"], summary="Translate a vocabulary word")
def vocabulary_translate(word: str, language: Optional[str] = None):
    return TRANSLATION_SERVICE.lookup(word, language)


@app.get("/vocabulary/languages", tags=["chapters"], summary="Languages with stored translations")
def vocabulary_languages():
    return {"languages": TRANSLATION_SERVICE.languages()}


@app.get("/progress", tags=["chapters"], summary="Progress summary")
def progress_summary(request: Request):
    return PROGRESS_ENGINE.get_summary(_current_user(request))


# ---------- Practice history ----------
@app.get("/practices/history", tags=["practice"], summary="Vocabulary, reading and quiz practice sessions")
def practice_history(
    request: Request,
    practice_type: Optional[str] = Query(None, alias="practiceType"),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
):
    sessions = PRACTICE_LOG.list_history(_current_user(request), practice_type, limit=limit, offset=offset)
    return {"sessions": sessions, "limit": limit, "offset": offset}


@app.get("/practices/summary", tags=["practice"], summary="Practice totals per type")
def practice_summary(request: Request):
    return PRACTICE_LOG.get_summary(_current_user(request))


# ---------- Approval ----------
@app.get("/approval/rules", tags=["approval"], summary="List approval rules")
def approval_rules(subject_type: Optional[str] = None, include_inactive: bool = False):
    return {"rules": APPROVAL_ENGINE.list_rules(subject_type, include_inactive=include_inactive)}


@app.get("/approval/rules/{rule_id}", tags=["approval"], summary="Get one rule version")
def approval_rule(rule_id: str):
    return APPROVAL_ENGINE.get_rule(rule_id)


@app.post("/admin/approval/rules", status_code=201, tags=["approval"], summary="Create an approval rule")
def approval_rule_create(body: ApprovalRuleBody, request: Request):
    return APPROVAL_ENGINE.create_rule(
        body.name,
        body.subject_type,
        body.min_score,
        body.max_score,
        description=body.description,
        created_by=_current_user(request),
    )


@app.post(
    "/admin/approval/rules/{rule_id}/replace",
    status_code=201,
    tags=["approval"],
    summary="Supersede a rule with a new version",
)
def approval_rule_replace(rule_id: str, body: ApprovalRuleReplaceBody, request: Request):
    changes = body.model_dump(exclude_none=True)
    return APPROVAL_ENGINE.replace_rule(rule_id, created_by=_current_user(request), **changes)


@app.post("/approval/evaluations", status_code=201, tags=["approval"], summary="Evaluate a submission")
def approval_evaluate(body: ApprovalEvaluationBody, request: Request):
    user_id = _current_user(request)
    if body.rule_id:
        return APPROVAL_ENGINE.evaluate(body.rule_id, user_id, body.subject_id, body.score, details=body.details)
    if body.subject_type:
        return APPROVAL_ENGINE.evaluate_for_subject(
            body.subject_type, user_id, body.subject_id, body.score, details=body.details
        )
    raise ValidationFailed("rule_id or subject_type is required")


@app.get("/approval/evaluations", tags=["approval"], summary="List evaluations")
def approval_evaluations(
    request: Request,
    rule_id: Optional[str] = None,
    subject_type: Optional[str] = None,
    subject_id: Optional[str] = None,
    user_id: Optional[str] = None,
    limit: int = Query(100, ge=1, le=500),
):
    caller = _current_user(request)
    if not _is_admin(caller):
        if user_id and user_id != caller:
            raise Forbidden("cannot list another user's evaluations")
        user_id = caller
    evaluations = APPROVAL_ENGINE.list_evaluations(
        rule_id=rule_id,
        user_id=user_id,
        subject_type=subject_type,
        subject_id=subject_id,
        limit=limit,
    )
    return {"evaluations": evaluations}


@app.get("/approval/evaluations/{evaluation_id}", tags=["approval"], summary="Get one evaluation")
def approval_evaluation(evaluation_id: str, request: Request):
    caller = _current_user(request)
    evaluation = APPROVAL_ENGINE.get_evaluation(evaluation_id)
    if evaluation["user_id"] != caller and not _is_admin(caller):
        raise Forbidden("evaluation belongs to another user")
    return evaluation


@app.get("/approval/rules/{rule_id}/metrics", tags=["approval"], summary="Metrics for one rule version")
def approval_rule_metrics(rule_id: str):
    return APPROVAL_ENGINE.get_metrics(rule_id)


@app.get("/approval/metrics", tags=["approval"], summary="Metrics for every rule version")
def approval_metrics(subject_type: Optional[str] = None):
    return {"metrics": APPROVAL_ENGINE.list_metrics(subject_type)}


# ---------- Interview practice ----------
@app.post("/practices/interview", status_code=201, tags=["interview"], summary="Start an interview practice")
def interview_create(body: InterviewCreateBody, request: Request):
    return INTERVIEW_ENGINE.create_session(
        _current_user(request),
        body.interview_type,
        title=body.title,
        difficulty=body.difficulty,
        questions=body.questions,
    )


@app.get("/practices/interview/user/{user_id}/sessions", tags=["interview"], summary="List a user's sessions")
def interview_sessions(
    user_id: str,
    request: Request,
    interview_type: Optional[str] = Query(None, alias="interviewType"),
    completed: Optional[bool] = None,
    min_score: Optional[float] = Query(None, alias="minScore"),
    limit: int = Query(10, ge=1, le=100),
    offset: int = Query(0, ge=0),
):
    _require_self(request, user_id)
    sessions = INTERVIEW_ENGINE.list_sessions(
        user_id,
        interview_type=interview_type,
        completed=completed,
        min_score=min_score,
        limit=limit,
        offset=offset,
    )
    return {"sessions": sessions, "limit": limit, "offset": offset}


@app.get("/practices/interview/user/{user_id}/stats", tags=["interview"], summary="Aggregate practice statistics")
def interview_stats(
    user_id: str,
    request: Request,
    timeframe: str = "30d",
    interview_type: Optional[str] = Query(None, alias="interviewType"),
):
    _require_self(request, user_id)
    return INTERVIEW_ENGINE.get_stats(user_id, timeframe=timeframe, interview_type=interview_type)


@app.get("/practices/interview/{session_id}", tags=["interview"], summary="Get a practice session")
def interview_get(session_id: str, request: Request):
    return INTERVIEW_ENGINE.get_session(_current_user(request), session_id)


@app.put("/practices/interview/{session_id}", tags=["interview"], summary="Update a practice session")
def interview_update(session_id: str, body: InterviewUpdateBody, request: Request):
    return INTERVIEW_ENGINE.update_session(
        _current_user(request),
        session_id,
        title=body.title,
        notes=body.notes,
        difficulty=body.difficulty,
    )


@app.post("/practices/interview/{session_id}/answer-question", tags=["interview"], summary="Answer a question")
def interview_answer(session_id: str, body: InterviewAnswerBody, request: Request):
    return INTERVIEW_ENGINE.answer_question(
        _current_user(request),
        session_id,
        body.question_index,
        body.answer,
        duration_seconds=body.duration_seconds,
    )


@app.post(
    "/practices/interview/{session_id}/update-conversation",
    tags=["interview"],
    summary="Append conversation turns",
)
def interview_conversation(session_id: str, body: InterviewConversationBody, request: Request):
    turns = [turn.model_dump() for turn in body.turns]
    return INTERVIEW_ENGINE.update_conversation(_current_user(request), session_id, turns)


@app.post("/practices/interview/{session_id}/ai-evaluation", tags=["interview"], summary="Score the session")
def interview_evaluate(session_id: str, request: Request):
    return INTERVIEW_ENGINE.evaluate(_current_user(request), session_id)


@app.get(
    "/practices/interview/{session_id}/performance-summary",
    response_model=PerformanceSummary,
    tags=["interview"],
    summary="Scores and feedback of an evaluated session",
)
def interview_performance(session_id: str, request: Request):
    return INTERVIEW_ENGINE.get_performance_summary(_current_user(request), session_id)
