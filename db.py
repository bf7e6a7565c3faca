import json
import logging
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, Mapping, Optional, Sequence

from db_pool import SQLiteConnectionPool
from env_validation import default_db_path, get_env_bool

logger = logging.getLogger("elearn.db")

DB_PATH = default_db_path()

# Initialize connection pool
_pool = SQLiteConnectionPool(DB_PATH, max_connections=10, echo=get_env_bool("SQL_ECHO"))


def _conn():
    """Return a context manager for acquiring a pooled SQLite connection."""
    return _pool.get_connection()


def _exec(sql: str, params: Iterable = ()):
    with _pool.get_connection() as con:
        cur = con.execute(sql, params)
        con.commit()
        return cur

def _query(sql: str, params: Iterable = ()) -> list[sqlite3.Row]:
    with _pool.get_connection() as con:
        cur = con.execute(sql, params)
        return cur.fetchall()


# -------------- helpers --------------
def json_dumps(obj: Any) -> str:
    return json.dumps(obj, ensure_ascii=False, separators=(",", ":"))


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(dt: datetime) -> str:
    return _coerce_to_utc(dt).isoformat()


def _decode_json_field(value: Optional[str]) -> Any:
    if value is None:
        return None
    if isinstance(value, (bytes, bytearray)):
        value = value.decode("utf-8")
    value = value.strip()
    if not value:
        return value
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        return value


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    text = str(value).strip()
    if not text:
        return None
    try:
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        return _coerce_to_utc(datetime.fromisoformat(text))
    except ValueError:
        try:
            return _coerce_to_utc(datetime.strptime(text, "%Y-%m-%d %H:%M:%S"))
        except ValueError:
            logger.warning("Unparseable timestamp in database: %r", value)
            return None


def _coerce_to_utc(dt: Optional[datetime], fallback: Optional[datetime] = None) -> datetime:
    if dt is None:
        dt = fallback or datetime.now(timezone.utc)
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _row(rows: Sequence[sqlite3.Row], json_fields: Sequence[str] = ()) -> Optional[Dict[str, Any]]:
    if not rows:
        return None
    item = dict(rows[0])
    for key in json_fields:
        item[key] = _decode_json_field(item.get(key))
    return item


def _rows(rows: Sequence[sqlite3.Row], json_fields: Sequence[str] = ()) -> list[Dict[str, Any]]:
    data: list[Dict[str, Any]] = []
    for row in rows:
        item = dict(row)
        for key in json_fields:
            item[key] = _decode_json_field(item.get(key))
        data.append(item)
    return data


# -------------- schema --------------
def init():
    Path(DB_PATH).parent.mkdir(parents=True, exist_ok=True)
    with _conn() as con:
        con.executescript(
            """
            PRAGMA foreign_keys = ON;
            PRAGMA journal_mode=WAL;

            CREATE TABLE IF NOT EXISTS users (
              id            TEXT PRIMARY KEY,
              email         TEXT UNIQUE,
              pw_hash       TEXT NOT NULL,
              pw_salt       TEXT,
              display_name  TEXT,
              created_at    TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            );

            CREATE TABLE IF NOT EXISTS auth_tokens (
              token       TEXT PRIMARY KEY,
              user_id     TEXT NOT NULL,
              expires_at  TEXT NOT NULL,
              created_at  TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
              FOREIGN KEY(user_id) REFERENCES users(id) ON DELETE CASCADE
            );

            CREATE INDEX IF NOT EXISTS idx_auth_tokens_user ON auth_tokens(user_id);

            CREATE TABLE IF NOT EXISTS daily_lives (
              user_id          TEXT PRIMARY KEY,
              lives_remaining  INTEGER NOT NULL,
              max_lives        INTEGER NOT NULL CHECK (max_lives > 0),
              last_refill_at   TEXT NOT NULL,
              updated_at       TEXT NOT NULL,
              CHECK (lives_remaining >= 0 AND lives_remaining <= max_lives)
            );

            CREATE TABLE IF NOT EXISTS chapters (
              id           TEXT PRIMARY KEY,
              title        TEXT NOT NULL,
              level        TEXT NOT NULL,
              position     INTEGER NOT NULL,
              description  TEXT
            );

            CREATE TABLE IF NOT EXISTS vocabulary_items (
              id              TEXT PRIMARY KEY,
              chapter_id      TEXT NOT NULL,
              word            TEXT NOT NULL,
              definition      TEXT NOT NULL,
              example         TEXT,
              part_of_speech  TEXT,
              position        INTEGER DEFAULT 0,
              FOREIGN KEY(chapter_id) REFERENCES chapters(id) ON DELETE CASCADE
            );

            CREATE INDEX IF NOT EXISTS idx_vocabulary_chapter ON vocabulary_items(chapter_id, position);

            CREATE TABLE IF NOT EXISTS vocabulary_translations (
              item_id      TEXT NOT NULL,
              language     TEXT NOT NULL,
              translation  TEXT NOT NULL,
              PRIMARY KEY (item_id, language),
              FOREIGN KEY(item_id) REFERENCES vocabulary_items(id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS reading_chapters (
              id           TEXT PRIMARY KEY,
              title        TEXT NOT NULL,
              level        TEXT NOT NULL,
              position     INTEGER NOT NULL,
              description  TEXT
            );

            CREATE TABLE IF NOT EXISTS reading_content (
              id                 TEXT PRIMARY KEY,
              chapter_id         TEXT NOT NULL UNIQUE,
              title              TEXT NOT NULL,
              body               TEXT NOT NULL,
              word_count         INTEGER NOT NULL,
              estimated_minutes  INTEGER NOT NULL,
              FOREIGN KEY(chapter_id) REFERENCES reading_chapters(id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS quiz_questions (
              id              TEXT PRIMARY KEY,
              chapter_id      TEXT NOT NULL,
              prompt          TEXT NOT NULL,
              options         TEXT NOT NULL,
              correct_answer  TEXT NOT NULL,
              explanation     TEXT,
              position        INTEGER DEFAULT 0,
              FOREIGN KEY(chapter_id) REFERENCES reading_chapters(id) ON DELETE CASCADE
            );

            CREATE INDEX IF NOT EXISTS idx_quiz_questions_chapter ON quiz_questions(chapter_id, position);

            CREATE TABLE IF NOT EXISTS user_progress (
              user_id            TEXT NOT NULL,
              unit_type          TEXT NOT NULL,
              unit_id            TEXT NOT NULL,
              status             TEXT NOT NULL,
              score              REAL,
              best_score         REAL,
              attempts           INTEGER NOT NULL DEFAULT 0,
              score_history      TEXT,
              started_at         TEXT,
              content_viewed_at  TEXT,
              quiz_started_at    TEXT,
              completed_at       TEXT,
              updated_at         TEXT,
              PRIMARY KEY (user_id, unit_type, unit_id)
            );

            CREATE TABLE IF NOT EXISTS quiz_answers (
              id           INTEGER PRIMARY KEY AUTOINCREMENT,
              user_id      TEXT NOT NULL,
              chapter_id   TEXT NOT NULL,
              question_id  TEXT NOT NULL,
              attempt      INTEGER NOT NULL,
              answer       TEXT NOT NULL,
              is_correct   INTEGER NOT NULL,
              answered_at  TEXT NOT NULL,
              UNIQUE(user_id, question_id, attempt),
              FOREIGN KEY(question_id) REFERENCES quiz_questions(id) ON DELETE CASCADE
            );

            CREATE INDEX IF NOT EXISTS idx_quiz_answers_attempt ON quiz_answers(user_id, chapter_id, attempt);

            CREATE TABLE IF NOT EXISTS approval_rules (
              id             TEXT PRIMARY KEY,
              name           TEXT NOT NULL,
              subject_type   TEXT NOT NULL,
              version        INTEGER NOT NULL,
              min_score      REAL NOT NULL,
              max_score      REAL NOT NULL,
              description    TEXT,
              is_active      INTEGER NOT NULL DEFAULT 1,
              supersedes_id  TEXT,
              created_by     TEXT,
              created_at     TEXT NOT NULL,
              UNIQUE(name, version),
              CHECK (max_score > 0 AND min_score >= 0 AND min_score <= max_score),
              FOREIGN KEY(supersedes_id) REFERENCES approval_rules(id)
            );

            CREATE INDEX IF NOT EXISTS idx_approval_rules_subject ON approval_rules(subject_type, is_active);

            CREATE TRIGGER IF NOT EXISTS trg_approval_rules_immutable
            BEFORE UPDATE OF name, subject_type, version, min_score, max_score, description, supersedes_id
            ON approval_rules
            BEGIN
              SELECT RAISE(ABORT, 'approval rule content is immutable; replace the rule instead');
            END;

            CREATE TRIGGER IF NOT EXISTS trg_approval_rules_no_reactivate
            BEFORE UPDATE OF is_active ON approval_rules
            WHEN OLD.is_active = 0 AND NEW.is_active = 1
            BEGIN
              SELECT RAISE(ABORT, 'superseded approval rules cannot be reactivated');
            END;

            CREATE TABLE IF NOT EXISTS approval_evaluations (
              id            TEXT PRIMARY KEY,
              rule_id       TEXT NOT NULL,
              rule_version  INTEGER NOT NULL,
              user_id       TEXT NOT NULL,
              subject_type  TEXT NOT NULL,
              subject_id    TEXT NOT NULL,
              score         REAL NOT NULL,
              threshold     REAL NOT NULL,
              passed        INTEGER NOT NULL,
              details       TEXT,
              created_at    TEXT NOT NULL,
              FOREIGN KEY(rule_id) REFERENCES approval_rules(id)
            );

            CREATE INDEX IF NOT EXISTS idx_approval_evaluations_rule ON approval_evaluations(rule_id, created_at);
            CREATE INDEX IF NOT EXISTS idx_approval_evaluations_user ON approval_evaluations(user_id, created_at);

            CREATE TRIGGER IF NOT EXISTS trg_approval_evaluations_no_update
            BEFORE UPDATE ON approval_evaluations
            BEGIN
              SELECT RAISE(ABORT, 'approval evaluations are append-only');
            END;

            CREATE TRIGGER IF NOT EXISTS trg_approval_evaluations_no_delete
            BEFORE DELETE ON approval_evaluations
            BEGIN
              SELECT RAISE(ABORT, 'approval evaluations are append-only');
            END;

            CREATE TABLE IF NOT EXISTS approval_metrics (
              rule_id            TEXT PRIMARY KEY,
              total              INTEGER NOT NULL,
              passed             INTEGER NOT NULL,
              failed             INTEGER NOT NULL,
              pass_rate          REAL,
              average_score      REAL,
              lowest_score       REAL,
              highest_score      REAL,
              last_evaluated_at  TEXT,
              computed_at        TEXT NOT NULL,
              FOREIGN KEY(rule_id) REFERENCES approval_rules(id)
            );

            CREATE TABLE IF NOT EXISTS interview_sessions (
              id                   TEXT PRIMARY KEY,
              user_id              TEXT NOT NULL,
              interview_type       TEXT NOT NULL,
              title                TEXT,
              difficulty           TEXT NOT NULL,
              status               TEXT NOT NULL,
              questions            TEXT NOT NULL,
              answers              TEXT,
              conversation         TEXT,
              notes                TEXT,
              fluency_score        REAL,
              grammar_score        REAL,
              vocabulary_score     REAL,
              pronunciation_score  REAL,
              confidence_score     REAL,
              completeness_score   REAL,
              overall_score        REAL,
              evaluation           TEXT,
              created_at           TEXT NOT NULL,
              updated_at           TEXT NOT NULL,
              completed_at         TEXT
            );

            CREATE INDEX IF NOT EXISTS idx_interview_sessions_user ON interview_sessions(user_id, created_at DESC);

            CREATE TABLE IF NOT EXISTS practice_sessions (
              id             TEXT PRIMARY KEY,
              user_id        TEXT NOT NULL,
              practice_type  TEXT NOT NULL CHECK (practice_type IN ('vocabulary', 'quiz', 'reading')),
              unit_id        TEXT NOT NULL,
              score          REAL,
              passed         INTEGER,
              details        TEXT,
              created_at     TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_practice_sessions_user ON practice_sessions(user_id, created_at DESC);
            """
        )
        con.commit()


# -------------- users / auth --------------
def get_user_auth(user_id: str) -> Optional[sqlite3.Row]:
    rows = _query("SELECT id, pw_hash, pw_salt FROM users WHERE id = ?", (user_id,))
    return rows[0] if rows else None

def get_user_by_email(email: str) -> Optional[sqlite3.Row]:
    rows = _query("SELECT id FROM users WHERE email = ?", (email,))
    return rows[0] if rows else None

def create_user(
    user_id: str,
    email: Optional[str],
    pw_hash: str,
    pw_salt: Optional[str] = None,
    display_name: Optional[str] = None,
):
    _exec(
        "INSERT INTO users(id, email, pw_hash, pw_salt, display_name) VALUES (?,?,?,?,?)",
        (user_id, email, pw_hash, pw_salt, display_name),
    )


def store_auth_token(token: str, user_id: str, expires_at: str) -> None:
    _exec(
        "INSERT INTO auth_tokens(token, user_id, expires_at) VALUES (?,?,?)",
        (token, user_id, expires_at),
    )


def get_auth_token(token: str) -> Optional[Dict[str, Any]]:
    return _row(_query("SELECT token, user_id, expires_at FROM auth_tokens WHERE token = ?", (token,)))


def revoke_auth_token(token: str) -> bool:
    cur = _exec("DELETE FROM auth_tokens WHERE token = ?", (token,))
    return cur.rowcount > 0


def purge_expired_tokens(now_iso: str) -> int:
    cur = _exec("DELETE FROM auth_tokens WHERE expires_at <= ?", (now_iso,))
    return cur.rowcount


# -------------- daily lives --------------
def get_daily_lives(user_id: str) -> Optional[Dict[str, Any]]:
    return _row(
        _query(
            "SELECT user_id, lives_remaining, max_lives, last_refill_at, updated_at FROM daily_lives WHERE user_id = ?",
            (user_id,),
        )
    )


def create_daily_lives(user_id: str, max_lives: int, now_iso: str) -> Dict[str, Any]:
    """Insert a full record unless one already exists, then return the stored row."""
    _exec(
        """
        INSERT INTO daily_lives(user_id, lives_remaining, max_lives, last_refill_at, updated_at)
        VALUES (?,?,?,?,?)
        ON CONFLICT(user_id) DO NOTHING
        """,
        (user_id, int(max_lives), int(max_lives), now_iso, now_iso),
    )
    return get_daily_lives(user_id)


def refill_daily_lives(user_id: str, expected_refill_at: str, now_iso: str) -> bool:
    """Reset the counter to max if nobody refilled it since ``expected_refill_at``."""
    cur = _exec(
        """
        UPDATE daily_lives
        SET lives_remaining = max_lives, last_refill_at = ?, updated_at = ?
        WHERE user_id = ? AND last_refill_at = ?
        """,
        (now_iso, now_iso, user_id, expected_refill_at),
    )
    return cur.rowcount > 0


def decrement_daily_lives(user_id: str, now_iso: str) -> bool:
    cur = _exec(
        """
        UPDATE daily_lives
        SET lives_remaining = lives_remaining - 1, updated_at = ?
        WHERE user_id = ? AND lives_remaining > 0
        """,
        (now_iso, user_id),
    )
    return cur.rowcount > 0


# -------------- vocabulary chapters --------------
def upsert_chapter(chapter_id: str, title: str, level: str, position: int, description: Optional[str] = None):
    _exec(
        """
        INSERT INTO chapters(id, title, level, position, description) VALUES (?,?,?,?,?)
        ON CONFLICT(id) DO UPDATE SET
          title=excluded.title, level=excluded.level,
          position=excluded.position, description=excluded.description
        """,
        (chapter_id, title, level, int(position), description),
    )


def list_chapters() -> list[Dict[str, Any]]:
    return _rows(
        _query(
            """
            SELECT c.id, c.title, c.level, c.position, c.description,
                   (SELECT COUNT(*) FROM vocabulary_items v WHERE v.chapter_id = c.id) AS word_count
            FROM chapters c
            ORDER BY c.position, c.id
            """
        )
    )


def get_chapter(chapter_id: str) -> Optional[Dict[str, Any]]:
    return _row(_query("SELECT id, title, level, position, description FROM chapters WHERE id = ?", (chapter_id,)))


def upsert_vocabulary_item(
    item_id: str,
    chapter_id: str,
    word: str,
    definition: str,
    *,
    example: Optional[str] = None,
    part_of_speech: Optional[str] = None,
    position: int = 0,
):
    _exec(
        """
        INSERT INTO vocabulary_items(id, chapter_id, word, definition, example, part_of_speech, position)
        VALUES (?,?,?,?,?,?,?)
        ON CONFLICT(id) DO UPDATE SET
          chapter_id=excluded.chapter_id, word=excluded.word, definition=excluded.definition,
          example=excluded.example, part_of_speech=excluded.part_of_speech, position=excluded.position
        """,
        (item_id, chapter_id, word, definition, example, part_of_speech, int(position)),
    )


def list_vocabulary(chapter_id: str) -> list[Dict[str, Any]]:
    return _rows(
        _query(
            """
            SELECT id, chapter_id, word, definition, example, part_of_speech, position
            FROM vocabulary_items WHERE chapter_id = ? ORDER BY position, id
            """,
            (chapter_id,),
        )
    )


def upsert_vocabulary_translation(item_id: str, language: str, translation: str) -> None:
    _exec(
        """
        INSERT INTO vocabulary_translations(item_id, language, translation) VALUES (?,?,?)
        ON CONFLICT(item_id, language) DO UPDATE SET translation=excluded.translation
        """,
        (item_id, language, translation),
    )


def find_vocabulary_translations(word: str, language: Optional[str] = None) -> list[Dict[str, Any]]:
    """Rows for every stored translation of ``word``, matched case-insensitively."""
    params: list[Any] = [word]
    language_clause = ""
    if language:
        language_clause = "AND t.language = ?"
        params.append(language)
    return _rows(
        _query(
            f"""
            SELECT v.id AS item_id, v.chapter_id, v.word, v.definition, v.part_of_speech,
                   t.language, t.translation
            FROM vocabulary_items v
            JOIN vocabulary_translations t ON t.item_id = v.id
            WHERE lower(v.word) = lower(?) {language_clause}
            ORDER BY v.chapter_id, v.position, t.language
            """,
            params,
        )
    )


def list_chapter_translations(chapter_id: str, language: str) -> list[Dict[str, Any]]:
    return _rows(
        _query(
            """
            SELECT v.id AS item_id, v.word, v.part_of_speech, t.translation
            FROM vocabulary_items v
            LEFT JOIN vocabulary_translations t ON t.item_id = v.id AND t.language = ?
            WHERE v.chapter_id = ?
            ORDER BY v.position, v.id
            """,
            (language, chapter_id),
        )
    )


def list_translation_languages() -> list[str]:
    return [row["language"] for row in _query("SELECT DISTINCT language FROM vocabulary_translations ORDER BY language")]


# -------------- reading content --------------
def upsert_reading_chapter(chapter_id: str, title: str, level: str, position: int, description: Optional[str] = None):
    _exec(
        """
        INSERT INTO reading_chapters(id, title, level, position, description) VALUES (?,?,?,?,?)
        ON CONFLICT(id) DO UPDATE SET
          title=excluded.title, level=excluded.level,
          position=excluded.position, description=excluded.description
        """,
        (chapter_id, title, level, int(position), description),
    )


def list_reading_chapters() -> list[Dict[str, Any]]:
    return _rows(
        _query(
            """
            SELECT r.id, r.title, r.level, r.position, r.description,
                   (SELECT COUNT(*) FROM quiz_questions q WHERE q.chapter_id = r.id) AS question_count
            FROM reading_chapters r
            ORDER BY r.position, r.id
            """
        )
    )


def upsert_reading_content(content_id: str, chapter_id: str, title: str, body: str, estimated_minutes: Optional[int] = None):
    word_count = len(body.split())
    minutes = estimated_minutes if estimated_minutes is not None else max(1, round(word_count / 200))
    _exec(
        """
        INSERT INTO reading_content(id, chapter_id, title, body, word_count, estimated_minutes)
        VALUES (?,?,?,?,?,?)
        ON CONFLICT(id) DO UPDATE SET
          chapter_id=excluded.chapter_id, title=excluded.title, body=excluded.body,
          word_count=excluded.word_count, estimated_minutes=excluded.estimated_minutes
        """,
        (content_id, chapter_id, title, body, word_count, int(minutes)),
    )


def get_reading_content(chapter_id: str) -> Optional[Dict[str, Any]]:
    return _row(
        _query(
            "SELECT id, chapter_id, title, body, word_count, estimated_minutes FROM reading_content WHERE chapter_id = ?",
            (chapter_id,),
        )
    )


def upsert_quiz_question(
    question_id: str,
    chapter_id: str,
    prompt: str,
    options: Sequence[str],
    correct_answer: str,
    *,
    explanation: Optional[str] = None,
    position: int = 0,
):
    _exec(
        """
        INSERT INTO quiz_questions(id, chapter_id, prompt, options, correct_answer, explanation, position)
        VALUES (?,?,?,?,?,?,?)
        ON CONFLICT(id) DO UPDATE SET
          chapter_id=excluded.chapter_id, prompt=excluded.prompt, options=excluded.options,
          correct_answer=excluded.correct_answer, explanation=excluded.explanation, position=excluded.position
        """,
        (question_id, chapter_id, prompt, json_dumps(list(options)), correct_answer, explanation, int(position)),
    )


def list_quiz_questions(chapter_id: str) -> list[Dict[str, Any]]:
    return _rows(
        _query(
            """
            SELECT id, chapter_id, prompt, options, correct_answer, explanation, position
            FROM quiz_questions WHERE chapter_id = ? ORDER BY position, id
            """,
            (chapter_id,),
        ),
        ("options",),
    )


def get_quiz_question(question_id: str) -> Optional[Dict[str, Any]]:
    return _row(
        _query(
            """
            SELECT id, chapter_id, prompt, options, correct_answer, explanation, position
            FROM quiz_questions WHERE id = ?
            """,
            (question_id,),
        ),
        ("options",),
    )


# -------------- progress tracking --------------
_PROGRESS_COLUMNS = (
    "user_id",
    "unit_type",
    "unit_id",
    "status",
    "score",
    "best_score",
    "attempts",
    "score_history",
    "started_at",
    "content_viewed_at",
    "quiz_started_at",
    "completed_at",
    "updated_at",
)


def get_progress(user_id: str, unit_type: str, unit_id: str) -> Optional[Dict[str, Any]]:
    return _row(
        _query(
            f"SELECT {', '.join(_PROGRESS_COLUMNS)} FROM user_progress WHERE user_id = ? AND unit_type = ? AND unit_id = ?",
            (user_id, unit_type, unit_id),
        ),
        ("score_history",),
    )


def list_progress(user_id: str, unit_type: Optional[str] = None) -> list[Dict[str, Any]]:
    if unit_type:
        rows = _query(
            f"SELECT {', '.join(_PROGRESS_COLUMNS)} FROM user_progress WHERE user_id = ? AND unit_type = ? ORDER BY unit_id",
            (user_id, unit_type),
        )
    else:
        rows = _query(
            f"SELECT {', '.join(_PROGRESS_COLUMNS)} FROM user_progress WHERE user_id = ? ORDER BY unit_type, unit_id",
            (user_id,),
        )
    return _rows(rows, ("score_history",))


def save_progress(record: Mapping[str, Any]) -> Dict[str, Any]:
    """Upsert the full progress row keyed by (user_id, unit_type, unit_id)."""
    values = dict(record)
    history = values.get("score_history")
    values["score_history"] = json_dumps(history) if history is not None else None
    values["attempts"] = int(values.get("attempts") or 0)
    placeholders = ",".join("?" for _ in _PROGRESS_COLUMNS)
    updates = ", ".join(
        f"{column}=excluded.{column}" for column in _PROGRESS_COLUMNS if column not in {"user_id", "unit_type", "unit_id"}
    )
    _exec(
        f"""
        INSERT INTO user_progress({', '.join(_PROGRESS_COLUMNS)}) VALUES ({placeholders})
        ON CONFLICT(user_id, unit_type, unit_id) DO UPDATE SET {updates}
        """,
        [values.get(column) for column in _PROGRESS_COLUMNS],
    )
    return get_progress(values["user_id"], values["unit_type"], values["unit_id"])


def record_quiz_answer(
    user_id: str,
    chapter_id: str,
    question_id: str,
    attempt: int,
    answer: str,
    is_correct: bool,
    answered_at: str,
) -> None:
    _exec(
        """
        INSERT INTO quiz_answers(user_id, chapter_id, question_id, attempt, answer, is_correct, answered_at)
        VALUES (?,?,?,?,?,?,?)
        ON CONFLICT(user_id, question_id, attempt) DO UPDATE SET
          answer=excluded.answer, is_correct=excluded.is_correct, answered_at=excluded.answered_at
        """,
        (user_id, chapter_id, question_id, int(attempt), answer, 1 if is_correct else 0, answered_at),
    )


def list_quiz_answers(user_id: str, chapter_id: str, attempt: int) -> list[Dict[str, Any]]:
    return _rows(
        _query(
            """
            SELECT question_id, answer, is_correct, answered_at
            FROM quiz_answers WHERE user_id = ? AND chapter_id = ? AND attempt = ?
            ORDER BY answered_at, id
            """,
            (user_id, chapter_id, int(attempt)),
        )
    )


# -------------- approval rules / evaluations / metrics --------------
_RULE_COLUMNS = (
    "id, name, subject_type, version, min_score, max_score, description, "
    "is_active, supersedes_id, created_by, created_at"
)
_EVALUATION_COLUMNS = (
    "id, rule_id, rule_version, user_id, subject_type, subject_id, score, threshold, passed, details, created_at"
)


def _normalize_rule(item: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if item is not None:
        item["is_active"] = bool(item["is_active"])
    return item


def _insert_rule(con: sqlite3.Connection, rule: Mapping[str, Any]) -> None:
    con.execute(
        f"INSERT INTO approval_rules({_RULE_COLUMNS}) VALUES (?,?,?,?,?,?,?,?,?,?,?)",
        (
            rule["id"],
            rule["name"],
            rule["subject_type"],
            int(rule["version"]),
            float(rule["min_score"]),
            float(rule["max_score"]),
            rule.get("description"),
            1 if rule.get("is_active", True) else 0,
            rule.get("supersedes_id"),
            rule.get("created_by"),
            rule["created_at"],
        ),
    )


def insert_approval_rule(rule: Mapping[str, Any]) -> Dict[str, Any]:
    with _conn() as con:
        _insert_rule(con, rule)
        con.commit()
    return get_approval_rule(rule["id"])


def replace_approval_rule(previous_id: str, rule: Mapping[str, Any]) -> Dict[str, Any]:
    """Deactivate ``previous_id`` and insert its successor in one transaction."""
    with _conn() as con:
        cur = con.execute(
            "UPDATE approval_rules SET is_active = 0 WHERE id = ? AND is_active = 1",
            (previous_id,),
        )
        if cur.rowcount != 1:
            con.rollback()
            raise ValueError("rule is not active")
        _insert_rule(con, rule)
        con.commit()
    return get_approval_rule(rule["id"])


def get_approval_rule(rule_id: str) -> Optional[Dict[str, Any]]:
    return _normalize_rule(_row(_query(f"SELECT {_RULE_COLUMNS} FROM approval_rules WHERE id = ?", (rule_id,))))


def get_active_approval_rule(subject_type: str) -> Optional[Dict[str, Any]]:
    return _normalize_rule(
        _row(
            _query(
                f"""
                SELECT {_RULE_COLUMNS} FROM approval_rules
                WHERE subject_type = ? AND is_active = 1
                ORDER BY created_at DESC, rowid DESC LIMIT 1
                """,
                (subject_type,),
            )
        )
    )


def find_active_approval_rule_by_name(name: str) -> Optional[Dict[str, Any]]:
    return _normalize_rule(
        _row(_query(f"SELECT {_RULE_COLUMNS} FROM approval_rules WHERE name = ? AND is_active = 1", (name,)))
    )


def list_approval_rules(subject_type: Optional[str] = None, include_inactive: bool = False) -> list[Dict[str, Any]]:
    clauses: list[str] = []
    params: list[Any] = []
    if subject_type:
        clauses.append("subject_type = ?")
        params.append(subject_type)
    if not include_inactive:
        clauses.append("is_active = 1")
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    rows = _query(
        f"SELECT {_RULE_COLUMNS} FROM approval_rules {where} ORDER BY name, version DESC",
        params,
    )
    return [_normalize_rule(item) for item in _rows(rows)]


def _normalize_evaluation(item: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if item is not None:
        item["passed"] = bool(item["passed"])
    return item


def insert_approval_evaluation(evaluation: Mapping[str, Any]) -> Dict[str, Any]:
    _exec(
        f"INSERT INTO approval_evaluations({_EVALUATION_COLUMNS}) VALUES (?,?,?,?,?,?,?,?,?,?,?)",
        (
            evaluation["id"],
            evaluation["rule_id"],
            int(evaluation["rule_version"]),
            evaluation["user_id"],
            evaluation["subject_type"],
            evaluation["subject_id"],
            float(evaluation["score"]),
            float(evaluation["threshold"]),
            1 if evaluation["passed"] else 0,
            json_dumps(evaluation.get("details") or {}),
            evaluation["created_at"],
        ),
    )
    return get_approval_evaluation(evaluation["id"])


def get_approval_evaluation(evaluation_id: str) -> Optional[Dict[str, Any]]:
    return _normalize_evaluation(
        _row(
            _query(f"SELECT {_EVALUATION_COLUMNS} FROM approval_evaluations WHERE id = ?", (evaluation_id,)),
            ("details",),
        )
    )


def list_approval_evaluations(
    *,
    rule_id: Optional[str] = None,
    user_id: Optional[str] = None,
    subject_type: Optional[str] = None,
    subject_id: Optional[str] = None,
    limit: int = 100,
) -> list[Dict[str, Any]]:
    clauses: list[str] = []
    params: list[Any] = []
    for column, value in (
        ("rule_id", rule_id),
        ("user_id", user_id),
        ("subject_type", subject_type),
        ("subject_id", subject_id),
    ):
        if value:
            clauses.append(f"{column} = ?")
            params.append(value)
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    params.append(int(limit))
    rows = _query(
        f"SELECT {_EVALUATION_COLUMNS} FROM approval_evaluations {where} ORDER BY created_at DESC, rowid DESC LIMIT ?",
        params,
    )
    return [_normalize_evaluation(item) for item in _rows(rows, ("details",))]


def aggregate_approval_evaluations(rule_id: str) -> Dict[str, Any]:
    rows = _query(
        """
        SELECT COUNT(*) AS total,
               COALESCE(SUM(passed), 0) AS passed,
               AVG(score) AS average_score,
               MIN(score) AS lowest_score,
               MAX(score) AS highest_score,
               MAX(created_at) AS last_evaluated_at
        FROM approval_evaluations WHERE rule_id = ?
        """,
        (rule_id,),
    )
    return dict(rows[0])


def save_approval_metrics(snapshot: Mapping[str, Any]) -> Dict[str, Any]:
    _exec(
        """
        INSERT INTO approval_metrics(
          rule_id, total, passed, failed, pass_rate, average_score,
          lowest_score, highest_score, last_evaluated_at, computed_at
        ) VALUES (?,?,?,?,?,?,?,?,?,?)
        ON CONFLICT(rule_id) DO UPDATE SET
          total=excluded.total, passed=excluded.passed, failed=excluded.failed,
          pass_rate=excluded.pass_rate, average_score=excluded.average_score,
          lowest_score=excluded.lowest_score, highest_score=excluded.highest_score,
          last_evaluated_at=excluded.last_evaluated_at, computed_at=excluded.computed_at
        """,
        (
            snapshot["rule_id"],
            int(snapshot["total"]),
            int(snapshot["passed"]),
            int(snapshot["failed"]),
            snapshot.get("pass_rate"),
            snapshot.get("average_score"),
            snapshot.get("lowest_score"),
            snapshot.get("highest_score"),
            snapshot.get("last_evaluated_at"),
            snapshot["computed_at"],
        ),
    )
    return get_approval_metrics(snapshot["rule_id"])


def get_approval_metrics(rule_id: str) -> Optional[Dict[str, Any]]:
    return _row(
        _query(
            """
            SELECT rule_id, total, passed, failed, pass_rate, average_score,
                   lowest_score, highest_score, last_evaluated_at, computed_at
            FROM approval_metrics WHERE rule_id = ?
            """,
            (rule_id,),
        )
    )


# -------------- interview practice --------------
_INTERVIEW_COLUMNS = (
    "id",
    "user_id",
    "interview_type",
    "title",
    "difficulty",
    "status",
    "questions",
    "answers",
    "conversation",
    "notes",
    "fluency_score",
    "grammar_score",
    "vocabulary_score",
    "pronunciation_score",
    "confidence_score",
    "completeness_score",
    "overall_score",
    "evaluation",
    "created_at",
    "updated_at",
    "completed_at",
)
_INTERVIEW_JSON = ("questions", "answers", "conversation", "evaluation")


def _interview_params(session: Mapping[str, Any]) -> list[Any]:
    params: list[Any] = []
    for column in _INTERVIEW_COLUMNS:
        value = session.get(column)
        if column in _INTERVIEW_JSON and value is not None:
            value = json_dumps(value)
        params.append(value)
    return params


def insert_interview_session(session: Mapping[str, Any]) -> Dict[str, Any]:
    placeholders = ",".join("?" for _ in _INTERVIEW_COLUMNS)
    _exec(
        f"INSERT INTO interview_sessions({', '.join(_INTERVIEW_COLUMNS)}) VALUES ({placeholders})",
        _interview_params(session),
    )
    return get_interview_session(session["id"])


def save_interview_session(session: Mapping[str, Any]) -> Dict[str, Any]:
    columns = [column for column in _INTERVIEW_COLUMNS if column not in {"id", "user_id", "created_at"}]
    assignments = ", ".join(f"{column} = ?" for column in columns)
    values = dict(zip(_INTERVIEW_COLUMNS, _interview_params(session)))
    _exec(
        f"UPDATE interview_sessions SET {assignments} WHERE id = ?",
        [values[column] for column in columns] + [session["id"]],
    )
    return get_interview_session(session["id"])


def get_interview_session(session_id: str) -> Optional[Dict[str, Any]]:
    return _row(
        _query(f"SELECT {', '.join(_INTERVIEW_COLUMNS)} FROM interview_sessions WHERE id = ?", (session_id,)),
        _INTERVIEW_JSON,
    )


def list_interview_sessions(
    user_id: str,
    *,
    interview_type: Optional[str] = None,
    completed: Optional[bool] = None,
    min_score: Optional[float] = None,
    since: Optional[str] = None,
    limit: Optional[int] = 100,
    offset: int = 0,
) -> list[Dict[str, Any]]:
    clauses = ["user_id = ?"]
    params: list[Any] = [user_id]
    if interview_type:
        clauses.append("interview_type = ?")
        params.append(interview_type)
    if completed is not None:
        clauses.append("status = 'completed'" if completed else "status != 'completed'")
    if min_score is not None:
        clauses.append("overall_score >= ?")
        params.append(float(min_score))
    if since:
        clauses.append("created_at >= ?")
        params.append(since)
    params.extend([-1 if limit is None else int(limit), int(offset)])
    rows = _query(
        f"""
        SELECT {', '.join(_INTERVIEW_COLUMNS)} FROM interview_sessions
        WHERE {' AND '.join(clauses)}
        ORDER BY created_at DESC, rowid DESC
        LIMIT ? OFFSET ?
        """,
        params,
    )
    return _rows(rows, _INTERVIEW_JSON)


# -------------- practice sessions --------------
_PRACTICE_COLUMNS = "id, user_id, practice_type, unit_id, score, passed, details, created_at"


def _normalize_practice(item: Dict[str, Any]) -> Dict[str, Any]:
    if item["passed"] is not None:
        item["passed"] = bool(item["passed"])
    return item


def insert_practice_session(session: Mapping[str, Any]) -> Dict[str, Any]:
    passed = session.get("passed")
    score = session.get("score")
    _exec(
        f"INSERT INTO practice_sessions({_PRACTICE_COLUMNS}) VALUES (?,?,?,?,?,?,?,?)",
        (
            session["id"],
            session["user_id"],
            session["practice_type"],
            session["unit_id"],
            None if score is None else float(score),
            None if passed is None else (1 if passed else 0),
            json_dumps(session.get("details") or {}),
            session["created_at"],
        ),
    )
    return _normalize_practice(
        _row(
            _query(f"SELECT {_PRACTICE_COLUMNS} FROM practice_sessions WHERE id = ?", (session["id"],)),
            ("details",),
        )
    )


def list_practice_sessions(
    user_id: str,
    practice_type: Optional[str] = None,
    *,
    limit: int = 50,
    offset: int = 0,
) -> list[Dict[str, Any]]:
    clauses = ["user_id = ?"]
    params: list[Any] = [user_id]
    if practice_type:
        clauses.append("practice_type = ?")
        params.append(practice_type)
    params.extend([int(limit), int(offset)])
    rows = _query(
        f"""
        SELECT {_PRACTICE_COLUMNS} FROM practice_sessions
        WHERE {' AND '.join(clauses)}
        ORDER BY created_at DESC, rowid DESC
        LIMIT ? OFFSET ?
        """,
        params,
    )
    return [_normalize_practice(item) for item in _rows(rows, ("details",))]


def summarize_practice_sessions(user_id: str) -> list[Dict[str, Any]]:
    return _rows(
        _query(
            """
            SELECT practice_type,
                   COUNT(*) AS total,
                   COALESCE(SUM(passed), 0) AS passed,
                   AVG(score) AS average_score,
                   MAX(created_at) AS last_practiced_at
            FROM practice_sessions
            WHERE user_id = ?
            GROUP BY practice_type
            """,
            (user_id,),
        )
    )
