import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from types import SimpleNamespace

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


class FakeClock:
    """Deterministic clock injected into the engines."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2024, 3, 1, 8, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def temp_db(monkeypatch, tmp_path):
    import content
    import db

    db_path = tmp_path / "test.db"
    monkeypatch.setattr(db, "DB_PATH", str(db_path))

    # Reset the connection pool for each test
    db._pool = db.SQLiteConnectionPool(str(db_path), max_connections=10)
    db.init()
    content.reset_seed_state()
    content.ensure_seed_content()
    yield str(db_path)
    db._pool.close_all()
    content.reset_seed_state()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def engines(temp_db, clock):
    from engines.approval import INTERVIEW_PRACTICE, READING_CHAPTER, ApprovalEngine
    from engines.interview import InterviewPracticeEngine
    from engines.lives import LivesEngine
    from engines.practice import PracticeLog
    from engines.progress import ProgressEngine
    from engines.reading import ReadingFlowEngine
    from engines.vocabulary import TranslationService

    lives = LivesEngine(max_lives=5, refill_interval=timedelta(hours=24), clock=clock)
    approval = ApprovalEngine(clock=clock)
    approval.ensure_default_rules({READING_CHAPTER: 70, INTERVIEW_PRACTICE: 60})
    practice = PracticeLog(clock=clock)
    return SimpleNamespace(
        lives=lives,
        approval=approval,
        practice=practice,
        translations=TranslationService(),
        progress=ProgressEngine(lives=lives, practice=practice, clock=clock),
        reading=ReadingFlowEngine(lives=lives, approval=approval, practice=practice, clock=clock),
        interview=InterviewPracticeEngine(approval=approval, clock=clock),
        clock=clock,
    )
