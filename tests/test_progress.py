import pytest

from engines.progress import annotate_statuses, new_progress, record_attempt
from errors import ChapterLocked, NotFound, ValidationFailed


def test_annotate_statuses_unlocks_in_order():
    units = [{"id": "a"}, {"id": "b"}, {"id": "c"}]
    progress = {"a": {"status": "completed", "best_score": 90, "attempts": 1}}

    annotated = annotate_statuses(units, progress)

    assert [u["status"] for u in annotated] == ["completed", "available", "locked"]
    assert [u["unlocked"] for u in annotated] == [True, True, False]
    assert annotated[0]["best_score"] == 90


def test_record_attempt_keeps_best_score():
    progress = new_progress("alice", "chapter", "a", "in_progress", "2024-03-01T08:00:00+00:00")

    record_attempt(progress, 80, True, "t1")
    record_attempt(progress, 60, False, "t2")

    assert progress["attempts"] == 2
    assert progress["score"] == 60
    assert progress["best_score"] == 80
    assert [entry["attempt"] for entry in progress["score_history"]] == [1, 2]


def test_vocabulary_chapters_listing(engines):
    chapters = engines.progress.list_chapters("alice")

    assert [c["id"] for c in chapters] == ["vocab-greetings", "vocab-travel", "vocab-workplace"]
    assert chapters[0]["status"] == "available"
    assert chapters[1]["status"] == "locked"
    assert chapters[0]["word_count"] > 0


def test_get_chapter_returns_vocabulary_and_marks_started(engines):
    chapter = engines.progress.get_chapter("alice", "vocab-greetings")

    assert chapter["status"] == "in_progress"
    assert chapter["vocabulary"]
    assert {"word", "definition"} <= set(chapter["vocabulary"][0])


def test_locked_and_unknown_chapters(engines):
    with pytest.raises(ChapterLocked):
        engines.progress.get_chapter("alice", "vocab-travel")
    with pytest.raises(NotFound):
        engines.progress.get_chapter("alice", "vocab-missing")


def test_complete_chapter_unlocks_next(engines):
    saved = engines.progress.complete_chapter("alice", "vocab-greetings", 85)

    assert saved["status"] == "completed"
    assert saved["best_score"] == 85
    assert engines.progress.get_chapter("alice", "vocab-travel")["status"] == "in_progress"


def test_complete_chapter_rejects_out_of_range_score(engines):
    with pytest.raises(ValidationFailed):
        engines.progress.complete_chapter("alice", "vocab-greetings", 120)


def test_summary_counts_units_and_lives(engines):
    engines.progress.complete_chapter("alice", "vocab-greetings", 90)
    engines.progress.get_chapter("alice", "vocab-travel")
    engines.lives.consume_life("alice")

    summary = engines.progress.get_summary("alice")

    assert summary["units"]["chapter"] == {"total": 3, "started": 2, "completed": 1}
    assert summary["units"]["reading_chapter"]["completed"] == 0
    assert summary["average_best_score"] == 90
    assert summary["lives"]["lives_remaining"] == 4
