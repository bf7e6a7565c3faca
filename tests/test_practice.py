import pytest

from errors import ValidationFailed

FIRST = "reading-morning-routine"
RIGHT = {"q-morning-1": "At six o'clock", "q-morning-2": "Her brother", "q-morning-3": "By bus"}


def test_record_and_list_history(engines):
    engines.practice.record("alice", "vocabulary", "vocab-greetings", score=90, passed=True)
    engines.clock.advance(minutes=5)
    engines.practice.record("alice", "reading", FIRST, details={"word_count": 70})
    engines.practice.record("bob", "quiz", FIRST, score=40, passed=False)

    history = engines.practice.list_history("alice")

    assert [entry["practice_type"] for entry in history] == ["reading", "vocabulary"]
    assert history[0]["passed"] is None
    assert history[0]["details"] == {"word_count": 70}
    assert history[1]["passed"] is True
    assert engines.practice.list_history("alice", "vocabulary", limit=1)[0]["unit_id"] == "vocab-greetings"


def test_unknown_practice_type_is_rejected(engines):
    with pytest.raises(ValidationFailed):
        engines.practice.record("alice", "speaking", "x")
    with pytest.raises(ValidationFailed):
        engines.practice.list_history("alice", "speaking")


def test_reading_flow_records_reading_and_quiz_sessions(engines):
    engines.reading.get_content("alice", FIRST)
    engines.reading.get_content("alice", FIRST)
    engines.reading.get_quiz_questions("alice", FIRST)
    for question_id, answer in RIGHT.items():
        engines.reading.submit_quiz_answer("alice", FIRST, question_id, answer)
    result = engines.reading.complete_chapter("alice", FIRST)

    reading = engines.practice.list_history("alice", "reading")
    quiz = engines.practice.list_history("alice", "quiz")

    assert len(reading) == 1
    assert reading[0]["details"]["word_count"] > 0
    assert len(quiz) == 1
    assert quiz[0]["score"] == 100
    assert quiz[0]["passed"] is True
    assert quiz[0]["details"]["evaluation_id"] == result["evaluation"]["id"]


def test_vocabulary_completion_is_recorded(engines):
    engines.progress.complete_chapter("alice", "vocab-greetings", 75)

    [session] = engines.practice.list_history("alice", "vocabulary")
    assert session["unit_id"] == "vocab-greetings"
    assert session["score"] == 75
    assert session["details"] == {"attempt": 1}


def test_summary_per_type(engines):
    engines.progress.complete_chapter("alice", "vocab-greetings", 80)
    engines.progress.complete_chapter("alice", "vocab-travel", 90)
    engines.practice.record("alice", "quiz", FIRST, score=40, passed=False)

    summary = engines.practice.get_summary("alice")

    assert summary["total"] == 3
    assert summary["by_type"]["vocabulary"]["total"] == 2
    assert summary["by_type"]["vocabulary"]["average_score"] == 85
    assert summary["by_type"]["quiz"]["passed"] == 0
    assert summary["by_type"]["reading"] == {
        "total": 0,
        "passed": 0,
        "average_score": None,
        "last_practiced_at": None,
    }
