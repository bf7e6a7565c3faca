import random
import sqlite3
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest

import db
from engines.lives import LivesEngine
from errors import NoLivesRemaining


def test_new_user_starts_with_full_lives(engines):
    status = engines.lives.get_status("alice")

    assert status.lives_remaining == 5
    assert status.max_lives == 5
    assert status.seconds_until_refill == 24 * 3600
    assert db.get_daily_lives("alice")["lives_remaining"] == 5


def test_consume_decrements_by_one(engines):
    status = engines.lives.consume_life("alice")

    assert status.lives_remaining == 4
    assert engines.lives.get_status("alice").lives_remaining == 4


def test_last_life_then_rejection_without_going_negative(engines):
    for _ in range(4):
        engines.lives.consume_life("alice")
    assert engines.lives.get_status("alice").lives_remaining == 1

    status = engines.lives.consume_life("alice")
    assert status.lives_remaining == 0
    assert not status.has_lives

    engines.clock.advance(hours=2)
    with pytest.raises(NoLivesRemaining) as excinfo:
        engines.lives.consume_life("alice")
    assert excinfo.value.retry_after == 22 * 3600
    assert db.get_daily_lives("alice")["lives_remaining"] == 0


def test_ensure_available_raises_when_empty(engines):
    for _ in range(5):
        engines.lives.consume_life("bob")

    with pytest.raises(NoLivesRemaining):
        engines.lives.ensure_available("bob")


def test_refill_after_interval(engines):
    for _ in range(5):
        engines.lives.consume_life("carol")

    engines.clock.advance(hours=23, minutes=59)
    assert engines.lives.get_status("carol").lives_remaining == 0

    engines.clock.advance(minutes=1)
    status = engines.lives.get_status("carol")
    assert status.lives_remaining == 5
    assert status.last_refill_at == db.to_iso(engines.clock.now)


def test_consume_after_interval_refills_first(engines):
    engines.lives.consume_life("dave")
    engines.lives.consume_life("dave")

    engines.clock.advance(days=2)
    assert engines.lives.consume_life("dave").lives_remaining == 4


def test_check_constraint_rejects_out_of_range_values(engines):
    engines.lives.get_status("erin")

    with pytest.raises(sqlite3.IntegrityError):
        db._exec("UPDATE daily_lives SET lives_remaining = -1 WHERE user_id = ?", ("erin",))
    with pytest.raises(sqlite3.IntegrityError):
        db._exec("UPDATE daily_lives SET lives_remaining = max_lives + 1 WHERE user_id = ?", ("erin",))


def test_concurrent_consumption_never_oversubscribes(engines):
    engines.lives.get_status("frank")

    def attempt(_):
        try:
            engines.lives.consume_life("frank")
            return True
        except NoLivesRemaining:
            return False

    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(attempt, range(20)))

    assert sum(results) == 5
    assert db.get_daily_lives("frank")["lives_remaining"] == 0


class InMemoryLivesStore:
    def __init__(self):
        self.rows = {}

    def get_daily_lives(self, user_id):
        row = self.rows.get(user_id)
        return dict(row) if row else None

    def create_daily_lives(self, user_id, max_lives, now_iso):
        self.rows.setdefault(
            user_id,
            {
                "user_id": user_id,
                "lives_remaining": max_lives,
                "max_lives": max_lives,
                "last_refill_at": now_iso,
                "updated_at": now_iso,
            },
        )
        return dict(self.rows[user_id])

    def refill_daily_lives(self, user_id, expected_refill_at, now_iso):
        row = self.rows[user_id]
        if row["last_refill_at"] != expected_refill_at:
            return False
        row.update(lives_remaining=row["max_lives"], last_refill_at=now_iso, updated_at=now_iso)
        return True

    def decrement_daily_lives(self, user_id, now_iso):
        row = self.rows[user_id]
        if row["lives_remaining"] <= 0:
            return False
        row.update(lives_remaining=row["lives_remaining"] - 1, updated_at=now_iso)
        return True


def test_lives_stay_in_range_for_random_sequences(clock):
    store = InMemoryLivesStore()
    engine = LivesEngine(store, max_lives=3, refill_interval=timedelta(hours=6), clock=clock)
    rng = random.Random(1234)
    engine.get_status("u1")

    for _ in range(500):
        action = rng.choice(["consume", "consume", "consume", "wait", "status"])
        if action == "consume":
            try:
                engine.consume_life("u1")
            except NoLivesRemaining as exc:
                assert exc.retry_after is not None and exc.retry_after >= 0
        elif action == "wait":
            clock.advance(hours=rng.randint(0, 8))
        else:
            engine.get_status("u1")
        remaining = store.rows["u1"]["lives_remaining"]
        assert 0 <= remaining <= 3


def test_engine_rejects_invalid_configuration():
    with pytest.raises(ValueError):
        LivesEngine(max_lives=0)
    with pytest.raises(ValueError):
        LivesEngine(refill_interval=timedelta(0))
