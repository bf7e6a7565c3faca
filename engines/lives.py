"""Daily lives: a per-user attempt budget that refills on a timer.

The counter always stays within ``[0, max_lives]``. A refill check runs before
every read or consumption: once ``refill_interval`` has elapsed since the last
refill the counter jumps back to ``max_lives``. Consumption is a conditional
decrement in SQL so two concurrent requests can never push the counter below
zero.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

import db
from errors import NoLivesRemaining

_LOGGER = logging.getLogger("elearn.lives")

DEFAULT_MAX_LIVES = 5
DEFAULT_REFILL_INTERVAL = timedelta(hours=24)


@dataclass
class LivesStatus:
    user_id: str
    lives_remaining: int
    max_lives: int
    last_refill_at: str
    next_refill_at: str
    seconds_until_refill: int

    @property
    def has_lives(self) -> bool:
        return self.lives_remaining > 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class LivesEngine:
    """Lazily creates, refills and consumes a user's daily lives."""

    def __init__(
        self,
        store: Any = db,
        *,
        max_lives: int = DEFAULT_MAX_LIVES,
        refill_interval: timedelta = DEFAULT_REFILL_INTERVAL,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        if max_lives < 1:
            raise ValueError("max_lives must be at least 1")
        if refill_interval <= timedelta(0):
            raise ValueError("refill_interval must be positive")
        self.store = store
        self.max_lives = max_lives
        self.refill_interval = refill_interval
        self._clock = clock or db.utcnow

    def _now(self) -> datetime:
        return db._coerce_to_utc(self._clock())

    def _load(self, user_id: str, now: datetime) -> Dict[str, Any]:
        record = self.store.get_daily_lives(user_id)
        if record is None:
            record = self.store.create_daily_lives(user_id, self.max_lives, db.to_iso(now))
            _LOGGER.info("Created daily lives for %s at %d", user_id, record["lives_remaining"])
        return record

    def _refill_if_due(self, user_id: str, record: Dict[str, Any], now: datetime) -> Dict[str, Any]:
        last_refill = db._parse_timestamp(record["last_refill_at"]) or now
        if now - last_refill < self.refill_interval:
            return record
        if self.store.refill_daily_lives(user_id, record["last_refill_at"], db.to_iso(now)):
            _LOGGER.info("Refilled daily lives for %s", user_id)
        # Either we refilled or a concurrent request did; the stored row is current.
        return self.store.get_daily_lives(user_id)

    def _status(self, record: Dict[str, Any], now: datetime) -> LivesStatus:
        last_refill = db._parse_timestamp(record["last_refill_at"]) or now
        next_refill = last_refill + self.refill_interval
        remaining = max(0, int((next_refill - now).total_seconds()))
        return LivesStatus(
            user_id=record["user_id"],
            lives_remaining=int(record["lives_remaining"]),
            max_lives=int(record["max_lives"]),
            last_refill_at=record["last_refill_at"],
            next_refill_at=db.to_iso(next_refill),
            seconds_until_refill=remaining,
        )

    def get_status(self, user_id: str) -> LivesStatus:
        now = self._now()
        record = self._refill_if_due(user_id, self._load(user_id, now), now)
        return self._status(record, now)

    def ensure_available(self, user_id: str) -> LivesStatus:
        status = self.get_status(user_id)
        if not status.has_lives:
            raise NoLivesRemaining(retry_after=status.seconds_until_refill)
        return status

    def consume_life(self, user_id: str) -> LivesStatus:
        now = self._now()
        record = self._refill_if_due(user_id, self._load(user_id, now), now)
        if not self.store.decrement_daily_lives(user_id, db.to_iso(now)):
            status = self._status(record, now)
            _LOGGER.info("User %s has no lives left; next refill in %ss", user_id, status.seconds_until_refill)
            raise NoLivesRemaining(retry_after=status.seconds_until_refill)
        status = self._status(self.store.get_daily_lives(user_id), now)
        _LOGGER.debug("User %s consumed a life (%d/%d left)", user_id, status.lives_remaining, status.max_lives)
        return status
