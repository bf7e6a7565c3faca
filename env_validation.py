"""Environment variable validation and management."""

import os
import logging
from dataclasses import dataclass
from typing import Dict, FrozenSet, Optional

logger = logging.getLogger(__name__)

class EnvironmentError(Exception):
    """Raised when required environment variables are missing or invalid."""
    pass


_INT_VARS: Dict[str, tuple[int, int]] = {
    # name: (default, minimum)
    "LIVES_MAX": (5, 1),
    "LIVES_REFILL_HOURS": (24, 1),
    "RATE_LIMIT_REQUESTS": (100, 1),
    "RATE_LIMIT_WINDOW_SECONDS": (60, 1),
    "TOKEN_TTL_MINUTES": (1440, 1),
    "READING_PASS_SCORE": (70, 0),
    "INTERVIEW_PASS_SCORE": (60, 0),
}


def default_db_path() -> str:
    explicit = os.getenv("DB_PATH")
    if explicit:
        return explicit
    name = (os.getenv("DATABASE_NAME") or "english_learn_db").strip() or "english_learn_db"
    return name if name.endswith(".db") else f"{name}.db"


def validate_environment() -> None:
    """Validate critical environment variables.

    Raises EnvironmentError if validation fails.
    """
    defaults = {
        "DB_PATH": default_db_path(),
    }

    # Apply defaults before validation so dependent modules see consistent values.
    for var, value in defaults.items():
        if not os.getenv(var):
            os.environ[var] = value
            logger.info("Environment variable %s not set; using default '%s'", var, value)

    optional_vars = {
        "ADMIN_USER_IDS": "Comma separated user ids allowed to manage approval rules",
        "LIVES_MAX": "Maximum number of daily lives",
        "LIVES_REFILL_HOURS": "Hours between lives refills",
    }

    invalid = []
    for var, (default, minimum) in _INT_VARS.items():
        raw = os.getenv(var)
        if raw is None or not raw.strip():
            continue
        try:
            value = int(raw)
        except ValueError:
            invalid.append(f"{var}={raw!r} (expected an integer)")
            continue
        if value < minimum:
            invalid.append(f"{var}={value} (must be >= {minimum})")

    for var in ("READING_PASS_SCORE", "INTERVIEW_PASS_SCORE"):
        value = get_env_int(var, _INT_VARS[var][0])
        if value > 100:
            invalid.append(f"{var}={value} (must be <= 100)")

    if invalid:
        raise EnvironmentError(
            f"Invalid environment variables: {', '.join(invalid)}"
        )

    # Log optional variables status
    for var, description in optional_vars.items():
        if not os.getenv(var):
            logger.warning(f"Optional environment variable not set: {var} ({description})")

def get_env_bool(name: str, default: bool = False) -> bool:
    """Get boolean value from environment variable."""
    value = os.getenv(name)
    if value is None:
        return default
    return value.lower() in {"1", "true", "yes", "on", "enabled"}


def get_env_int(name: str, default: Optional[int] = None) -> int:
    """Get integer value from environment variable, falling back on bad input."""
    if default is None:
        default = _INT_VARS.get(name, (0, 0))[0]
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("Ignoring non-integer value for %s: %r", name, raw)
        return default


@dataclass(frozen=True)
class Settings:
    db_path: str
    lives_max: int
    lives_refill_hours: int
    rate_limit_requests: int
    rate_limit_window_seconds: int
    token_ttl_minutes: int
    reading_pass_score: int
    interview_pass_score: int
    admin_user_ids: FrozenSet[str]
    sql_echo: bool


def load_settings() -> Settings:
    """Validate the environment, then read it into a ``Settings`` snapshot."""
    validate_environment()
    admins = os.getenv("ADMIN_USER_IDS", "")
    return Settings(
        db_path=default_db_path(),
        lives_max=get_env_int("LIVES_MAX"),
        lives_refill_hours=get_env_int("LIVES_REFILL_HOURS"),
        rate_limit_requests=get_env_int("RATE_LIMIT_REQUESTS"),
        rate_limit_window_seconds=get_env_int("RATE_LIMIT_WINDOW_SECONDS"),
        token_ttl_minutes=get_env_int("TOKEN_TTL_MINUTES"),
        reading_pass_score=get_env_int("READING_PASS_SCORE"),
        interview_pass_score=get_env_int("INTERVIEW_PASS_SCORE"),
        admin_user_ids=frozenset(part.strip() for part in admins.split(",") if part.strip()),
        sql_echo=get_env_bool("SQL_ECHO"),
    )
