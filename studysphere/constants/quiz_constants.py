"""Quiz-related constants shared across core and server layers."""

OPTIONS_PER_QUESTION: int = 4
NOT_ANSWERED: str = "Not answered"
TICK_INTERVAL_SECONDS: float = 1.0
AUTOSAVE_QUIET_SECONDS: float = 1.0
ROLE_CACHE_TTL_SECONDS: int = 10 * 60
DEFAULT_ATTEMPT_LIMIT: int = 50
SCORE_HISTORY_LENGTH: int = 20
LOW_TIME_WARNING_SECONDS: int = 60
DEFAULT_PREFERRED_TIME_LIMIT_MINUTES: int = 10
