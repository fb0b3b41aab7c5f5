from pydantic_settings import BaseSettings

from tablematch.models import ScoringWeights


class Settings(BaseSettings):
    redis_url: str = "redis://localhost:6379"
    log_level: str = "INFO"

    # Formation defaults, overridable per request
    target_group_size: int = 6
    min_group_size: int = 3
    min_group_score: float = 70.0
    threshold_step_down: float = 5.0
    min_threshold: float = 50.0
    max_attempts_per_threshold: int = 10
    acceptable_threshold: float = 60.0
    max_unmatched_percent: float = 20.0
    # Caps how far threshold_step_down can subdivide the relaxation range
    max_threshold_levels: int = 100

    # JSON in the environment, e.g. TABLEMATCH_SCORING_WEIGHTS='{"energy": {"weight": 2}}'
    scoring_weights: ScoringWeights = ScoringWeights()

    # Manual overrides cannot grow a table past this
    max_group_size: int = 8

    lock_timeout_seconds: float = 60.0
    override_lock_wait_seconds: float = 2.0
    matching_timeout_seconds: float = 30.0

    model_config = {
        "env_prefix": "TABLEMATCH_",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
    }


settings = Settings()
