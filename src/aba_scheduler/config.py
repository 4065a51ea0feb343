"""
Configuration settings for the ABA Session Scheduling Service
"""

from datetime import time
from functools import lru_cache
from typing import List

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # API Settings
    app_name: str = "ABA Session Scheduler"
    app_version: str = "1.0.0"
    host: str = "0.0.0.0"
    port: int = 8000
    debug: bool = False

    # Logging
    log_level: str = "INFO"
    log_dir: str = "logs"

    # Persistence ("memory" keeps everything in-process)
    database_url: str = "memory://"
    database_min_pool_size: int = 5
    database_max_pool_size: int = 20

    # Redis Settings (for caching continuity scores)
    use_redis: bool = False
    redis_host: str = "localhost"
    redis_port: int = 6379
    redis_db: int = 0
    redis_password: str = ""
    cache_ttl: int = 900  # 15 minutes

    # Business Rules
    business_start_time: time = time(9, 0)
    business_end_time: time = time(19, 0)
    business_days: List[int] = Field(default_factory=lambda: [0, 1, 2, 3, 4])  # Monday=0
    session_duration_hours: float = 3.0
    max_sessions_per_day: int = 3
    min_break_minutes: int = 30
    reject_past_sessions: bool = True

    # Disruption Recovery
    opportunity_concurrency: int = 5
    max_alternative_opportunities: int = 5
    bulk_cancel_max_alternatives: int = 3
    reschedule_search_days: int = 7
    max_reschedule_opportunities: int = 5
    alternative_slot_search_days: int = 7
    max_alternative_slots: int = 10

    # Analytics
    trend_change_threshold: float = 20.0  # percent
    trend_min_days: int = 14
    client_disruption_alert_rate: float = 20.0
    rbt_disruption_alert_rate: float = 15.0
    rbt_unavailability_alert_count: int = 5
    rbt_caused_disruption_alert_count: int = 3
    high_disruption_count: int = 10
    top_reasons_limit: int = 10

    @field_validator("business_days")
    @classmethod
    def valid_weekdays(cls, v):
        if any(day < 0 or day > 6 for day in v):
            raise ValueError("business_days must contain weekday numbers 0 (Monday) to 6 (Sunday)")
        return sorted(set(v))

    class Config:
        env_file = ".env"
        case_sensitive = False
        extra = 'ignore'


@lru_cache()
def get_settings() -> Settings:
    """Get application settings (cached)"""
    return Settings()


# Global settings instance
settings = get_settings()
