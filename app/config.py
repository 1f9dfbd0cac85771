"""
Application configuration.
Settings are read from environment variables or a local .env file.
"""

from datetime import timedelta
from typing import Any, Dict

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    DATABASE_URL: str = "sqlite:///./petmeds.db"

    PUSH_GATEWAY_URL: str = "http://push-gateway:8002/send"
    PUSH_GATEWAY_TIMEOUT_SECONDS: float = 10.0

    REMINDER_LEAD_MINUTES: int = 15
    OVERDUE_GRACE_MINUTES: int = 30
    SNOOZE_MINUTES: int = 15
    MATERIALIZE_HORIZON_DAYS: int = 30
    LOG_MATCH_TOLERANCE_HOURS: int = 12

    REMINDER_SWEEP_SECONDS: int = 60
    OVERDUE_SWEEP_MINUTES: int = 5
    MATERIALIZE_CRON_HOUR: int = 2

    LOG_LEVEL: str = "INFO"

    def flow_options(self) -> Dict[str, Any]:
        """Keyword arguments for ``petmeds.DoseFlow``."""
        return {
            "reminder_lead_time": timedelta(minutes=self.REMINDER_LEAD_MINUTES),
            "overdue_grace": timedelta(minutes=self.OVERDUE_GRACE_MINUTES),
            "snooze_delay": timedelta(minutes=self.SNOOZE_MINUTES),
            "horizon": timedelta(days=self.MATERIALIZE_HORIZON_DAYS),
            "log_match_tolerance": timedelta(hours=self.LOG_MATCH_TOLERANCE_HOURS),
        }


settings = Settings()
