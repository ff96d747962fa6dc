from pydantic import model_validator
from pydantic_settings import BaseSettings
from typing import Optional


class ReminderSettings(BaseSettings):
    # Celery configuration
    CELERY_BROKER_URL: Optional[str] = None
    CELERY_RESULT_BACKEND: Optional[str] = None

    # Dispatch cadence; the deadline must expire before the next run starts
    DISPATCH_INTERVAL_SECONDS: int = 60
    CYCLE_DEADLINE_SECONDS: int = 50
    WORKER_CONCURRENCY: int = 4
    DUE_BATCH_LIMIT: Optional[int] = None
    MAX_BACKLOG_STEPS: int = 1000

    # Notification content
    NOTIFICATION_TITLE: str = "Update Bell"
    NOTIFICATION_TTL_SECONDS: int = 60

    # FCM
    FCM_PROJECT_ID: Optional[str] = None
    FCM_CREDENTIALS_JSON: Optional[str] = None  # path or inline JSON via env

    # Web Push (VAPID)
    VAPID_PRIVATE_KEY: Optional[str] = None
    VAPID_SUBJECT: str = "mailto:admin@example.com"

    # Inactive recipient sweep
    INACTIVE_AFTER_DAYS: float = 182.5
    SWEEP_INTERVAL_SECONDS: int = 86400

    # Metrics
    METRICS_ENABLED: bool = True

    class Config:
        env_prefix = "REMINDER_"

    @model_validator(mode="after")
    def _check_cadence(self) -> "ReminderSettings":
        if self.WORKER_CONCURRENCY < 1:
            raise ValueError("WORKER_CONCURRENCY must be at least 1")
        if self.CYCLE_DEADLINE_SECONDS >= self.DISPATCH_INTERVAL_SECONDS:
            raise ValueError("CYCLE_DEADLINE_SECONDS must be shorter than DISPATCH_INTERVAL_SECONDS")
        return self


settings = ReminderSettings()
