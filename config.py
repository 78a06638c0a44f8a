import os
from functools import lru_cache
from pathlib import Path
from typing import Optional


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        cron_secret: Optional[str],
        gemini_api_key: Optional[str],
        gemini_model: str,
        smtp_host: str,
        smtp_port: int,
        smtp_username: Optional[str],
        smtp_password: Optional[str],
        smtp_sender: str,
        smtp_starttls: bool,
        smtp_timeout_secs: float,
        throttle_limit: int,
        throttle_period_secs: float,
        budget_alert_threshold: int,
        retry_attempts: int,
        retry_backoff_secs: float,
        dispatch_workers: int,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.cron_secret = cron_secret
        self.gemini_api_key = gemini_api_key
        self.gemini_model = gemini_model
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_username = smtp_username
        self.smtp_password = smtp_password
        self.smtp_sender = smtp_sender
        self.smtp_starttls = smtp_starttls
        self.smtp_timeout_secs = smtp_timeout_secs
        self.throttle_limit = throttle_limit
        self.throttle_period_secs = throttle_period_secs
        self.budget_alert_threshold = budget_alert_threshold
        self.retry_attempts = retry_attempts
        self.retry_backoff_secs = retry_backoff_secs
        self.dispatch_workers = dispatch_workers


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("LEDGER_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "ledger.db"
    database_url = os.getenv("LEDGER_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("LEDGER_TIMEZONE", "UTC")
    cron_secret = os.getenv("LEDGER_CRON_SECRET") or None
    gemini_api_key = os.getenv("LEDGER_GEMINI_API_KEY") or None
    gemini_model = os.getenv("LEDGER_GEMINI_MODEL", "gemini-1.5-flash")
    smtp_host = os.getenv("LEDGER_SMTP_HOST", "localhost")
    smtp_port = int(os.getenv("LEDGER_SMTP_PORT", "25"))
    smtp_username = os.getenv("LEDGER_SMTP_USERNAME") or None
    smtp_password = os.getenv("LEDGER_SMTP_PASSWORD") or None
    smtp_sender = os.getenv("LEDGER_SMTP_SENDER", "reports@localhost")
    smtp_starttls = _env_flag("LEDGER_SMTP_STARTTLS", "false")
    smtp_timeout_secs = float(os.getenv("LEDGER_SMTP_TIMEOUT_SECS", "10"))
    throttle_limit = int(os.getenv("LEDGER_THROTTLE_LIMIT", "10"))
    throttle_period_secs = float(os.getenv("LEDGER_THROTTLE_PERIOD_SECS", "60"))
    budget_alert_threshold = int(os.getenv("LEDGER_BUDGET_ALERT_THRESHOLD", "80"))
    retry_attempts = int(os.getenv("LEDGER_RETRY_ATTEMPTS", "3"))
    retry_backoff_secs = float(os.getenv("LEDGER_RETRY_BACKOFF_SECS", "1"))
    dispatch_workers = int(os.getenv("LEDGER_DISPATCH_WORKERS", "4"))
    return Settings(
        database_url=database_url,
        timezone=timezone,
        cron_secret=cron_secret,
        gemini_api_key=gemini_api_key,
        gemini_model=gemini_model,
        smtp_host=smtp_host,
        smtp_port=smtp_port,
        smtp_username=smtp_username,
        smtp_password=smtp_password,
        smtp_sender=smtp_sender,
        smtp_starttls=smtp_starttls,
        smtp_timeout_secs=smtp_timeout_secs,
        throttle_limit=throttle_limit,
        throttle_period_secs=throttle_period_secs,
        budget_alert_threshold=budget_alert_threshold,
        retry_attempts=retry_attempts,
        retry_backoff_secs=retry_backoff_secs,
        dispatch_workers=dispatch_workers,
    )
