from dataclasses import dataclass
import os

from dotenv import load_dotenv


load_dotenv()


@dataclass(frozen=True)
class Settings:
    app_name: str
    database_url: str
    log_level: str
    report_dir: str
    allowlist_version: str
    preview_sample_size: int
    max_write_retries: int
    retry_backoff_seconds: float
    audit_hour_utc: int
    audit_minute_utc: int


def get_settings() -> Settings:
    return Settings(
        app_name=os.getenv("APP_NAME", "tripledger"),
        database_url=os.getenv("DATABASE_URL", "sqlite:///./tripledger.db"),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        report_dir=os.getenv("REPORT_DIR", "./outputs/reports"),
        allowlist_version=os.getenv("ALLOWLIST_VERSION", "2026.3"),
        preview_sample_size=int(os.getenv("PREVIEW_SAMPLE_SIZE", "5")),
        max_write_retries=int(os.getenv("MAX_WRITE_RETRIES", "2")),
        retry_backoff_seconds=float(os.getenv("RETRY_BACKOFF_SECONDS", "0.5")),
        audit_hour_utc=int(os.getenv("AUDIT_HOUR_UTC", "3")),
        audit_minute_utc=int(os.getenv("AUDIT_MINUTE_UTC", "0")),
    )
