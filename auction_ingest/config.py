from dataclasses import dataclass
import json
import os
from pathlib import Path

from dotenv import load_dotenv


load_dotenv()


class ConfigError(ValueError):
    pass


@dataclass(frozen=True)
class Settings:
    app_name: str
    database_url: str
    log_level: str
    openai_api_key: str
    openai_base_url: str
    openai_model: str
    http_timeout_seconds: float
    llm_timeout_seconds: float
    llm_max_attempts: int
    retry_backoff_seconds: float
    max_rows_per_batch: int
    max_token_estimate: int
    derive_period_from_filename: bool
    refresh_interval_minutes: int
    user_agent: str


@dataclass(frozen=True)
class SourceEntry:
    url: str
    comment: str


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


def get_settings() -> Settings:
    return Settings(
        app_name=os.getenv("APP_NAME", "auction-ingest"),
        database_url=os.getenv("DATABASE_URL", "sqlite:///./auctions.db"),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        openai_api_key=os.getenv("OPENAI_API_KEY", ""),
        openai_base_url=os.getenv("OPENAI_BASE_URL", "https://api.openai.com/v1"),
        openai_model=os.getenv("OPENAI_MODEL", "gpt-4o-mini"),
        http_timeout_seconds=float(os.getenv("HTTP_TIMEOUT_SECONDS", "30")),
        llm_timeout_seconds=float(os.getenv("LLM_TIMEOUT_SECONDS", "120")),
        llm_max_attempts=int(os.getenv("LLM_MAX_ATTEMPTS", "3")),
        retry_backoff_seconds=float(os.getenv("RETRY_BACKOFF_SECONDS", "1")),
        max_rows_per_batch=int(os.getenv("MAX_ROWS_PER_BATCH", "500")),
        max_token_estimate=int(os.getenv("MAX_TOKEN_ESTIMATE", "8000")),
        derive_period_from_filename=_env_bool("DERIVE_PERIOD_FROM_FILENAME", "true"),
        refresh_interval_minutes=int(os.getenv("REFRESH_INTERVAL_MINUTES", "60")),
        user_agent=os.getenv("USER_AGENT", "auction-ingest/0.1"),
    )


def load_source_config(path: str | Path) -> SourceEntry:
    """Read a ``{"source": {"url": ..., "comment": ...}}`` seed file."""
    if not str(path):
        raise ConfigError("source config path is empty")

    config_path = Path(path)
    try:
        with config_path.open("r", encoding="utf-8") as infile:
            raw = json.load(infile)
    except OSError as exc:
        raise ConfigError(f"read source config: {exc}") from exc
    except json.JSONDecodeError as exc:
        raise ConfigError(f"parse source config: {exc}") from exc

    source = raw.get("source") if isinstance(raw, dict) else None
    if not isinstance(source, dict):
        raise ConfigError("source is required")

    url = str(source.get("url") or "").strip()
    comment = str(source.get("comment") or "").strip()
    if not url:
        raise ConfigError("source.url is required")
    if not comment:
        raise ConfigError("source.comment is required")
    return SourceEntry(url=url, comment=comment)
