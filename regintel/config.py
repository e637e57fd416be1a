"""Runtime configuration loaded from the environment (.env supported)."""

from __future__ import annotations

import os
from dataclasses import dataclass

from dotenv import load_dotenv

from regintel.errors import ConfigError


DEFAULT_PG_DSN = "dbname=regintel user=regintel password=regintelpass host=localhost port=5432"


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


@dataclass
class Settings:
    """Pipeline settings with validation"""

    pg_dsn: str = DEFAULT_PG_DSN
    job_store: str = "postgres"
    job_stall_timeout: int = 900

    # Outbound fetches
    request_timeout: int = 30
    fetch_max_bytes: int = 10_000_000
    user_agent: str = "RegIntel/1.0 (Regulatory Intelligence Bot)"

    # Bookmark side effect
    raindrop_api_token: str = ""
    raindrop_api_url: str = "https://api.raindrop.io/rest/v1"

    # Analysis capability
    openai_api_key: str = ""
    openai_model: str = "gpt-4o-mini"
    anthropic_api_key: str = ""
    anthropic_model: str = "claude-3-5-sonnet-20241022"
    analysis_timeout: int = 120
    auto_analyze: bool = True

    # Scheduling cadence
    feed_poll_interval: int = 3600
    feed_poll_tick_minutes: int = 5
    discovery_interval: int = 7 * 24 * 3600
    discovery_run_at: str = "02:00"
    discovery_max_links: int = 50

    # Worker concurrency per job class
    ingest_concurrency: int = 5
    analysis_concurrency: int = 3
    discovery_concurrency: int = 1
    feed_poll_concurrency: int = 1

    @classmethod
    def from_env(cls) -> "Settings":
        """Load and validate settings from environment variables"""
        load_dotenv()
        settings = cls(
            pg_dsn=os.getenv("PG_DSN", DEFAULT_PG_DSN),
            job_store=os.getenv("JOB_STORE", "postgres").strip().lower(),
            job_stall_timeout=int(os.getenv("JOB_STALL_TIMEOUT", "900")),
            request_timeout=int(os.getenv("REQUEST_TIMEOUT", "30")),
            fetch_max_bytes=int(os.getenv("FETCH_MAX_BYTES", "10000000")),
            user_agent=os.getenv("USER_AGENT", cls.user_agent),
            raindrop_api_token=os.getenv("RAINDROP_API_TOKEN", ""),
            raindrop_api_url=os.getenv("RAINDROP_API_URL", cls.raindrop_api_url),
            openai_api_key=os.getenv("OPENAI_API_KEY", ""),
            openai_model=os.getenv("OPENAI_MODEL", cls.openai_model),
            anthropic_api_key=os.getenv("ANTHROPIC_API_KEY", ""),
            anthropic_model=os.getenv("ANTHROPIC_MODEL", cls.anthropic_model),
            analysis_timeout=int(os.getenv("ANALYSIS_TIMEOUT", "120")),
            auto_analyze=_env_bool("AUTO_ANALYZE", "true"),
            feed_poll_interval=int(os.getenv("FEED_POLL_INTERVAL", "3600")),
            feed_poll_tick_minutes=int(os.getenv("FEED_POLL_TICK_MINUTES", "5")),
            discovery_interval=int(os.getenv("DISCOVERY_INTERVAL", str(7 * 24 * 3600))),
            discovery_run_at=os.getenv("DISCOVERY_RUN_AT", "02:00").strip(),
            discovery_max_links=int(os.getenv("DISCOVERY_MAX_LINKS", "50")),
            ingest_concurrency=int(os.getenv("INGEST_CONCURRENCY", "5")),
            analysis_concurrency=int(os.getenv("ANALYSIS_CONCURRENCY", "3")),
            discovery_concurrency=int(os.getenv("DISCOVERY_CONCURRENCY", "1")),
            feed_poll_concurrency=int(os.getenv("FEED_POLL_CONCURRENCY", "1")),
        )
        settings._validate()
        return settings

    def _validate(self) -> None:
        errors = []
        if self.job_store not in ("postgres", "memory"):
            errors.append(f"JOB_STORE must be 'postgres' or 'memory', got {self.job_store!r}")
        if self.job_stall_timeout <= 0:
            errors.append("JOB_STALL_TIMEOUT must be positive")
        if self.request_timeout <= 0:
            errors.append("REQUEST_TIMEOUT must be positive")
        if self.analysis_timeout <= 0:
            errors.append("ANALYSIS_TIMEOUT must be positive")
        if self.feed_poll_interval <= 0 or self.discovery_interval <= 0:
            errors.append("FEED_POLL_INTERVAL and DISCOVERY_INTERVAL must be positive")
        if self.feed_poll_tick_minutes <= 0:
            errors.append("FEED_POLL_TICK_MINUTES must be positive")
        if self.discovery_max_links <= 0:
            errors.append("DISCOVERY_MAX_LINKS must be positive")
        for name in ("ingest", "analysis", "discovery", "feed_poll"):
            if getattr(self, f"{name}_concurrency") < 1:
                errors.append(f"{name.upper()}_CONCURRENCY must be at least 1")
        parts = self.discovery_run_at.split(":")
        if len(parts) != 2 or not all(p.isdigit() for p in parts):
            errors.append("DISCOVERY_RUN_AT must be HH:MM")
        if errors:
            raise ConfigError("; ".join(errors))

    @property
    def analysis_provider(self) -> str:
        """'openai' wins over 'anthropic'; empty when neither key is set."""
        if self.openai_api_key:
            return "openai"
        if self.anthropic_api_key:
            return "anthropic"
        return ""
