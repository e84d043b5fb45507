"""Application settings loaded from environment variables."""

from __future__ import annotations

from typing import Literal

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """MediGuard server configuration."""

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    # Server
    # Loopback by default; there is no auth layer in front of the MCP tools.
    mediguard_host: str = "127.0.0.1"
    mediguard_port: int = 8001
    mediguard_log_level: str = "info"
    mediguard_allow_insecure_bind: bool = False

    # Storage
    db_path: str = "~/.mediguard/mediguard.db"
    encryption_key: str = ""

    # Feature extractor (external MCP service)
    extractor_provider: Literal["mcp", "mock"] = "mcp"
    extractor_url: str = "http://127.0.0.1:8003/mcp"
    extractor_timeout_s: float = 15.0
    registration_extractions: int = 2

    # Matching heuristics (empirically tuned)
    match_base_threshold: float = 0.65
    match_high_confidence_threshold: float = 0.70
    match_high_confidence_cosine: float = 0.75
    ambiguity_margin: float = 0.10
    confidence_high: float = 0.75
    confidence_medium: float = 0.60
    confidence_low: float = 0.45
    cosine_weight: float = 0.7
    euclidean_weight: float = 0.3

    # Schedule trigger
    schedule_timezone: str = "UTC"
    scheduler_enabled: bool = True
    tick_interval_s: float = 60.0

    # Push dispatch
    push_provider: Literal["expo", "mock"] = "expo"
    expo_push_url: str = "https://exp.host/--/api/v2/push/send"
    expo_access_token: str = ""
    push_timeout_s: float = 10.0
    push_max_batch_size: int = 100
    push_channel_id: str = "medication-reminders"

    # Escalation
    escalation_threshold: int = 3
    attempt_ttl_hours: int = 24
    notify_caregivers_on_confirm: bool = True


def get_settings() -> Settings:
    """Create and return a Settings instance."""
    return Settings()
