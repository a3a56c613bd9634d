from __future__ import annotations

import os
from typing import Literal, Optional

import yaml
from pydantic import BaseModel, Field, field_validator

from .constants import (
    DEFAULT_CHECKPOINT_RETENTION,
    DEFAULT_ESCALATION_THRESHOLD,
    DEFAULT_KNOWLEDGE_CONFIDENCE,
    DEFAULT_MAX_ESCALATIONS,
    DEFAULT_MAX_REASONING_CONFIDENCE,
    DEFAULT_MAX_RETRIES,
    DEFAULT_MIN_REASONING_CONFIDENCE,
    DEFAULT_REASONING_TEMPERATURE,
    DEFAULT_RUN_TIMEOUT_SECONDS,
    MIN_CHECKPOINT_RETENTION,
)


class RedisConfig(BaseModel):
    """Configuration for Redis transport."""

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None


class TransportConfig(BaseModel):
    """Signal transport configuration settings."""

    backend: Literal["inmemory", "redis"] = "inmemory"
    redis: RedisConfig = RedisConfig()


class DecisionConfig(BaseModel):
    """Thresholds and calibration weights for the decision engine."""

    escalation_threshold: float = Field(DEFAULT_ESCALATION_THRESHOLD, ge=0, le=1)
    knowledge_confidence: float = Field(DEFAULT_KNOWLEDGE_CONFIDENCE, ge=0, le=1)
    knowledge_match_threshold: float = Field(0.5, ge=0, le=1)
    temperature: float = DEFAULT_REASONING_TEMPERATURE
    min_confidence: float = DEFAULT_MIN_REASONING_CONFIDENCE
    max_confidence: float = DEFAULT_MAX_REASONING_CONFIDENCE
    certainty_bonus: float = 0.1
    hedging_penalty: float = 0.2
    missing_context_penalty: float = 0.15


class RetryConfig(BaseModel):
    """Exponential backoff settings for transient step failures."""

    max_retries: int = Field(DEFAULT_MAX_RETRIES, ge=0)
    initial_delay: float = Field(1.0, ge=0)
    multiplier: float = Field(2.0, ge=1)
    max_delay: float = Field(32.0, ge=0)
    jitter: float = Field(0.2, ge=0, le=1)


class EngineConfig(BaseModel):
    """Default execution options for workflow runs."""

    max_escalations: int = DEFAULT_MAX_ESCALATIONS
    timeout: Optional[float] = DEFAULT_RUN_TIMEOUT_SECONDS
    retry: RetryConfig = RetryConfig()
    checkpoint_retention: int = DEFAULT_CHECKPOINT_RETENTION
    auto_accept_review: bool = True
    parallel_batches: bool = False

    @field_validator("checkpoint_retention")
    @classmethod
    def _keep_current_and_previous(cls, v: int) -> int:
        if v < MIN_CHECKPOINT_RETENTION:
            raise ValueError(
                f"checkpoint_retention must be at least {MIN_CHECKPOINT_RETENTION}"
            )
        return v


class WaypointConfig(BaseModel):
    """Top-level configuration model."""

    database_url: Optional[str] = None
    status_dir: Optional[str] = None
    workspace_root: Optional[str] = None
    knowledge_dir: Optional[str] = None
    decision: DecisionConfig = DecisionConfig()
    engine: EngineConfig = EngineConfig()
    transport: TransportConfig = TransportConfig()


def load_config(path: Optional[str] = None) -> WaypointConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to WAYPOINT_CONFIG env
            variable or 'waypoint.yaml' in the current directory.
    """

    config_path = path or os.getenv("WAYPOINT_CONFIG", "waypoint.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = WaypointConfig(**data)
    else:
        config = WaypointConfig()

    env_db_url = os.getenv("WAYPOINT_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    return config
