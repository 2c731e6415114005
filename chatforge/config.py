from __future__ import annotations

import os
from typing import List, Literal, Optional

import yaml
from pydantic import BaseModel, Field

from .constants import (
    DEFAULT_LEASE_SECONDS,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_MAX_CONCURRENCY,
    DEFAULT_MODEL,
    DEFAULT_SCRAPE_FORMATS,
    DEFAULT_SCRAPE_TIMEOUT,
    DEFAULT_VISIBILITY_TIMEOUT,
)


class RedisConfig(BaseModel):
    """Configuration for Redis transport."""

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None
    # seconds a delivered message may sit unacked before it is requeued
    visibility_timeout: float = Field(default=DEFAULT_VISIBILITY_TIMEOUT, gt=0)


class TransportConfig(BaseModel):
    """Transport configuration settings."""

    backend: Literal["inmemory", "redis"] = "inmemory"
    redis: RedisConfig = RedisConfig()


class ScraperConfig(BaseModel):
    """Scrape provider and fan-out settings."""

    provider: Literal["firecrawl"] = "firecrawl"
    base_url: str = "https://api.firecrawl.dev"
    api_key: Optional[str] = None
    formats: List[str] = Field(default_factory=lambda: list(DEFAULT_SCRAPE_FORMATS))
    max_concurrency: int = Field(default=DEFAULT_MAX_CONCURRENCY, ge=1)
    timeout: float = Field(default=DEFAULT_SCRAPE_TIMEOUT, gt=0)
    dedupe: bool = True
    require_context: bool = True


class GenerationConfig(BaseModel):
    """Language model settings."""

    model: str = DEFAULT_MODEL


class RetryConfig(BaseModel):
    """Step retry policy applied by the orchestrator."""

    max_attempts: int = Field(default=DEFAULT_MAX_ATTEMPTS, ge=1)
    base_delay: float = Field(default=1.0, ge=0)
    factor: float = Field(default=2.0, ge=1)
    max_delay: float = Field(default=30.0, ge=0)
    jitter: float = Field(default=0.0, ge=0)


class WorkerConfig(BaseModel):
    """Run ownership and recovery settings for workers."""

    lease_seconds: float = Field(default=DEFAULT_LEASE_SECONDS, gt=0)
    resume_interval: Optional[float] = Field(default=60.0, gt=0)


class ChatforgeConfig(BaseModel):
    """Top-level configuration model."""

    transport: TransportConfig = TransportConfig()
    scraper: ScraperConfig = ScraperConfig()
    generation: GenerationConfig = GenerationConfig()
    retry: RetryConfig = RetryConfig()
    worker: WorkerConfig = WorkerConfig()
    database_url: Optional[str] = None
    log_level: str = "INFO"


def load_config(path: Optional[str] = None) -> ChatforgeConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to CHATFORGE_CONFIG env
            variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("CHATFORGE_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = ChatforgeConfig(**data)
    else:
        config = ChatforgeConfig()

    env_db_url = os.getenv("CHATFORGE_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    env_firecrawl_key = os.getenv("FIRECRAWL_API_KEY")
    if env_firecrawl_key:
        config.scraper.api_key = env_firecrawl_key
    env_model = os.getenv("CHATFORGE_MODEL")
    if env_model:
        config.generation.model = env_model
    return config
