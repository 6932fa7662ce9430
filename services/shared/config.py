"""Shared configuration management for the decision pipeline.

Based on Pydantic Settings v2:
https://docs.pydantic.dev/latest/concepts/pydantic_settings/
"""

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings with environment variable support.

    All settings can be overridden via environment variables with the prefix 'APP_'.
    Example: APP_LOG_LEVEL=debug
    """

    model_config = SettingsConfigDict(
        env_prefix="APP_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    environment: Literal["development", "staging", "production"] = Field(
        default="development",
        description="Deployment environment",
    )
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(
        default="INFO",
        description="Logging level",
    )
    service_name: str = Field(
        default="invoice-decision-pipeline",
        description="Service identifier for metrics and logs",
    )
    service_version: str = Field(
        default="0.1.0",
        description="Service version",
    )

    # Orchestrator
    max_workers: int = Field(
        default=8,
        ge=1,
        description="Maximum number of jobs executing at once (parked jobs do not count)",
    )
    extraction_timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        description="Timeout for the extraction collaborator call",
    )
    compliance_timeout_seconds: float = Field(default=5.0, gt=0)
    fraud_timeout_seconds: float = Field(default=5.0, gt=0)
    market_timeout_seconds: float = Field(default=5.0, gt=0)
    reconciliation_timeout_seconds: float = Field(
        default=3600.0,
        gt=0,
        description="How long a job waits for a correlated payment before aggregating without it",
    )
    reconciliation_stage_timeout_seconds: float = Field(
        default=5.0,
        gt=0,
        description="Timeout for matching a correlated payment against the invoice",
    )
    narrative_timeout_seconds: float = Field(default=10.0, gt=0)
    degraded_confidence_factor: float = Field(
        default=0.5,
        ge=0,
        le=1,
        description="Multiplier applied to the confidence of a stage that fell back",
    )
    pending_payment_limit: int = Field(
        default=1000,
        ge=0,
        description="Maximum number of uncorrelated payments buffered for late jobs",
    )

    # Rule tables and reference data
    rule_tables_path: str | None = Field(
        default=None,
        description="JSON file with jurisdiction tables and policy thresholds",
    )
    reference_catalog_path: str | None = Field(
        default=None,
        description="JSON file with reference market prices",
    )

    # Extraction collaborator configuration
    extraction_provider: Literal["http", "ollama"] = Field(
        default="http",
        description="Extraction collaborator: http (remote OCR service), ollama (self-hosted LLM)",
    )
    ocr_service_url: str = Field(
        default="http://localhost:8001/api/v1/extract",
        description="Remote OCR/extraction endpoint",
    )
    ollama_base_url: str = Field(
        default="http://localhost:11434",
        description="Ollama server base URL",
    )
    ollama_model: str = Field(
        default="qwen2.5:7b",
        description="Ollama model to use for field extraction",
    )

    # Narrative collaborator configuration
    narrative_provider: Literal["none", "openai"] = Field(
        default="none",
        description="Generative reasoning attached to stage results (cosmetic only)",
    )
    openai_model: str = Field(
        default="gpt-4o-mini",
        description="OpenAI model used for narratives",
    )

    # Persistence
    persistence_backend: Literal["memory", "redis"] = Field(
        default="memory",
        description="Where decisions and audit entries are written",
    )
    redis_url: str = Field(
        default="redis://localhost:6379/0",
        description="Redis connection URL for persistence and the job queue",
    )
    decision_key_prefix: str = Field(
        default="decision",
        description="Key prefix for decisions stored in Redis",
    )

    # Queue
    queue_max_jobs: int = Field(default=10, ge=1)
    queue_job_timeout: int = Field(default=300, ge=1)


def get_settings() -> Settings:
    """Factory function to get settings instance.

    Returns:
        Configured Settings instance
    """
    return Settings()
