# config.py
"""Configuration settings for the Folio book generation engine.
Uses Pydantic BaseSettings for automatic environment variable loading.
"""

from __future__ import annotations

import structlog
from dotenv import load_dotenv
from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

load_dotenv()

logger = structlog.get_logger()

_PLACEHOLDER_API_KEYS = {"", "nope", "changeme"}


class GenerationParams(BaseModel):
    """Sampling parameters for a single kind of generation call."""

    temperature: float
    top_p: float
    top_k: int


def _default_generation_params() -> dict[str, GenerationParams]:
    return {
        "outline": GenerationParams(temperature=0.9, top_p=0.95, top_k=40),
        "chapter": GenerationParams(temperature=0.8, top_p=0.9, top_k=40),
        "analysis": GenerationParams(temperature=0.3, top_p=0.7, top_k=20),
        "critique": GenerationParams(temperature=0.3, top_p=0.7, top_k=20),
        "editing": GenerationParams(temperature=0.6, top_p=0.85, top_k=30),
        "extraction": GenerationParams(temperature=0.2, top_p=0.6, top_k=10),
        "title": GenerationParams(temperature=0.85, top_p=0.9, top_k=40),
        "decision": GenerationParams(temperature=0.3, top_p=0.7, top_k=20),
        "evaluation": GenerationParams(temperature=0.3, top_p=0.7, top_k=20),
        "targeted_edit": GenerationParams(temperature=0.5, top_p=0.8, top_k=40),
        "regenerate": GenerationParams(temperature=0.7, top_p=0.9, top_k=60),
        "light_polish": GenerationParams(temperature=0.4, top_p=0.8, top_k=30),
        "consistency": GenerationParams(temperature=0.2, top_p=0.6, top_k=10),
        "transition": GenerationParams(temperature=0.6, top_p=0.85, top_k=30),
    }


class FolioSettings(BaseSettings):
    """Full configuration for the Folio engine."""

    # API and Model Configuration
    OPENAI_API_BASE: str = "http://127.0.0.1:8080/v1"
    OPENAI_API_KEY: str = "nope"
    GENERATION_MODEL: str = "Qwen3-14B"
    HTTPX_TIMEOUT: float = 600.0
    MAX_GENERATION_TOKENS: int = 16384
    ENABLE_LLM_NO_THINK_DIRECTIVE: bool = True

    # Sampling parameters per call kind
    GENERATION_PARAMS: dict[str, GenerationParams] = Field(
        default_factory=_default_generation_params
    )

    # Resilience
    LLM_RETRY_ATTEMPTS: int = 5
    LLM_RETRY_BASE_DELAY_SECONDS: float = 2.0
    LLM_CALL_TIMEOUT_SECONDS: float | None = 900.0
    RETRY_JITTER_SECONDS: float = 1.0

    # Request queue
    ENABLE_REQUEST_QUEUE: bool = True
    QUEUE_RATE_LIMIT_DELAY_SECONDS: float = 1.0
    QUEUE_MIN_DELAY_SECONDS: float = 0.5
    QUEUE_MAX_DELAY_SECONDS: float = 10.0
    QUEUE_SUCCESS_STREAK: int = 5

    # Refinement policy
    REFINEMENT_MAX_ITERATIONS: int = 2
    REFINEMENT_QUALITY_THRESHOLD: int = 70
    REFINEMENT_LOW_CONFIDENCE_THRESHOLD: int = 60
    REFINEMENT_DEFAULT_QUALITY_SCORE: int = 75
    TARGETED_EDIT_LENGTH_RATIO: tuple[float, float] = (0.8, 1.2)
    LIGHT_POLISH_LENGTH_RATIO: tuple[float, float] = (0.6, 1.4)
    REGENERATE_LENGTH_RATIO: tuple[float, float] = (0.5, 2.0)

    # Book generation
    MIN_CHAPTERS: int = 3
    PREVIOUS_CHAPTER_CONTEXT_CHARS: int = 3000
    CONSISTENCY_CHECK_MAX_CHARS: int = 5000
    POLISH_LENGTH_RATIO: tuple[float, float] = (0.6, 1.4)
    TRANSITION_WINDOW_CHARS: int = 1500
    FALLBACK_TITLE_PREMISE_CHARS: int = 30

    # Storage
    BASE_OUTPUT_DIR: str = "folio_output"
    SESSION_DIR: str = "folio_output/session"
    SESSION_KEY: str = "book_generation_session"
    BOOK_FILE: str = "book.md"
    BOOK_METADATA_FILE: str = "book_metadata.json"

    # Progress events
    EVENT_CHANNEL_BUFFER_SIZE: int = 256

    # Logging & UI
    LOG_LEVEL_STR: str = Field("INFO", alias="AGENT_LOG_LEVEL")
    LOG_FORMAT: str = (
        "%(asctime)s - %(levelname)s - [%(name)s:%(funcName)s:%(lineno)d] - %(message)s"
    )
    LOG_DATE_FORMAT: str = "%Y-%m-%d %H:%M:%S"
    LOG_FILE: str | None = "folio_run.log"
    ENABLE_RICH_PROGRESS: bool = True

    @model_validator(mode="after")
    def validate_policy(self) -> FolioSettings:
        if self.OPENAI_API_KEY.strip().lower() in _PLACEHOLDER_API_KEYS:
            logger.warning(
                "OPENAI_API_KEY is a placeholder value; remote calls may be rejected."
            )
        if self.MIN_CHAPTERS < 1:
            raise ValueError("MIN_CHAPTERS must be at least 1")
        if self.LLM_RETRY_ATTEMPTS < 1:
            raise ValueError("LLM_RETRY_ATTEMPTS must be at least 1")
        if self.REFINEMENT_MAX_ITERATIONS < 1:
            raise ValueError("REFINEMENT_MAX_ITERATIONS must be at least 1")
        for name in (
            "REFINEMENT_QUALITY_THRESHOLD",
            "REFINEMENT_LOW_CONFIDENCE_THRESHOLD",
            "REFINEMENT_DEFAULT_QUALITY_SCORE",
        ):
            value = getattr(self, name)
            if not 0 <= value <= 100:
                raise ValueError(f"{name} must be within 0..100, got {value}")
        for name in (
            "TARGETED_EDIT_LENGTH_RATIO",
            "LIGHT_POLISH_LENGTH_RATIO",
            "REGENERATE_LENGTH_RATIO",
            "POLISH_LENGTH_RATIO",
        ):
            low, high = getattr(self, name)
            if not 0 < low <= high:
                raise ValueError(f"{name} must be an increasing positive band")
        if self.QUEUE_MIN_DELAY_SECONDS > self.QUEUE_MAX_DELAY_SECONDS:
            raise ValueError("QUEUE_MIN_DELAY_SECONDS exceeds QUEUE_MAX_DELAY_SECONDS")
        return self

    def params_for(self, kind: str) -> GenerationParams:
        """Return sampling parameters for ``kind`` (falls back to editing)."""
        params = self.GENERATION_PARAMS.get(kind)
        if params is None:
            defaults = _default_generation_params()
            params = defaults.get(kind, defaults["editing"])
        return params

    model_config = SettingsConfigDict(
        env_prefix="", env_file=".env", populate_by_name=True, extra="ignore"
    )


settings = FolioSettings()
