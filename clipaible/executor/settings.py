"""Pipeline configuration.

Defaults mirror the browser extension's tuning. Each value can be
overridden from the environment; PipelineSettings.from_env() is what the
API builds the orchestrator with, tests construct PipelineSettings
directly.
"""

import os
from typing import Optional

from pydantic import BaseModel, Field

from clipaible.executor.schemas import RetryPolicy

# Chunking for AI extract mode
CHUNK_SIZE = int(os.environ.get("CLIPAIBLE_CHUNK_SIZE", "50000"))
CHUNK_OVERLAP = int(os.environ.get("CLIPAIBLE_CHUNK_OVERLAP", "3000"))

# Max HTML sent to the selector prompt after trimming
MAX_HTML_FOR_ANALYSIS = int(os.environ.get("CLIPAIBLE_MAX_HTML_FOR_ANALYSIS", "450000"))

# A persisted job older than this is not resumed
RESUME_THRESHOLD_SECONDS = float(os.environ.get("CLIPAIBLE_RESUME_THRESHOLD", "60"))

# Must stay shorter than the host's idle-kill interval
HEARTBEAT_INTERVAL_SECONDS = float(os.environ.get("CLIPAIBLE_HEARTBEAT_INTERVAL", "2"))

# Upper bound on any single external call (AI, extractor, generator)
EXTERNAL_CALL_TIMEOUT_SECONDS = float(os.environ.get("CLIPAIBLE_CALL_TIMEOUT", "600"))

# Retry schedule for AI calls
RETRY_MAX_ATTEMPTS = 8
RETRY_DELAYS = [2, 5, 10, 20, 30, 60, 120, 300]  # seconds
RETRYABLE_STATUS_CODES = [429, 500, 502, 503, 504]

# Per-chunk retry in AI extract mode (on top of the provider-level retry)
CHUNK_RETRY_MAX_ATTEMPTS = 3
CHUNK_RETRY_DELAYS = [1, 2, 4]  # seconds

# Where generated documents are written
OUTPUT_DIR = os.environ.get("CLIPAIBLE_OUTPUT_DIR", "output")


class PipelineSettings(BaseModel):
    """Runtime knobs for the orchestrator and its components."""

    chunk_size: int = Field(default=50000, gt=0)
    chunk_overlap: int = Field(default=3000, ge=0)
    max_html_for_analysis: int = 450000
    resume_threshold_seconds: float = 60.0
    heartbeat_interval_seconds: float = 2.0
    external_call_timeout_seconds: float = 600.0
    retry_policy: RetryPolicy = Field(default_factory=RetryPolicy)
    chunk_retry_policy: RetryPolicy = Field(
        default_factory=lambda: RetryPolicy(
            max_attempts=CHUNK_RETRY_MAX_ATTEMPTS,
            delays=list(CHUNK_RETRY_DELAYS),
        )
    )
    output_dir: str = "output"
    default_model: Optional[str] = None

    @classmethod
    def from_env(cls) -> "PipelineSettings":
        """Build settings from the module-level (environment-backed) constants."""
        return cls(
            chunk_size=CHUNK_SIZE,
            chunk_overlap=CHUNK_OVERLAP,
            max_html_for_analysis=MAX_HTML_FOR_ANALYSIS,
            resume_threshold_seconds=RESUME_THRESHOLD_SECONDS,
            heartbeat_interval_seconds=HEARTBEAT_INTERVAL_SECONDS,
            external_call_timeout_seconds=EXTERNAL_CALL_TIMEOUT_SECONDS,
            retry_policy=RetryPolicy(
                max_attempts=RETRY_MAX_ATTEMPTS,
                delays=list(RETRY_DELAYS),
                retryable_status_codes=list(RETRYABLE_STATUS_CODES),
            ),
            output_dir=OUTPUT_DIR,
            default_model=os.environ.get("CLIPAIBLE_DEFAULT_MODEL") or None,
        )
