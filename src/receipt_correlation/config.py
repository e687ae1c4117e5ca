"""
Configuration management (SSOT).

This module defines ALL configuration for the correlation engine.
All config keys are defined here; no other module should invent config keys.

Key invariants:
- Policy parameters (threshold, tolerance, windows) are tunable but their
  defaults are the observed production values: 70 confidence, 5% amount,
  1 hour / 1 day time windows
- Config objects are built once at startup and passed to each component
"""

import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml


class ConfigValidationError(Exception):
    """Raised when configuration validation fails."""

    pass


@dataclass
class StoreConfig:
    """Record store (SQLite) configuration."""

    db_path: Path = field(default_factory=lambda: Path("data/correlation.db"))
    # How long a connection waits on a locked database (seconds)
    busy_timeout_seconds: float = 10.0


@dataclass
class CorrelationConfig:
    """Correlation policy settings."""

    # Relative amount tolerance: |a1 - a2| <= max(a1, a2) * tolerance
    amount_tolerance: float = 0.05
    # Window when both timestamps carry time-of-day
    time_window_hours: int = 1
    # Window when either timestamp is date-only
    time_window_days: int = 1
    # Minimum oracle confidence (0-100) for a verdict to be acted upon
    confidence_threshold: int = 70
    # Cap on records fetched per candidate search
    candidate_limit: int = 50
    # Search/judge/commit rounds before persisting standalone
    max_correlation_rounds: int = 3
    # Retries for conditional winner writes and duplicate deletes
    merge_retries: int = 3
    # Max wait for a per-owner or per-winner commit lock
    lock_timeout_seconds: float = 30.0


@dataclass
class LLMConfig:
    """Correlation oracle (Ollama) configuration.

    SSOT for LLM settings:
    - enabled: Master switch (default OFF; disabled means "never correlated")
    - ollama_url: Can be localhost, LAN IP, or remote URL
    - auth_header: Optional auth header for proxied deployments
    - max_concurrent: Concurrency limiter for the oracle server
    """

    enabled: bool = False
    ollama_url: str = "http://localhost:11434"
    # Format: "Bearer <token>" or "Header-Name: value"
    auth_header: str | None = None
    model_fast: str = "qwen2.5:3b-instruct-q4_K_M"
    model_fallback: str | None = "qwen2.5:7b-instruct-q4_K_M"
    # Bounded oracle call (seconds); on timeout no correlation is assumed
    timeout_seconds: int = 30
    max_concurrent: int = 2

    def is_remote(self) -> bool:
        """Check if Ollama URL is remote (not localhost)."""
        url_lower = self.ollama_url.lower()
        return not any(
            local in url_lower
            for local in ["localhost", "127.0.0.1", "::1", "host.docker.internal"]
        )


@dataclass
class Config:
    """Application configuration (SSOT)."""

    store: StoreConfig = field(default_factory=StoreConfig)
    correlation: CorrelationConfig = field(default_factory=CorrelationConfig)
    llm: LLMConfig = field(default_factory=LLMConfig)

    def validate(self) -> list[str]:
        """Validate configuration completeness and consistency.

        Returns:
            List of validation errors (empty if valid)
        """
        errors: list[str] = []
        corr = self.correlation

        if not 0 <= corr.confidence_threshold <= 100:
            errors.append("correlation.confidence_threshold must be within 0-100")
        if not 0 <= corr.amount_tolerance < 1:
            errors.append("correlation.amount_tolerance must be within [0, 1)")
        if corr.time_window_hours <= 0:
            errors.append("correlation.time_window_hours must be positive")
        if corr.time_window_days <= 0:
            errors.append("correlation.time_window_days must be positive")
        if corr.candidate_limit <= 0:
            errors.append("correlation.candidate_limit must be positive")
        if corr.max_correlation_rounds <= 0:
            errors.append("correlation.max_correlation_rounds must be positive")

        if self.llm.enabled:
            if not self.llm.ollama_url:
                errors.append("llm.ollama_url is required when LLM is enabled")
            if not self.llm.model_fast:
                errors.append("llm.model_fast is required when LLM is enabled")
        if self.llm.timeout_seconds <= 0:
            errors.append("llm.timeout_seconds must be positive")

        return errors

    def validate_or_raise(self) -> None:
        """Raise ConfigValidationError listing every problem found."""
        errors = self.validate()
        if errors:
            raise ConfigValidationError("; ".join(errors))


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name, "").lower()
    if value == "true":
        return True
    if value == "false":
        return False
    return default


def load_config(config_path: Path) -> Config:
    """
    Load configuration from YAML file.

    Environment variables can override config values:
    - CORRELATION_DB_PATH
    - CORRELATION_CONFIDENCE_THRESHOLD
    - CORRELATION_AMOUNT_TOLERANCE
    - CORRELATION_LLM_ENABLED (true/false)
    - OLLAMA_URL
    - OLLAMA_AUTH_HEADER
    - OLLAMA_MODEL (fast model name)
    - OLLAMA_MODEL_FALLBACK (fallback model name)
    - OLLAMA_TIMEOUT (request timeout in seconds)
    """
    if config_path.exists():
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
    else:
        data = {}

    # Store config
    store_data = data.get("store", {})
    store = StoreConfig(
        db_path=Path(
            os.environ.get("CORRELATION_DB_PATH", store_data.get("db_path", "data/correlation.db"))
        ),
        busy_timeout_seconds=float(store_data.get("busy_timeout_seconds", 10.0)),
    )

    # Correlation policy
    corr_data = data.get("correlation", {})
    threshold = corr_data.get("confidence_threshold", 70)
    threshold_env = os.environ.get("CORRELATION_CONFIDENCE_THRESHOLD", "")
    if threshold_env:
        try:
            threshold = int(threshold_env)
        except ValueError:
            pass  # Keep configured value

    tolerance = corr_data.get("amount_tolerance", 0.05)
    tolerance_env = os.environ.get("CORRELATION_AMOUNT_TOLERANCE", "")
    if tolerance_env:
        try:
            tolerance = float(tolerance_env)
        except ValueError:
            pass

    correlation = CorrelationConfig(
        amount_tolerance=float(tolerance),
        time_window_hours=corr_data.get("time_window_hours", 1),
        time_window_days=corr_data.get("time_window_days", 1),
        confidence_threshold=int(threshold),
        candidate_limit=corr_data.get("candidate_limit", 50),
        max_correlation_rounds=corr_data.get("max_correlation_rounds", 3),
        merge_retries=corr_data.get("merge_retries", 3),
        lock_timeout_seconds=float(corr_data.get("lock_timeout_seconds", 30.0)),
    )

    # LLM config
    llm_data = data.get("llm", {})
    llm = LLMConfig(
        enabled=_env_bool("CORRELATION_LLM_ENABLED", llm_data.get("enabled", False)),
        ollama_url=os.environ.get(
            "OLLAMA_URL", llm_data.get("ollama_url", "http://localhost:11434")
        ),
        auth_header=os.environ.get("OLLAMA_AUTH_HEADER", llm_data.get("auth_header")),
        model_fast=os.environ.get(
            "OLLAMA_MODEL", llm_data.get("model_fast", "qwen2.5:3b-instruct-q4_K_M")
        ),
        model_fallback=os.environ.get(
            "OLLAMA_MODEL_FALLBACK", llm_data.get("model_fallback", "qwen2.5:7b-instruct-q4_K_M")
        ),
        timeout_seconds=int(os.environ.get(
            "OLLAMA_TIMEOUT", llm_data.get("timeout_seconds", 30)
        )),
        max_concurrent=llm_data.get("max_concurrent", 2),
    )

    return Config(store=store, correlation=correlation, llm=llm)


def create_default_config(config_path: Path) -> None:
    """Create a default configuration file."""
    default_config = """# Transaction correlation engine configuration

store:
  db_path: "data/correlation.db"          # SQLite record store + ledger
  busy_timeout_seconds: 10

# Correlation policy (defaults are the observed production values)
correlation:
  amount_tolerance: 0.05                   # |a1 - a2| <= max(a1, a2) * tolerance
  time_window_hours: 1                     # Both timestamps carry time-of-day
  time_window_days: 1                      # Either timestamp is date-only
  confidence_threshold: 70                 # Oracle confidence needed to act (0-100)
  candidate_limit: 50                      # Max records per candidate search
  max_correlation_rounds: 3                # Re-judge rounds when records race in
  merge_retries: 3                         # Conditional write / delete retries
  lock_timeout_seconds: 30

# Correlation oracle (Ollama); disabled means every pair is "unrelated"
llm:
  enabled: false
  ollama_url: "http://localhost:11434"
  auth_header: null
  model_fast: "qwen2.5:3b-instruct-q4_K_M"
  model_fallback: "qwen2.5:7b-instruct-q4_K_M"
  timeout_seconds: 30
  max_concurrent: 2
"""

    config_path.parent.mkdir(parents=True, exist_ok=True)
    with open(config_path, "w") as f:
        f.write(default_config)
