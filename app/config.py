"""
app/config.py

Application-level configuration helpers.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path

from db.config import load_env_files

PROJECT_ROOT = Path(__file__).resolve().parents[1]

_ORACLE_MODES = {"llm", "heuristic"}
_LLM_ADAPTERS = {"openai", "mock"}


@lru_cache(maxsize=1)
def _load_env_once() -> None:
    """
    Ensure project `.env` files are loaded once before reading app settings.
    """

    load_env_files()


def _get_bool_env(name: str, default: bool) -> bool:
    """
    Read a boolean from environment variables with safe fallback.
    """

    _load_env_once()
    raw_value = os.getenv(name)
    if raw_value is None:
        return default
    return raw_value.strip().lower() in {"1", "true", "yes", "on"}


def _get_int_env(name: str, default: int) -> int:
    """
    Read an integer from environment variables with safe fallback.
    """

    _load_env_once()
    raw_value = os.getenv(name)
    if raw_value is None:
        return default
    try:
        return int(raw_value)
    except ValueError:
        return default


def _get_float_env(name: str, default: float) -> float:
    """
    Read a float from environment variables with safe fallback.
    """

    _load_env_once()
    raw_value = os.getenv(name)
    if raw_value is None:
        return default
    try:
        return float(raw_value)
    except ValueError:
        return default


def _get_str_env(name: str, default: str) -> str:
    """
    Read a string from environment variables with fallback.
    """

    _load_env_once()
    value = os.getenv(name)
    if value is None:
        return default
    stripped = value.strip()
    return stripped if stripped else default


def _get_optional_str_env(name: str) -> str | None:
    """
    Read an optional string value from environment variables.
    """

    _load_env_once()
    value = os.getenv(name)
    if value is None:
        return None
    stripped = value.strip()
    return stripped if stripped else None


@dataclass(frozen=True)
class ReconciliationSettings:
    """
    Runtime settings for the reconciliation engine.
    """

    chunk_size: int = 200
    min_identity_length: int = 4
    audit_enabled: bool = True
    audit_workers: int = 4
    sample_rows: int = 5
    enrichment_enabled: bool = True


@dataclass(frozen=True)
class OracleSettings:
    """
    Classification oracle selection, credentials and call envelope.
    """

    mode: str = "heuristic"
    adapter: str = "openai"
    model: str = "gpt-4o-mini"
    api_key: str | None = None
    base_url: str | None = None
    timeout_seconds: float = 15.0
    overall_timeout_seconds: float = 45.0
    max_retries: int = 2
    backoff_initial_seconds: float = 1.0
    backoff_multiplier: float = 2.0


@dataclass(frozen=True)
class DictionarySettings:
    """
    Location of the canonical dictionary document.
    """

    path: Path = PROJECT_ROOT / "dictionaries" / "container_ontology.yml"


@dataclass(frozen=True)
class ExceptionSettings:
    """
    Thresholds for the exception classifier rules.
    """

    stale_gate_out_days: int = 14
    customs_hold_days: int = 5
    demurrage_stage_sequence: int = 170


@dataclass(frozen=True)
class ImprovementSettings:
    """
    Defaults for improvement loop runs.
    """

    output_dir: Path = PROJECT_ROOT / "improvement_runs"
    max_iterations: int = 5
    target_coverage: float = 0.9
    target_score: float = 0.85
    row_limit: int = 0


@lru_cache(maxsize=1)
def get_reconciliation_settings() -> ReconciliationSettings:
    """
    Return cached reconciliation settings from environment variables.
    """

    return ReconciliationSettings(
        chunk_size=max(1, _get_int_env("RECONCILE_CHUNK_SIZE", 200)),
        min_identity_length=max(1, _get_int_env("RECONCILE_MIN_IDENTITY_LENGTH", 4)),
        audit_enabled=_get_bool_env("RECONCILE_AUDIT_ENABLED", True),
        audit_workers=max(1, _get_int_env("RECONCILE_AUDIT_WORKERS", 4)),
        sample_rows=max(1, _get_int_env("RECONCILE_SAMPLE_ROWS", 5)),
        enrichment_enabled=_get_bool_env("RECONCILE_ENRICHMENT_ENABLED", True),
    )


@lru_cache(maxsize=1)
def get_oracle_settings() -> OracleSettings:
    """
    Return oracle settings. Unknown modes fall back to the heuristic strategy.
    """

    mode = _get_str_env("ORACLE_MODE", "heuristic").lower()
    adapter = _get_str_env("LLM_ADAPTER", "openai").lower()
    return OracleSettings(
        mode=mode if mode in _ORACLE_MODES else "heuristic",
        adapter=adapter if adapter in _LLM_ADAPTERS else "openai",
        model=_get_str_env("LLM_MODEL", "gpt-4o-mini"),
        api_key=_get_optional_str_env("LLM_API_KEY") or _get_optional_str_env("OPENAI_API_KEY"),
        base_url=_get_optional_str_env("LLM_BASE_URL"),
        timeout_seconds=max(1.0, _get_float_env("ORACLE_TIMEOUT_SECONDS", 15.0)),
        overall_timeout_seconds=max(1.0, _get_float_env("ORACLE_OVERALL_TIMEOUT_SECONDS", 45.0)),
        max_retries=max(0, min(5, _get_int_env("ORACLE_MAX_RETRIES", 2))),
        backoff_initial_seconds=max(0.0, _get_float_env("ORACLE_BACKOFF_INITIAL_SECONDS", 1.0)),
        backoff_multiplier=max(1.0, _get_float_env("ORACLE_BACKOFF_MULTIPLIER", 2.0)),
    )


@lru_cache(maxsize=1)
def get_dictionary_settings() -> DictionarySettings:
    """
    Return dictionary settings; relative paths resolve against the project root.
    """

    raw_path = _get_optional_str_env("CANONICAL_DICTIONARY_PATH")
    if raw_path is None:
        return DictionarySettings()
    path = Path(raw_path)
    if not path.is_absolute():
        path = PROJECT_ROOT / path
    return DictionarySettings(path=path)


@lru_cache(maxsize=1)
def get_exception_settings() -> ExceptionSettings:
    return ExceptionSettings(
        stale_gate_out_days=max(1, _get_int_env("EXCEPTION_STALE_GATE_OUT_DAYS", 14)),
        customs_hold_days=max(1, _get_int_env("EXCEPTION_CUSTOMS_HOLD_DAYS", 5)),
        demurrage_stage_sequence=_get_int_env("EXCEPTION_DEMURRAGE_STAGE_SEQUENCE", 170),
    )


@lru_cache(maxsize=1)
def get_improvement_settings() -> ImprovementSettings:
    output_dir = Path(_get_str_env("IMPROVEMENT_OUTPUT_DIR", "improvement_runs"))
    if not output_dir.is_absolute():
        output_dir = PROJECT_ROOT / output_dir
    return ImprovementSettings(
        output_dir=output_dir,
        max_iterations=max(1, _get_int_env("IMPROVEMENT_MAX_ITERATIONS", 5)),
        target_coverage=min(1.0, max(0.0, _get_float_env("IMPROVEMENT_TARGET_COVERAGE", 0.9))),
        target_score=min(1.0, max(0.0, _get_float_env("IMPROVEMENT_TARGET_SCORE", 0.85))),
        row_limit=max(0, _get_int_env("IMPROVEMENT_ROW_LIMIT", 0)),
    )
