"""Configuration for the Neo4j memory plugin.

Two layers:

- ``Settings``: deployment defaults from the environment / ``.env``.
- ``parse_config``: strict validation of the plugin config dict (the JSON the
  host hands us), producing typed ``MemoryConfig`` objects.
"""

import json
import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, Optional, Pattern

from pydantic_settings import BaseSettings

from .exceptions import ConfigError

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Environment-driven defaults."""

    # Neo4j
    neo4j_uri: str = "bolt://localhost:7687"
    neo4j_user: str = "neo4j"
    neo4j_password: str = ""

    # Embeddings
    embedding_provider: str = "openai"  # "openai", "ollama" or "local"
    embedding_model: str = ""
    embedding_api_key: str = ""
    embedding_base_url: str = ""
    local_embedding_model: str = "nomic-ai/nomic-embed-text-v1.5"

    # Extraction LLM (OpenAI-compatible endpoint, OpenRouter by default)
    openrouter_api_key: str = ""
    extraction_model: str = "anthropic/claude-opus-4-6"
    extraction_base_url: str = "https://openrouter.ai/api/v1"
    extraction_timeout: float = 30.0

    # Optional JSON plugin config
    memory_config_path: str = "data/memory_neo4j.json"

    class Config:
        env_file = ".env"
        extra = "ignore"


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get the cached settings instance."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reset_settings() -> None:
    """Drop the cached settings so the next call re-reads the environment."""
    global _settings
    _settings = None


# =============================================================================
# Embedding model tables
# =============================================================================

EMBEDDING_DIMENSIONS: Dict[str, int] = {
    "text-embedding-3-small": 1536,
    "text-embedding-3-large": 3072,
    "mxbai-embed-large": 1024,
    "mxbai-embed-large-2k:latest": 1024,
    "nomic-embed-text": 768,
    "nomic-ai/nomic-embed-text-v1.5": 768,
    "all-minilm": 384,
}
DEFAULT_EMBEDDING_DIMS = 1024

EMBEDDING_CONTEXT_LENGTHS: Dict[str, int] = {
    "text-embedding-3-small": 8191,
    "text-embedding-3-large": 8191,
    "mxbai-embed-large": 512,
    "mxbai-embed-large-2k": 2048,
    "mxbai-embed-large-8k": 8192,
    "nomic-embed-text": 8192,
    "all-minilm": 256,
}
DEFAULT_EMBEDDING_CONTEXT_LENGTH = 512


def _lookup_by_prefix(table: Dict[str, int], key: str) -> Optional[int]:
    """Exact match, else the value of the longest key that prefixes ``key``."""
    if key in table:
        return table[key]
    best_len = -1
    best = None
    for known, value in table.items():
        if key.startswith(known) and len(known) > best_len:
            best, best_len = value, len(known)
    return best


def vector_dims_for_model(model: str) -> int:
    dims = _lookup_by_prefix(EMBEDDING_DIMENSIONS, model)
    if dims is None:
        logger.warning(
            f"Unknown embedding model '{model}', assuming {DEFAULT_EMBEDDING_DIMS} dimensions"
        )
        return DEFAULT_EMBEDDING_DIMS
    return dims


def context_length_for_model(model: str) -> int:
    length = _lookup_by_prefix(EMBEDDING_CONTEXT_LENGTHS, model)
    return length if length is not None else DEFAULT_EMBEDDING_CONTEXT_LENGTH


# =============================================================================
# Typed plugin config
# =============================================================================

DEFAULT_EXTRACTION_MODEL = "anthropic/claude-opus-4-6"
DEFAULT_EXTRACTION_BASE_URL = "https://openrouter.ai/api/v1"
DEFAULT_SLEEP_INTERVAL_MS = 6 * 60 * 60 * 1000

DEFAULT_EMBEDDING_MODELS = {
    "openai": "text-embedding-3-small",
    "ollama": "mxbai-embed-large",
    "local": "nomic-ai/nomic-embed-text-v1.5",
}

VALID_NEO4J_SCHEMES = (
    "bolt://",
    "bolt+s://",
    "bolt+ssc://",
    "neo4j://",
    "neo4j+s://",
    "neo4j+ssc://",
)

TOP_LEVEL_KEYS = (
    "embedding",
    "neo4j",
    "autoCapture",
    "autoCaptureSkipPattern",
    "autoRecall",
    "autoRecallMinScore",
    "autoRecallSkipPattern",
    "coreMemory",
    "extraction",
    "graphSearchDepth",
    "decayCurves",
    "sleepCycle",
)


@dataclass
class Neo4jConfig:
    uri: str
    username: str = "neo4j"
    password: str = ""


@dataclass
class EmbeddingConfig:
    provider: str = "openai"
    api_key: Optional[str] = None
    model: str = "text-embedding-3-small"
    base_url: Optional[str] = None


@dataclass
class ExtractionSection:
    """The optional ``extraction`` block of the plugin config."""

    api_key: Optional[str] = None
    model: str = DEFAULT_EXTRACTION_MODEL
    base_url: Optional[str] = None


@dataclass
class ExtractionConfig:
    """Resolved settings for LLM calls (extraction, rating, dedup, conflicts)."""

    enabled: bool
    api_key: str
    model: str
    base_url: str
    temperature: float = 0.0
    max_retries: int = 2
    timeout: float = 30.0


@dataclass
class CoreMemoryConfig:
    enabled: bool = True
    # None disables mid-session refresh
    refresh_at_context_percent: Optional[float] = None


@dataclass
class SleepCycleConfig:
    auto: bool = True
    auto_interval_ms: int = DEFAULT_SLEEP_INTERVAL_MS


@dataclass
class MemoryConfig:
    neo4j: Neo4jConfig
    embedding: EmbeddingConfig
    extraction: Optional[ExtractionSection] = None
    auto_capture: bool = True
    auto_capture_skip_pattern: Optional[Pattern] = None
    auto_recall: bool = True
    auto_recall_min_score: float = 0.25
    auto_recall_skip_pattern: Optional[Pattern] = None
    core_memory: CoreMemoryConfig = field(default_factory=CoreMemoryConfig)
    graph_search_depth: int = 1
    decay_curves: Dict[str, float] = field(default_factory=dict)  # category -> half-life days
    sleep_cycle: SleepCycleConfig = field(default_factory=SleepCycleConfig)


_ENV_REF = re.compile(r"\$\{([^}]+)\}")


def resolve_env_vars(value: str) -> str:
    """Replace ``${VAR}`` references with environment values."""

    def _sub(match):
        name = match.group(1)
        env_value = os.environ.get(name)
        if not env_value:
            raise ConfigError(f"Environment variable {name} is not set")
        return env_value

    return _ENV_REF.sub(_sub, value)


def _assert_allowed_keys(value: Dict[str, Any], allowed: Iterable[str], label: str) -> None:
    unknown = [key for key in value if key not in allowed]
    if unknown:
        raise ConfigError(f"{label} has unknown keys: {', '.join(unknown)}")


def _section(cfg: Dict[str, Any], key: str) -> Dict[str, Any]:
    raw = cfg.get(key)
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ConfigError(f"{key} config must be an object")
    return raw


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _parse_neo4j(cfg: Dict[str, Any]) -> Neo4jConfig:
    raw = cfg.get("neo4j")
    if not isinstance(raw, dict):
        raise ConfigError("neo4j config section is required")
    _assert_allowed_keys(raw, ("uri", "user", "username", "password"), "neo4j config")

    uri = raw.get("uri")
    if not isinstance(uri, str) or not uri:
        raise ConfigError("neo4j.uri is required")
    uri = resolve_env_vars(uri)
    if not uri.startswith(VALID_NEO4J_SCHEMES):
        raise ConfigError(
            f"neo4j.uri must start with a valid scheme ({', '.join(VALID_NEO4J_SCHEMES)}), "
            f'got: "{uri}"'
        )

    password = raw.get("password")
    password = resolve_env_vars(password) if isinstance(password, str) else ""

    if isinstance(raw.get("user"), str):
        username = resolve_env_vars(raw["user"])
    elif isinstance(raw.get("username"), str):
        username = resolve_env_vars(raw["username"])
    else:
        username = "neo4j"

    return Neo4jConfig(uri=uri, username=username, password=password)


def _parse_embedding(cfg: Dict[str, Any]) -> EmbeddingConfig:
    raw = _section(cfg, "embedding")
    _assert_allowed_keys(raw, ("provider", "apiKey", "model", "baseUrl"), "embedding config")

    provider = raw.get("provider") if raw.get("provider") in ("ollama", "local") else "openai"

    api_key = None
    if isinstance(raw.get("apiKey"), str) and raw["apiKey"]:
        api_key = resolve_env_vars(raw["apiKey"])
    elif provider == "openai":
        raise ConfigError("embedding.apiKey is required for OpenAI provider")

    if isinstance(raw.get("model"), str):
        model = raw["model"]
    else:
        model = DEFAULT_EMBEDDING_MODELS[provider]

    base_url = raw["baseUrl"] if isinstance(raw.get("baseUrl"), str) else None
    return EmbeddingConfig(provider=provider, api_key=api_key, model=model, base_url=base_url)


def _parse_core_memory(cfg: Dict[str, Any]) -> CoreMemoryConfig:
    raw = _section(cfg, "coreMemory")
    _assert_allowed_keys(raw, ("enabled", "refreshAtContextPercent"), "coreMemory config")

    percent = raw.get("refreshAtContextPercent")
    if _is_number(percent) and percent > 100:
        raise ConfigError(
            f"coreMemory.refreshAtContextPercent must be between 1 and 100, got: {percent}"
        )
    refresh = percent if _is_number(percent) and 0 < percent <= 100 else None
    return CoreMemoryConfig(enabled=raw.get("enabled") is not False, refresh_at_context_percent=refresh)


def _parse_extraction(cfg: Dict[str, Any]) -> Optional[ExtractionSection]:
    raw = _section(cfg, "extraction")
    _assert_allowed_keys(raw, ("apiKey", "model", "baseUrl"), "extraction config")
    if not raw:
        return None

    api_key = resolve_env_vars(raw["apiKey"]) if isinstance(raw.get("apiKey"), str) else None
    model = raw["model"] if isinstance(raw.get("model"), str) else None
    base_url = raw["baseUrl"] if isinstance(raw.get("baseUrl"), str) else None
    if not (api_key or model or base_url):
        return None

    return ExtractionSection(
        api_key=api_key,
        model=model or os.environ.get("EXTRACTION_MODEL") or DEFAULT_EXTRACTION_MODEL,
        base_url=base_url,
    )


def _parse_decay_curves(cfg: Dict[str, Any]) -> Dict[str, float]:
    raw = cfg.get("decayCurves")
    curves: Dict[str, float] = {}
    if not isinstance(raw, dict):
        return curves
    for category, value in raw.items():
        if isinstance(value, dict) and "halfLifeDays" in value:
            half_life = value["halfLifeDays"]
            if not _is_number(half_life) or half_life <= 0:
                raise ConfigError(f"decayCurves.{category}.halfLifeDays must be a positive number")
            curves[category] = float(half_life)
    return curves


def _parse_graph_depth(cfg: Dict[str, Any]) -> int:
    depth = cfg.get("graphSearchDepth")
    if depth is None:
        return 1
    if not _is_number(depth) or depth != int(depth) or not 1 <= depth <= 3:
        raise ConfigError(f"graphSearchDepth must be 1, 2, or 3, got: {depth}")
    return int(depth)


def _parse_sleep_cycle(cfg: Dict[str, Any]) -> SleepCycleConfig:
    raw = _section(cfg, "sleepCycle")
    _assert_allowed_keys(raw, ("auto", "autoIntervalMs"), "sleepCycle config")
    interval = raw.get("autoIntervalMs")
    interval = interval if _is_number(interval) else DEFAULT_SLEEP_INTERVAL_MS
    if interval <= 0:
        raise ConfigError(f"sleepCycle.autoIntervalMs must be positive, got: {interval}")
    return SleepCycleConfig(auto=raw.get("auto") is not False, auto_interval_ms=int(interval))


def _parse_min_score(value: Any) -> float:
    if not _is_number(value):
        return 0.25
    if value < 0 or value > 1:
        raise ConfigError(f"autoRecallMinScore must be between 0 and 1, got: {value}")
    return float(value)


def _compile_optional(value: Any, label: str) -> Optional[Pattern]:
    if not isinstance(value, str) or not value:
        return None
    try:
        return re.compile(value)
    except re.error as e:
        raise ConfigError(f"{label} is not a valid regular expression: {e}") from e


def parse_config(value: Any) -> MemoryConfig:
    """
    Validate a raw plugin config dict and build a ``MemoryConfig``.

    Every section enumerates its allowed keys; anything else is rejected so
    that typos fail loudly instead of silently falling back to defaults.

    Args:
        value: Parsed JSON object from the host

    Returns:
        Typed configuration

    Raises:
        ConfigError: On missing sections, unknown keys or out-of-range values
    """
    if not isinstance(value, dict) or not value:
        raise ConfigError("memory-neo4j config required")
    _assert_allowed_keys(value, TOP_LEVEL_KEYS, "memory-neo4j config")

    return MemoryConfig(
        neo4j=_parse_neo4j(value),
        embedding=_parse_embedding(value),
        extraction=_parse_extraction(value),
        auto_capture=value.get("autoCapture") is not False,
        auto_capture_skip_pattern=_compile_optional(
            value.get("autoCaptureSkipPattern"), "autoCaptureSkipPattern"
        ),
        auto_recall=value.get("autoRecall") is not False,
        auto_recall_min_score=_parse_min_score(value.get("autoRecallMinScore")),
        auto_recall_skip_pattern=_compile_optional(
            value.get("autoRecallSkipPattern"), "autoRecallSkipPattern"
        ),
        core_memory=_parse_core_memory(value),
        graph_search_depth=_parse_graph_depth(value),
        decay_curves=_parse_decay_curves(value),
        sleep_cycle=_parse_sleep_cycle(value),
    )


def resolve_extraction_config(section: Optional[ExtractionSection] = None) -> ExtractionConfig:
    """
    Resolve LLM settings from the config section with environment fallback.

    Extraction is enabled when an API key is available (hosted provider) or a
    base URL was configured explicitly (local server that needs no key).
    """
    settings = get_settings()
    api_key = (section.api_key if section else None) or settings.openrouter_api_key or ""
    model = (section.model if section else None) or settings.extraction_model or DEFAULT_EXTRACTION_MODEL
    base_url = (
        (section.base_url if section else None)
        or settings.extraction_base_url
        or DEFAULT_EXTRACTION_BASE_URL
    )
    enabled = bool(api_key) or (section is not None and section.base_url is not None)
    return ExtractionConfig(
        enabled=enabled,
        api_key=api_key,
        model=model,
        base_url=base_url,
        temperature=0.0,
        max_retries=2,
        timeout=settings.extraction_timeout,
    )


def _config_from_settings(settings: Settings) -> Dict[str, Any]:
    embedding: Dict[str, Any] = {"provider": settings.embedding_provider}
    if settings.embedding_api_key:
        embedding["apiKey"] = settings.embedding_api_key
    if settings.embedding_model:
        embedding["model"] = settings.embedding_model
    elif settings.embedding_provider == "local":
        embedding["model"] = settings.local_embedding_model
    if settings.embedding_base_url:
        embedding["baseUrl"] = settings.embedding_base_url
    return {
        "neo4j": {
            "uri": settings.neo4j_uri,
            "user": settings.neo4j_user,
            "password": settings.neo4j_password,
        },
        "embedding": embedding,
    }


def load_config(path: Optional[str] = None) -> MemoryConfig:
    """
    Load the plugin config from a JSON file, or build one from ``Settings``.

    Args:
        path: JSON file path; defaults to ``Settings.memory_config_path``
    """
    settings = get_settings()
    config_path = Path(path or settings.memory_config_path)
    if config_path.exists():
        with open(config_path, "r") as f:
            raw = json.load(f)
        logger.debug(f"Loaded memory config from {config_path}")
        return parse_config(raw)
    if path:
        raise ConfigError(f"Config file not found: {config_path}")
    return parse_config(_config_from_settings(settings))
