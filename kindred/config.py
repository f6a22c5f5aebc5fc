"""
Configuration Loader for Kindred

Reads from config.json (and .env) and provides a simple interface for accessing settings.
Defaults to sensible values if config.json is missing.

Usage:
    from kindred.config import get_config
    config = get_config()
    top_k = config.get("memory.top_k_candidates")

The turn orchestrator never reads this module from inside a turn. Typed views
(RetrievalConfig, FeatureFlags, PersonaConfig) are built once and injected.
"""

# ============================================================================
# 1) IMPORTS
# ============================================================================
import copy
import hashlib
import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

from dotenv import load_dotenv

# ============================================================================
# 2) MODULE LOGGER
# ============================================================================
logger = logging.getLogger(__name__)


# ============================================================================
# 3) TYPED VIEWS
# ============================================================================
@dataclass(frozen=True)
class RetrievalConfig:
    """Limits consumed by MemoryRetrievalCoordinator and the history fetch."""
    top_k_candidates: int = 20
    max_items: int = 5
    min_similarity: float = 0.35
    half_life_days: float = 30.0
    exclude_rounds: int = 3
    history_limit: int = 20
    include_ai_output: bool = False
    fast_candidate_limit: int = 200
    # No degradation warning until the session has at least this many messages
    warning_min_history: int = 10


@dataclass(frozen=True)
class FeatureFlags:
    concurrent_retrieval: bool = True
    fast_retrieval_path: bool = True
    fast_thinking: bool = True
    hands_free: bool = False


# ============================================================================
# 4) CONFIG WRAPPER (DOT-NOTATION ACCESS)
# ============================================================================
class Config:
    """Simple config wrapper with dot-notation access."""

    def __init__(self, data: dict):
        self._data = data
        self._hash = config_hash(self._data)

    # 4.1) Dot-notation getter
    def get(self, key: str, default: Any = None) -> Any:
        """
        Get config value using dot notation.

        Examples:
            config.get("llm.chat_model")
            config.get("memory.half_life_days")
            config.get("nonexistent.key", "default_value")
        """
        value = self._data
        for k in key.split("."):
            if isinstance(value, dict) and k in value:
                value = value[k]
            else:
                return default
        return value

    # 4.2) Dict-style getter
    def __getitem__(self, key: str) -> Any:
        return self.get(key)

    # 4.3) Config hash
    @property
    def hash(self) -> str:
        return self._hash

    # 4.4) Typed views
    def retrieval(self) -> RetrievalConfig:
        section = self.get("memory", {}) or {}
        return RetrievalConfig(
            top_k_candidates=int(section.get("top_k_candidates", 20)),
            max_items=int(section.get("max_items", 5)),
            min_similarity=float(section.get("min_similarity", 0.35)),
            half_life_days=float(section.get("half_life_days", 30.0)),
            exclude_rounds=int(section.get("exclude_rounds", 3)),
            history_limit=int(section.get("history_limit", 20)),
            include_ai_output=bool(section.get("include_ai_output", False)),
            fast_candidate_limit=int(section.get("fast_candidate_limit", 200)),
            warning_min_history=int(section.get("warning_min_history", 10)),
        )

    def features(self) -> FeatureFlags:
        section = dict(self.get("features", {}) or {})
        # Runtime overrides win over the file
        for key in ("concurrent_retrieval", "fast_retrieval_path", "fast_thinking", "hands_free"):
            if key in _runtime_overrides:
                section[key] = _runtime_overrides[key]
        return FeatureFlags(
            concurrent_retrieval=bool(section.get("concurrent_retrieval", True)),
            fast_retrieval_path=bool(section.get("fast_retrieval_path", True)),
            fast_thinking=bool(section.get("fast_thinking", True)),
            hands_free=bool(section.get("hands_free", False)),
        )

    def persona(self):
        from kindred.persona import PersonaConfig
        return PersonaConfig.from_dict(self.get("persona", {}) or {})


# ============================================================================
# 5) DEFAULT CONFIGURATION (FALLBACK)
# ============================================================================
_DEFAULT_CONFIG = {
    "system": {
        "log_level": "INFO",
        "data_dir": "data",
    },
    "llm": {
        "host": "http://127.0.0.1:11434",
        "chat_model": "qwen2.5:7b",
        "vision_model": "llava:7b",
        "temperature": 0.8,
        "keep_alive": "10m",
    },
    "embedding": {
        "backend": "ollama",
        "model": "nomic-embed-text",
        "dimensions": 256,
    },
    "memory": {
        "top_k_candidates": 20,
        "max_items": 5,
        "min_similarity": 0.35,
        "half_life_days": 30,
        "exclude_rounds": 3,
        "history_limit": 20,
        "include_ai_output": False,
        "fast_candidate_limit": 200,
        "warning_min_history": 10,
    },
    "persona": {
        "ai_name": "Eleanor",
        "ai_nickname": "Ellie",
        "user_name": "Lucian",
        "user_nickname": "Luke",
        "relationship": "companion",
        "user_gender": "unset",
        "warmth": 50,
    },
    "vision": {
        "detail": "auto",
        "max_video_frames": 6,
    },
    "avatar": {
        "driver": "logging",
        "voice": "en-US-AriaNeural",
        "output_dir": "data/speech",
        "thinking_delay_seconds": 0.6,
    },
    "speech_to_text": {
        "model": "base",
        "device": "cpu",
        "language": None,
        "sample_rate": 16000,
        "silence_timeout_seconds": 1.2,
        "rms_speech_threshold": 0.015,
        "max_recording_seconds": 30.0,
    },
    "image_gen": {
        "url": "",
        "api_key": "",
        "model": "",
        "timeout_seconds": 60,
    },
    "crisis": {
        "webhook_url": "",
        "timeout_seconds": 10,
    },
    "features": {
        "concurrent_retrieval": True,
        "fast_retrieval_path": True,
        "fast_thinking": True,
        "hands_free": False,
    },
    "server": {
        "host": "127.0.0.1",
        "port": 8000,
    },
}

# Environment variable -> dotted config key
_ENV_OVERRIDES = {
    "KINDRED_OLLAMA_HOST": "llm.host",
    "KINDRED_CHAT_MODEL": "llm.chat_model",
    "KINDRED_VISION_MODEL": "llm.vision_model",
    "KINDRED_EMBED_MODEL": "embedding.model",
    "KINDRED_IMAGE_GEN_URL": "image_gen.url",
    "KINDRED_IMAGE_GEN_KEY": "image_gen.api_key",
    "KINDRED_CRISIS_WEBHOOK": "crisis.webhook_url",
    "KINDRED_DATA_DIR": "system.data_dir",
}

# ============================================================================
# 6) CONFIG SINGLETON
# ============================================================================
_config_instance: Optional[Config] = None

# ============================================================================
# 7) RUNTIME OVERRIDES (NON-PERSISTENT)
# ============================================================================
_RUNTIME_OVERRIDES_DEFAULT: dict = {}
_runtime_overrides = dict(_RUNTIME_OVERRIDES_DEFAULT)


# ============================================================================
# 8) LOAD / GET CONFIG
# ============================================================================
def load_config(config_path: str = "config.json", env_path: Optional[str] = ".env") -> Config:
    """
    Load configuration from JSON file, then apply environment overrides.

    Falls back to defaults if file not found or on error.
    """
    global _config_instance

    if env_path and Path(env_path).exists():
        load_dotenv(env_path)

    config_data = copy.deepcopy(_DEFAULT_CONFIG)

    if os.path.exists(config_path):
        try:
            with open(config_path, "r", encoding="utf-8") as f:
                user_config = json.load(f)
            _merge_dicts(config_data, user_config)
            logger.info(f"[Config] Loaded from {config_path}")
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"[Config] Failed to load {config_path}: {e}, using defaults")
    else:
        logger.debug(f"[Config] No config file at {config_path}, using defaults")

    for env_key, dotted in _ENV_OVERRIDES.items():
        value = os.getenv(env_key)
        if value:
            _set_dotted(config_data, dotted, value)

    _config_instance = Config(config_data)
    return _config_instance


def get_config() -> Config:
    """Get current config instance (lazy load if needed)."""
    global _config_instance
    if _config_instance is None:
        load_config()
    return _config_instance


# ============================================================================
# 9) OVERRIDE ACCESSORS
# ============================================================================
def set_runtime_override(key: str, value) -> None:
    _runtime_overrides[key] = value


def clear_runtime_overrides() -> None:
    _runtime_overrides.clear()
    _runtime_overrides.update(_RUNTIME_OVERRIDES_DEFAULT)


# ============================================================================
# 10) HELPERS
# ============================================================================
def config_hash(cfg: dict) -> str:
    return hashlib.sha256(json.dumps(cfg, sort_keys=True).encode()).hexdigest()


def _merge_dicts(base: dict, override: dict) -> None:
    """Deep merge override dict into base dict (modifies base in place)."""
    for key, value in override.items():
        if key in base and isinstance(base[key], dict) and isinstance(value, dict):
            _merge_dicts(base[key], value)
        else:
            base[key] = value


def _set_dotted(data: dict, dotted: str, value: Any) -> None:
    keys = dotted.split(".")
    node = data
    for k in keys[:-1]:
        node = node.setdefault(k, {})
    node[keys[-1]] = value
