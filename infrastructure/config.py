"""
THREADLOOM CONFIG - TOML-Backed Settings

Configuration is loaded once from config/threadloom.toml and converted into
typed msgspec structs. Components receive the struct they need; nothing
reads the TOML file after startup.

Usage:
    from infrastructure.config import load_config

    config = load_config()                 # default path or $THREADLOOM_CONFIG
    config.search.default_limit            # 20

    config = load_config(Path("custom.toml"))
"""
import os
import tomllib
import warnings
from pathlib import Path
from typing import Any, Dict, Optional

import msgspec


DEFAULT_CONFIG_PATH = Path(__file__).parent.parent / "config" / "threadloom.toml"
CONFIG_ENV_VAR = "THREADLOOM_CONFIG"


# =============================================================================
# CONFIG SECTIONS
# =============================================================================

class SearchConfig(msgspec.Struct, kw_only=True, frozen=True):
    """Settings for SearchIndex."""
    default_limit: int = 20
    token_weight: float = 0.7        # Share of the score from token overlap
    substring_weight: float = 0.3    # Share of the score from a whole-phrase hit
    snippet_limit: int = 3           # Max matched sentences per result
    snippet_chars: int = 160         # Max characters per matched sentence
    related_depth: int = 1           # Link hops for context.related_messages


class BranchConfig(msgspec.Struct, kw_only=True, frozen=True):
    """Settings for BranchManager."""
    root_branch_name: str = "main"
    name_word_count: int = 3         # Words taken from the first message
    name_max_chars: int = 30


class MergeConfig(msgspec.Struct, kw_only=True, frozen=True):
    """Settings for MergeEngine candidate ranking."""
    candidate_threshold: float = 0.3     # Minimum similarity for a pair to be listed
    recommend_threshold: float = 0.7     # Similarity at which a pair is recommended for merging
    max_time_gap_minutes: float = 1440.0 # Pairs further apart are kept separate


class GraphConfig(msgspec.Struct, kw_only=True, frozen=True):
    """Settings for ConversationGraph."""
    validate_on_mutation: bool = False   # Run invariant checks after every commit
    link_weight: float = 0.7             # Default weight of bidirectional links
    description_chars: int = 200         # Message description preview length


class LoggingConfig(msgspec.Struct, kw_only=True, frozen=True):
    """Settings for logging and the in-memory mutation log."""
    level: str = "INFO"
    mutation_buffer_size: int = 10000


class ThreadloomConfig(msgspec.Struct, kw_only=True, frozen=True):
    """Top-level configuration."""
    search: SearchConfig = msgspec.field(default_factory=SearchConfig)
    branches: BranchConfig = msgspec.field(default_factory=BranchConfig)
    merge: MergeConfig = msgspec.field(default_factory=MergeConfig)
    graph: GraphConfig = msgspec.field(default_factory=GraphConfig)
    logging: LoggingConfig = msgspec.field(default_factory=LoggingConfig)


# =============================================================================
# LOADING
# =============================================================================

def load_toml_config(path: Optional[Path] = None) -> Dict[str, Any]:
    """
    Load the raw TOML configuration.

    Resolution order: explicit path, $THREADLOOM_CONFIG, the bundled default.
    A missing or unreadable file produces a warning and an empty dict.
    """
    if path is None:
        env_path = os.environ.get(CONFIG_ENV_VAR)
        path = Path(env_path) if env_path else DEFAULT_CONFIG_PATH

    try:
        with open(path, "rb") as f:
            return tomllib.load(f)
    except (OSError, tomllib.TOMLDecodeError) as e:
        warnings.warn(f"Failed to load config from TOML: {e}")
        return {}


def config_from_dict(raw: Dict[str, Any]) -> ThreadloomConfig:
    """
    Convert a raw dict into ThreadloomConfig.

    Raises:
        ValueError: If a section has the wrong shape or type
    """
    try:
        return msgspec.convert(raw, type=ThreadloomConfig)
    except msgspec.ValidationError as e:
        raise ValueError(f"Invalid configuration: {e}") from e


def load_config(path: Optional[Path] = None) -> ThreadloomConfig:
    """Load and validate configuration (defaults fill missing keys)."""
    return config_from_dict(load_toml_config(path))
