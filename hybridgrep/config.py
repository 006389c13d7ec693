# Copyright (c) 2025 Dave Tofflemire, SigilDERG Project
# Licensed under the GNU Affero General Public License v3.0 (AGPLv3).
# Commercial licenses are available. Contact: davetmire85@gmail.com

"""
Configuration for hybridgrep.

Settings come from the first JSON file found among an explicit path,
``./hybridgrep.json`` and ``~/.hybridgrep/config.json``. When no file is
usable, the ``HYBRIDGREP_*`` environment variables listed in
``ENV_SETTINGS`` are read instead. Engines never read the global config
at query time; callers pass the values they need into constructors.
"""

import json
import logging
import os
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from .models import RankingConfig

logger = logging.getLogger(__name__)

DEFAULT_EMBEDDING_DIMENSION = 768
DEFAULT_INDEX_PATH = "~/.hybridgrep_index"
DEFAULT_EMBEDDINGS_MODEL = "sentence-transformers/all-mpnet-base-v2"

# Directories never worth chunking: VCS metadata, caches, environments,
# dependency trees, build output and our own index.
DEFAULT_IGNORE_DIRS = [
    ".git", ".hg", ".svn",
    "__pycache__", ".pytest_cache", ".mypy_cache", ".ruff_cache", ".tox", ".nox",
    "venv", ".venv", "env",
    "node_modules", "bower_components",
    "build", "dist", "target", "out", ".eggs", "htmlcov",
    ".idea", ".vscode",
    ".hybridgrep", ".hybridgrep_index",
]

# Extensions for files that are binary or generated.
DEFAULT_IGNORE_EXTENSIONS = [
    ".pyc", ".pyo", ".pyd", ".class", ".jar",
    ".so", ".o", ".a", ".dylib", ".dll", ".exe", ".bin", ".wasm",
    ".zip", ".tar", ".gz", ".bz2", ".xz", ".7z", ".egg", ".whl",
    ".png", ".jpg", ".jpeg", ".gif", ".bmp", ".ico", ".webp",
    ".woff", ".woff2", ".ttf", ".otf", ".eot",
    ".pdf", ".mp3", ".mp4", ".mov",
    ".log", ".tmp", ".swp", ".lock",
    ".map",
]


def _env_bool(raw: str) -> bool:
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_list(raw: str) -> List[str]:
    return [item.strip() for item in raw.split(",") if item.strip()]


# (environment variable, dotted config key, parser)
ENV_SETTINGS: List[Tuple[str, str, Callable[[str], Any]]] = [
    ("HYBRIDGREP_INDEX_PATH", "index.path", str),
    ("HYBRIDGREP_LANCE_DIR", "index.lance_dir", str),
    ("HYBRIDGREP_LOG_LEVEL", "logging.level", str),
    ("HYBRIDGREP_EMBEDDINGS_ENABLED", "embeddings.enabled", _env_bool),
    ("HYBRIDGREP_EMBEDDINGS_PROVIDER", "embeddings.provider", str),
    ("HYBRIDGREP_EMBEDDINGS_MODEL", "embeddings.model", str),
    ("HYBRIDGREP_EMBEDDINGS_DIMENSION", "embeddings.dimension", str),
    ("HYBRIDGREP_BATCH_SIZE", "ingest.batch_size", int),
    ("HYBRIDGREP_PROGRESS_INTERVAL", "ingest.progress_interval", int),
    ("HYBRIDGREP_MAX_FILE_BYTES", "ingest.max_file_bytes", int),
    ("HYBRIDGREP_IGNORE_DIRS", "ingest.ignore_dirs", _env_list),
    ("HYBRIDGREP_NLQ_MAX_LENGTH", "nlq.max_length", int),
    ("HYBRIDGREP_QUERY_TIMEOUT", "query.timeout_seconds", float),
]


class Config:
    """Dotted-key view over the loaded settings, with typed accessors."""

    def __init__(self, config_path: Optional[Path] = None):
        self.config_data: Dict[str, Any] = {}
        self.source: Optional[Path] = None
        self._load(config_path)
        self._normalize_dimension()

    def _candidates(self, config_path: Optional[Path]) -> List[Path]:
        if config_path:
            return [Path(config_path)]
        return [Path("hybridgrep.json"), Path.home() / ".hybridgrep" / "config.json"]

    def _load(self, config_path: Optional[Path]) -> None:
        for candidate in self._candidates(config_path):
            if not candidate.exists():
                continue
            try:
                with open(candidate, "r", encoding="utf-8") as f:
                    data = json.load(f)
            except (OSError, ValueError) as e:
                logger.error("Could not read config %s: %s", candidate, e)
                break
            if not isinstance(data, dict):
                logger.error("Config %s must contain a JSON object", candidate)
                break
            self.config_data = data
            self.source = candidate
            logger.info("Loaded configuration from %s", candidate)
            return
        logger.info("No usable config file, reading HYBRIDGREP_* environment variables")
        self._load_env()

    def _load_env(self) -> None:
        self.config_data = {}
        for env_name, key, parse in ENV_SETTINGS:
            raw = os.getenv(env_name)
            if raw is None or raw == "":
                continue
            try:
                value = parse(raw)
            except ValueError:
                logger.warning("Ignoring %s=%r: not a valid value for %s", env_name, raw, key)
                continue
            self._set(key, value)

    def _set(self, key: str, value: Any) -> None:
        *parents, leaf = key.split(".")
        node = self.config_data
        for part in parents:
            node = node.setdefault(part, {})
        node[leaf] = value

    def _normalize_dimension(self) -> None:
        raw = self.get("embeddings.dimension")
        if raw is None:
            self._set("embeddings.dimension", DEFAULT_EMBEDDING_DIMENSION)
            return
        try:
            dimension = int(raw)
        except (TypeError, ValueError):
            dimension = -1
        if dimension < 0:
            logger.warning(
                "Invalid embeddings.dimension %r, using %s", raw, DEFAULT_EMBEDDING_DIMENSION
            )
            dimension = DEFAULT_EMBEDDING_DIMENSION
        elif dimension != DEFAULT_EMBEDDING_DIMENSION:
            logger.warning(
                "embeddings.dimension is %s (default %s); the embedding model must match",
                dimension,
                DEFAULT_EMBEDDING_DIMENSION,
            )
        self._set("embeddings.dimension", dimension)

    def get(self, key: str, default: Any = None) -> Any:
        """Look up a dotted key such as ``"ranking.rrf_k"``."""
        value: Any = self.config_data
        for part in key.split("."):
            if not isinstance(value, dict):
                return default
            value = value.get(part)
        return default if value is None else value

    def _path(self, key: str, default: Path) -> Path:
        raw = self.get(key)
        return Path(raw).expanduser().resolve() if raw else default

    # --- Paths and logging ---

    @property
    def index_path(self) -> Path:
        return Path(self.get("index.path", DEFAULT_INDEX_PATH)).expanduser().resolve()

    @property
    def lexical_dir(self) -> Path:
        return self.index_path / "lexical"

    @property
    def lance_dir(self) -> Path:
        return self._path("index.lance_dir", self.index_path / "lancedb")

    @property
    def fallback_artifacts_dir(self) -> Path:
        return self._path("fallback.artifacts_dir", self.index_path / "fallback")

    @property
    def log_level(self) -> str:
        return self.get("logging.level", "INFO")

    @property
    def log_file(self) -> Optional[str]:
        return os.getenv("HYBRIDGREP_LOG_FILE") or self.get("logging.file") or None

    # --- Embeddings ---

    @property
    def embeddings_enabled(self) -> bool:
        return bool(self.get("embeddings.enabled", False))

    @property
    def embeddings_provider(self) -> str:
        return self.get("embeddings.provider", "sentence-transformers")

    @property
    def embeddings_model(self) -> str:
        return self.get("embeddings.model", DEFAULT_EMBEDDINGS_MODEL)

    @property
    def embeddings_dimension(self) -> int:
        return int(self.get("embeddings.dimension", DEFAULT_EMBEDDING_DIMENSION))

    @property
    def embeddings_table(self) -> str:
        return self.get("embeddings.table", "code_chunks")

    @property
    def embeddings_kwargs(self) -> dict:
        """Extra keyword arguments for the embedding model constructor."""
        reserved = {"enabled", "provider", "model", "dimension", "table"}
        return {k: v for k, v in self.get("embeddings", {}).items() if k not in reserved}

    # --- Ingestion and chunking ---

    @property
    def batch_size(self) -> int:
        return max(1, int(self.get("ingest.batch_size", 256)))

    @property
    def progress_interval(self) -> int:
        return max(1, int(self.get("ingest.progress_interval", 1000)))

    @property
    def max_file_bytes(self) -> int:
        return int(self.get("ingest.max_file_bytes", 1_000_000))

    @property
    def ignore_dirs(self) -> List[str]:
        return self.get("ingest.ignore_dirs", DEFAULT_IGNORE_DIRS)

    @property
    def ignore_extensions(self) -> List[str]:
        return self.get("ingest.ignore_extensions", DEFAULT_IGNORE_EXTENSIONS)

    @property
    def chunk_max_lines(self) -> int:
        return int(self.get("chunking.max_lines", 80))

    @property
    def chunk_overlap(self) -> int:
        return int(self.get("chunking.overlap", 20))

    @property
    def tokenizer_model(self) -> Optional[str]:
        return self.get("chunking.tokenizer_model") or None

    # --- Query ---

    @property
    def nlq_max_length(self) -> int:
        return int(self.get("nlq.max_length", 1000))

    @property
    def default_limit(self) -> int:
        return int(self.get("query.default_limit", 20))

    @property
    def query_timeout(self) -> float:
        return float(self.get("query.timeout_seconds", 10.0))

    @property
    def ranking_config(self) -> RankingConfig:
        return RankingConfig(
            lexical_weight=float(self.get("ranking.lexical_weight", 0.4)),
            semantic_weight=float(self.get("ranking.semantic_weight", 0.6)),
            rrf_k=int(self.get("ranking.rrf_k", 60)),
        )

    @property
    def fallback_settings(self) -> dict:
        return self.get("fallback", {})


_config: Optional[Config] = None


def get_config() -> Config:
    """Return the process-wide config, loading it on first use."""
    global _config
    if _config is None:
        _config = Config()
    return _config


def load_config(config_path: Optional[Path] = None) -> Config:
    """Replace the process-wide config with one loaded from ``config_path``."""
    global _config
    _config = Config(config_path)
    return _config
