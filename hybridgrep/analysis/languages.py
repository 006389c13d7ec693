# Copyright (c) 2025 Dave Tofflemire, SigilDERG Project
# Licensed under the GNU Affero General Public License v3.0 (AGPLv3).
# Commercial licenses are available. Contact: davetmire85@gmail.com

"""Language and file classification helpers."""

from __future__ import annotations

import re
from pathlib import Path

EXT_LANGUAGE_MAP = {
    ".py": "python",
    ".pyw": "python",
    ".pyi": "python",
    ".rs": "rust",
    ".js": "javascript",
    ".jsx": "javascript",
    ".mjs": "javascript",
    ".cjs": "javascript",
    ".ts": "typescript",
    ".tsx": "typescript",
    ".java": "java",
    ".kt": "kotlin",
    ".kts": "kotlin",
    ".go": "go",
    ".cs": "csharp",
    ".cpp": "cpp",
    ".cxx": "cpp",
    ".cc": "cpp",
    ".hpp": "cpp",
    ".c": "c",
    ".h": "c",
    ".swift": "swift",
    ".scala": "scala",
    ".rb": "ruby",
    ".php": "php",
    ".pl": "perl",
    ".pm": "perl",
    ".sql": "sql",
    ".sh": "shell",
    ".bash": "shell",
    ".zsh": "shell",
    ".lua": "lua",
    ".hs": "haskell",
    ".ex": "elixir",
    ".exs": "elixir",
    ".dart": "dart",
    ".r": "r",
    ".jl": "julia",
    ".md": "markdown",
    ".mdx": "markdown",
    ".rst": "restructuredtext",
    ".txt": "text",
    ".toml": "toml",
    ".yaml": "yaml",
    ".yml": "yaml",
    ".json": "json",
}

PROSE_LANGUAGES = {"markdown", "restructuredtext", "text"}
CONFIG_LANGUAGES = {"toml", "yaml", "json"}


def detect_language(rel_path: str, sample_text: str | None = None) -> str:
    """Heuristic language identifier for a repository file."""
    ext = Path(rel_path).suffix.lower()
    language = EXT_LANGUAGE_MAP.get(ext)
    text = (sample_text or "").strip()

    if ext == ".h" and text:
        if re.search(r"@interface|@implementation|@class\b", text):
            return "objective-c"
        if re.search(r"\bnamespace\b|\bstd::|\btemplate\s*<", text):
            return "cpp"

    if language:
        return language

    if not ext and text:
        first_line = text.splitlines()[0]
        if first_line.startswith("#!"):
            if "python" in first_line:
                return "python"
            if re.search(r"\b(ba|z)?sh\b", first_line):
                return "shell"
    if Path(rel_path).name.lower() in {"readme", "license", "changelog", "authors"}:
        return "text"
    return "unknown"


def classify_path(rel_path: str, sample_text: str | None = None) -> dict[str, object]:
    """Classification metadata used for chunking strategy selection."""
    language = detect_language(rel_path, sample_text)
    is_doc = language in PROSE_LANGUAGES
    is_config = language in CONFIG_LANGUAGES
    return {
        "language": language,
        "is_doc": is_doc,
        "is_config": is_config,
        "is_code": not (is_doc or is_config) and language != "unknown",
        "extension": Path(rel_path).suffix.lower() or None,
    }
