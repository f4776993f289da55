"""Language detection and tree-sitter grammar registry."""

from __future__ import annotations

import importlib
import threading
from dataclasses import dataclass
from importlib.util import find_spec
from pathlib import PurePosixPath
from typing import Any

from codeindex.log import get_logger

log = get_logger(__name__)

_EXTENSION_TO_LANGUAGE: dict[str, str] = {
    ".py": "python",
    ".pyi": "python",
    ".rs": "rust",
    ".js": "javascript",
    ".jsx": "javascript",
    ".mjs": "javascript",
    ".cjs": "javascript",
    ".ts": "typescript",
    ".mts": "typescript",
    ".tsx": "tsx",
    ".go": "go",
    ".java": "java",
    ".kt": "kotlin",
    ".c": "c",
    ".h": "c",
    ".cc": "cpp",
    ".cpp": "cpp",
    ".hpp": "cpp",
    ".cs": "csharp",
    ".rb": "ruby",
    ".php": "php",
    ".swift": "swift",
    ".sh": "shell",
    ".bash": "shell",
    ".md": "markdown",
    ".markdown": "markdown",
    ".rst": "rst",
    ".toml": "toml",
    ".yaml": "yaml",
    ".yml": "yaml",
    ".json": "json",
    ".sql": "sql",
    ".html": "html",
    ".css": "css",
}


@dataclass(frozen=True)
class Grammar:
    """A tree-sitter grammar package and the node types treated as units."""

    module: str
    factory: str
    unit_types: frozenset[str]


_JS_UNITS = frozenset(
    [
        "function_declaration",
        "generator_function_declaration",
        "class_declaration",
        "export_statement",
    ]
)
_TS_UNITS = _JS_UNITS | frozenset(
    [
        "abstract_class_declaration",
        "interface_declaration",
        "type_alias_declaration",
        "enum_declaration",
        "module",
        "internal_module",
    ]
)

GRAMMARS: dict[str, Grammar] = {
    "python": Grammar(
        "tree_sitter_python",
        "language",
        frozenset(["function_definition", "class_definition", "decorated_definition"]),
    ),
    "rust": Grammar(
        "tree_sitter_rust",
        "language",
        frozenset(
            [
                "function_item",
                "impl_item",
                "trait_item",
                "struct_item",
                "enum_item",
                "union_item",
                "mod_item",
                "macro_definition",
            ]
        ),
    ),
    "javascript": Grammar("tree_sitter_javascript", "language", _JS_UNITS),
    "typescript": Grammar("tree_sitter_typescript", "language_typescript", _TS_UNITS),
    "tsx": Grammar("tree_sitter_typescript", "language_tsx", _TS_UNITS),
    "go": Grammar(
        "tree_sitter_go",
        "language",
        frozenset(["function_declaration", "method_declaration", "type_declaration"]),
    ),
}

# Sibling node types pulled into the unit that follows them.
LEADING_TYPES: frozenset[str] = frozenset(
    ["comment", "line_comment", "block_comment", "attribute_item", "decorator"]
)

_languages: dict[str, Any] = {}
_languages_lock = threading.Lock()


def language_for(path: str) -> str:
    """Return the language tag for *path*, ``text`` when unknown."""
    return _EXTENSION_TO_LANGUAGE.get(PurePosixPath(path).suffix.lower(), "text")


def load_language(lang: str) -> Any | None:
    """Return a ``tree_sitter.Language`` for *lang*, or None if no grammar is installed."""
    grammar = GRAMMARS.get(lang)
    if grammar is None:
        return None
    with _languages_lock:
        if lang in _languages:
            return _languages[lang]
        language = None
        if find_spec(grammar.module) is not None and find_spec("tree_sitter") is not None:
            from tree_sitter import Language

            try:
                module = importlib.import_module(grammar.module)
                language = Language(getattr(module, grammar.factory)())
            except (AttributeError, TypeError, ValueError):
                log.warning("grammar.load_failed", language=lang, exc_info=True)
        _languages[lang] = language
        return language
