"""JSON-backed prompt catalog for the reflection agents.

Entries are addressed by dotted keys (`self_critique.user`) and rendered with
`string.Template`. Long prompts may be stored as a list of lines.
"""
from __future__ import annotations

import json
from pathlib import Path
from string import Template
from typing import Any


PROMPTS_PATH = Path(__file__).resolve().parents[1] / "prompts" / "prompts.json"


class PromptCatalog:
    """Caches the parsed catalog until the file's mtime changes."""

    def __init__(self, path: Path):
        self.path = path
        self._entries: dict[str, Any] | None = None
        self._mtime_ns: int | None = None

    def _entries_for_current_file(self) -> dict[str, Any]:
        mtime_ns = self.path.stat().st_mtime_ns
        if self._entries is not None and self._mtime_ns == mtime_ns:
            return self._entries

        payload = json.loads(self.path.read_text(encoding="utf-8"))
        if not isinstance(payload, dict):
            raise ValueError(f"Prompt catalog must be a JSON object: {self.path}")
        self._entries = payload
        self._mtime_ns = mtime_ns
        return payload

    def template(self, key: str) -> Template:
        node: Any = self._entries_for_current_file()
        for part in key.split("."):
            if not isinstance(node, dict) or part not in node:
                raise KeyError(f"Prompt key not found: {key}")
            node = node[part]
        if isinstance(node, list) and all(isinstance(line, str) for line in node):
            return Template("\n".join(node))
        if not isinstance(node, str):
            raise TypeError(f"Prompt key must map to a string or list of lines: {key}")
        return Template(node)

    def placeholders(self, key: str) -> set[str]:
        return set(self.template(key).get_identifiers())

    def render(self, key: str, **values: Any) -> str:
        template = self.template(key)
        try:
            return template.substitute(**values)
        except KeyError as exc:
            raise KeyError(f"Missing template value '{exc.args[0]}' for prompt '{key}'") from exc

    def reset(self) -> None:
        self._entries = None
        self._mtime_ns = None


_catalog: PromptCatalog | None = None


def get_catalog() -> PromptCatalog:
    global _catalog
    if _catalog is None or _catalog.path != PROMPTS_PATH:
        _catalog = PromptCatalog(PROMPTS_PATH)
    return _catalog


def render_prompt(key: str, **values: Any) -> str:
    return get_catalog().render(key, **values)


def prompt_placeholders(key: str) -> set[str]:
    return get_catalog().placeholders(key)


def clear_prompt_cache() -> None:
    get_catalog().reset()
