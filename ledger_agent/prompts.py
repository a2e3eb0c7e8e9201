"""System prompt templates.

Templates are YAML files in the package's ``templates/`` directory, each
holding a list of role/content messages whose content is Jinja2::

    name: ledger_assistant_system
    version: "1.0"
    messages:
      - role: system
        content: |
          The current date is {{ current_date }}.

Usage::

    from ledger_agent.prompts import system_prompt

    text = system_prompt(tools=descriptors)
"""

from __future__ import annotations

import functools
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Sequence

import yaml  # type: ignore[import-untyped]
from jinja2 import Environment, StrictUndefined

from ledger_agent.qbo import MAX_EXPECTED_ROWS
from ledger_agent.results import ToolDescriptor

logger = logging.getLogger(__name__)

TEMPLATES_DIR = Path(__file__).parent / "templates"
SYSTEM_TEMPLATE = "system"

# StrictUndefined so a missing variable fails loud.
_env = Environment(undefined=StrictUndefined, trim_blocks=True, lstrip_blocks=True)


@dataclass(frozen=True)
class PromptTemplate:
    name: str
    version: str
    messages: tuple[tuple[str, str], ...]
    source: Path

    @classmethod
    def from_file(cls, path: Path) -> "PromptTemplate":
        if not path.is_file():
            raise FileNotFoundError(f"Prompt template not found: {path}")
        raw = yaml.safe_load(path.read_text(encoding="utf-8"))
        if not isinstance(raw, dict):
            raise ValueError(f"Prompt YAML must be a mapping, got {type(raw).__name__}: {path}")
        entries = raw.get("messages")
        if not entries or not isinstance(entries, list):
            raise ValueError(f"Prompt YAML needs a non-empty 'messages' list: {path}")
        messages = []
        for i, entry in enumerate(entries):
            if not isinstance(entry, dict) or "role" not in entry or "content" not in entry:
                raise ValueError(f"Message {i} must have 'role' and 'content' keys: {path}")
            messages.append((str(entry["role"]), str(entry["content"])))
        return cls(
            name=str(raw.get("name") or path.stem),
            version=str(raw.get("version") or ""),
            messages=tuple(messages),
            source=path,
        )

    def render(self, role: str, **context: Any) -> str:
        """Render every message of ``role`` and join them with blank lines."""
        parts = [
            _env.from_string(content).render(**context).strip()
            for message_role, content in self.messages
            if message_role == role
        ]
        text = "\n\n".join(p for p in parts if p)
        logger.debug("Rendered %s %s v%s (%d chars)", role, self.name, self.version, len(text))
        return text


@functools.lru_cache(maxsize=None)
def load_template(name: str) -> PromptTemplate:
    """A packaged template by name, e.g. ``"system"`` for ``templates/system.yaml``."""
    return PromptTemplate.from_file(TEMPLATES_DIR / f"{name}.yaml")


def system_prompt(
    tools: Sequence[ToolDescriptor] = (),
    *,
    now: datetime | None = None,
    template: PromptTemplate | None = None,
) -> str:
    """Render the assistant's system prompt for the given tools."""
    template = template or load_template(SYSTEM_TEMPLATE)
    current = (now or datetime.now(timezone.utc)).strftime("%Y-%m-%d %H:%M:%S")
    return template.render("system", current_date=current, tools=list(tools), max_rows=MAX_EXPECTED_ROWS)
