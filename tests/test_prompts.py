"""Tests for prompt templates and the system prompt."""

import textwrap
from datetime import datetime, timezone
from pathlib import Path

import jinja2
import pytest

from ledger_agent.prompts import TEMPLATES_DIR, PromptTemplate, load_template, system_prompt
from ledger_agent.registry import default_registry


@pytest.fixture()
def prompt_dir(tmp_path: Path) -> Path:
    d = tmp_path / "templates"
    d.mkdir()
    return d


def _write(path: Path, content: str) -> Path:
    path.write_text(textwrap.dedent(content), encoding="utf-8")
    return path


class TestPromptTemplate:
    def test_renders_one_role(self, prompt_dir: Path) -> None:
        template = PromptTemplate.from_file(_write(
            prompt_dir / "simple.yaml",
            """\
            name: simple
            version: "1.0"
            messages:
              - role: system
                content: "You are a bookkeeping assistant for {{ company }}."
              - role: user
                content: "Summarize unpaid bills"
            """,
        ))
        assert template.name == "simple"
        assert template.version == "1.0"
        assert template.render("system", company="Acme") == "You are a bookkeeping assistant for Acme."
        assert template.render("user") == "Summarize unpaid bills"
        assert template.render("assistant") == ""

    def test_messages_of_one_role_are_joined(self, prompt_dir: Path) -> None:
        template = PromptTemplate.from_file(_write(
            prompt_dir / "two.yaml",
            """\
            messages:
              - role: system
                content: First.
              - role: system
                content: Second.
            """,
        ))
        assert template.name == "two"
        assert template.render("system") == "First.\n\nSecond."

    def test_loop_over_objects(self, prompt_dir: Path) -> None:
        template = PromptTemplate.from_file(_write(
            prompt_dir / "loop.yaml",
            """\
            messages:
              - role: system
                content: |
                  Tools:
                  {% for tool in tools %}
                  - {{ tool.name }}
                  {% endfor %}
            """,
        ))

        class T:
            def __init__(self, name: str) -> None:
                self.name = name

        text = template.render("system", tools=[T("schema_retriever"), T("size_retriever")])
        assert text == "Tools:\n- schema_retriever\n- size_retriever"


class TestPromptTemplateErrors:
    def test_missing_file(self, prompt_dir: Path) -> None:
        with pytest.raises(FileNotFoundError):
            PromptTemplate.from_file(prompt_dir / "nope.yaml")

    def test_missing_messages_key(self, prompt_dir: Path) -> None:
        with pytest.raises(ValueError, match="messages"):
            PromptTemplate.from_file(_write(prompt_dir / "bad.yaml", "name: bad\n"))

    def test_message_missing_role(self, prompt_dir: Path) -> None:
        with pytest.raises(ValueError, match="role"):
            PromptTemplate.from_file(_write(prompt_dir / "bad.yaml", "messages:\n  - content: hi\n"))

    def test_yaml_not_a_mapping(self, prompt_dir: Path) -> None:
        with pytest.raises(ValueError, match="mapping"):
            PromptTemplate.from_file(_write(prompt_dir / "bad.yaml", "- just\n- a list\n"))

    def test_undefined_variable_fails_loud(self, prompt_dir: Path) -> None:
        template = PromptTemplate.from_file(
            _write(prompt_dir / "undef.yaml", 'messages:\n  - role: system\n    content: "{{ missing }}"\n')
        )
        with pytest.raises(jinja2.UndefinedError):
            template.render("system")


class TestSystemPrompt:
    def test_template_ships_with_package(self) -> None:
        assert (TEMPLATES_DIR / "system.yaml").is_file()
        template = load_template("system")
        assert template.name == "ledger_assistant_system"
        assert load_template("system") is template

    def test_renders_date_tools_and_limit(self) -> None:
        tools = default_registry().descriptors()
        text = system_prompt(tools, now=datetime(2025, 3, 4, 5, 6, 7, tzinfo=timezone.utc))
        assert "The current date is 2025-03-04 05:06:07." in text
        for name in ("schema_retriever", "size_retriever", "user_data_retriever", "python_function_runner"):
            assert f"- {name}: " in text
        assert "more than 1000 rows" in text
        assert "{{" not in text

    def test_no_tools(self) -> None:
        text = system_prompt([])
        assert "You have access to these tools:" in text

    def test_custom_template(self, prompt_dir: Path) -> None:
        template = PromptTemplate.from_file(_write(
            prompt_dir / "short.yaml",
            'messages:\n  - role: system\n    content: "Today is {{ current_date }}; at most {{ max_rows }} rows."\n',
        ))
        text = system_prompt(template=template, now=datetime(2025, 1, 2, tzinfo=timezone.utc))
        assert text == "Today is 2025-01-02 00:00:00; at most 1000 rows."
