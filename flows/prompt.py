"""
Prompt Compiler — renders a flow's PromptTemplate against validated input.

Substitution is strict: a placeholder whose path does not resolve (or
resolves to null) is a compile error listing every such path. An empty
string in the prompt is never used as a stand-in for missing data.

The compiled prompt ends with a machine-readable contract: the JSON
catalogue of callable tools and the JSON Schema the final answer must
satisfy.
"""
from __future__ import annotations

import json
import re
from typing import Any

from models.schemas import Schema, ValidationIssue
from flows.errors import PromptCompileError
from flows.models import PromptTemplate
from flows.validator import to_json_schema
from utils.paths import MISSING, get_nested_value

_SECTION = re.compile(r"\{\{#if\s+([\w.]+)\s*\}\}(.*?)\{\{/if\}\}", re.DOTALL)
_PLACEHOLDER = re.compile(r"\{\{\{?\s*([A-Za-z_][\w.]*)\s*\}?\}\}")

TOOLS_HEADER = (
    "## Available tools\n"
    "You may call any of these tools. Arguments must match the tool's input_schema."
)
OUTPUT_HEADER = (
    "## Required output\n"
    "When you have everything you need, reply with ONLY a JSON object matching "
    "this schema. No prose, no code fences."
)


def placeholder_paths(template: PromptTemplate) -> list[str]:
    """Every dot-path the template references, section guards included."""
    paths = [m.group(1) for m in _SECTION.finditer(template.text)]
    paths += [m.group(1) for m in _PLACEHOLDER.finditer(template.text)]
    return list(dict.fromkeys(paths))


def render_template(template: PromptTemplate, input_value: dict[str, Any]) -> str:
    """Substitute placeholders only. Raises PromptCompileError on any unresolved path."""
    unresolved: list[str] = []

    def keep_section(match: re.Match) -> str:
        value = get_nested_value(input_value, match.group(1))
        return match.group(2) if value else ""

    def substitute(match: re.Match) -> str:
        path = match.group(1)
        value = get_nested_value(input_value, path)
        if value is MISSING or value is None:
            unresolved.append(path)
            return match.group(0)
        return _format_value(value)

    body = _SECTION.sub(keep_section, template.text)
    text = _PLACEHOLDER.sub(substitute, body)
    if unresolved:
        raise PromptCompileError(template.name, list(dict.fromkeys(unresolved)))
    return text.strip()


def compile_prompt(
    template: PromptTemplate,
    input_value: dict[str, Any],
    tools: list[dict[str, Any]],
    output_schema: Schema,
) -> str:
    """
    Render the template and append the tool catalogue and output contract.

    Args:
        template:      The flow's prompt template
        input_value:   Already-validated flow input
        tools:         Tool catalogue entries (name, description, input_schema)
        output_schema: Shape the final answer must have
    """
    parts = [render_template(template, input_value)]
    if tools:
        parts.append(f"{TOOLS_HEADER}\n{json.dumps(tools, indent=2)}")
    parts.append(f"{OUTPUT_HEADER}\n{json.dumps(to_json_schema(output_schema), indent=2)}")
    return "\n\n".join(parts)


def compile_repair_prompt(issues: list[ValidationIssue], output_schema: Schema) -> str:
    """The single follow-up message sent when the final answer failed validation."""
    problems = "\n".join(f"- {issue.path}: {issue.message}" for issue in issues)
    return (
        "Your previous answer did not match the required output schema.\n"
        f"Problems:\n{problems}\n\n"
        "Reply again with ONLY a corrected JSON object matching this schema:\n"
        f"{json.dumps(to_json_schema(output_schema), indent=2)}"
    )


def _format_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    return str(value)
