from __future__ import annotations

import json
from typing import Any, List, Mapping

_PLACEHOLDERS = {
    "string": "example",
    "number": 42,
    "integer": 1,
    "boolean": True,
}


def describe_schema(schema: Mapping[str, Any], indent: int = 0) -> str:
    """Render a schema as an indented outline a model can follow."""
    lines: List[str] = []
    pad = "  " * indent
    schema_type = schema.get("type", "any")

    if schema_type == "object":
        required = set(schema.get("required") or [])
        for name, prop in (schema.get("properties") or {}).items():
            prop = prop if isinstance(prop, Mapping) else {}
            marker = " (required)" if name in required else ""
            line = f"{pad}- {name}: {prop.get('type', 'any')}{marker}"
            if prop.get("enum"):
                options = ", ".join(json.dumps(option) for option in prop["enum"])
                line += f", one of [{options}]"
            if prop.get("description"):
                line += f" - {prop['description']}"
            lines.append(line)
            if prop.get("type") in ("object", "array"):
                nested = describe_schema(prop, indent + 1)
                if nested:
                    lines.append(nested)
    elif schema_type == "array":
        items = schema.get("items")
        if isinstance(items, Mapping):
            lines.append(f"{pad}- items: {items.get('type', 'any')}")
            if items.get("type") in ("object", "array"):
                nested = describe_schema(items, indent + 1)
                if nested:
                    lines.append(nested)
    else:
        lines.append(f"{pad}- value: {schema_type}")

    return "\n".join(lines)


def example_value(schema: Mapping[str, Any]) -> Any:
    """Build a placeholder value that satisfies ``schema``."""
    enum = schema.get("enum")
    if enum:
        return enum[0]

    schema_type = schema.get("type")
    if schema_type == "object":
        return {
            name: example_value(prop if isinstance(prop, Mapping) else {})
            for name, prop in (schema.get("properties") or {}).items()
        }
    if schema_type == "array":
        items = schema.get("items")
        return [example_value(items if isinstance(items, Mapping) else {"type": "string"})]
    return _PLACEHOLDERS.get(schema_type, "example")


def build_example_json(schema: Mapping[str, Any]) -> str:
    return json.dumps(example_value(schema), indent=2)


def build_prompt_with_schema(prompt: str, schema: Mapping[str, Any], retry_attempt: int) -> str:
    """Append output-shape instructions to ``prompt``.

    Each retry attempt escalates: a polite request with an outline, then an
    IMPORTANT reminder that the previous answer did not match, then a CRITICAL
    directive with a concrete example object.
    """
    outline = describe_schema(schema)

    if retry_attempt <= 0:
        return (
            f"{prompt}\n\n"
            "Please format your response as JSON matching this structure:\n"
            f"{outline}"
        )

    if retry_attempt == 1:
        return (
            f"{prompt}\n\n"
            "IMPORTANT: Your previous response didn't match the required format. "
            "Respond ONLY with the JSON object, no other text.\n\n"
            "Required structure:\n"
            f"{outline}"
        )

    return (
        f"{prompt}\n\n"
        "CRITICAL: You must respond with ONLY valid JSON. Do not include any "
        "explanation, markdown, or code fences.\n\n"
        "Required structure:\n"
        f"{outline}\n\n"
        "Example:\n"
        f"{build_example_json(schema)}"
    )
