"""
System prompt compilation.

The prompt is kept as a YAML document so the business copy can be edited
without touching code. It is compiled once at startup.
"""

import logging
from pathlib import Path
from typing import Union

import yaml

logger = logging.getLogger(__name__)


class PromptError(Exception):
    """Raised when the prompt template cannot be loaded."""


RESPONSE_CONTRACT = """You MUST respond ONLY with a valid JSON object matching this exact schema, no extra text:
{{
  "reply_to_user": "<string: message to send to the customer>",
  "extracted_data": {{
{fields}
  }},
  "action": "<one of: continue | handoff | schedule>"
}}"""


def compile_prompt(document: dict) -> str:
    """Render a parsed template into the system instruction."""
    identity = document.get("identity")
    if not identity:
        raise PromptError("prompt template is missing 'identity'")

    rules = [f"- {rule}" for rule in document.get("business_rules") or []]
    fields = [str(f) for f in document.get("quote_fields_needed") or []]
    workflow = document.get("workflow") or ""

    field_lines = ",\n".join(f'    "{name}": "<string or \'unknown\'>"' for name in fields)

    sections = [
        str(identity).strip(),
        "Business Rules:\n" + "\n".join(rules),
        "Quote Fields Needed: " + ", ".join(fields),
        "Workflow: " + str(workflow).strip(),
        RESPONSE_CONTRACT.format(fields=field_lines),
    ]
    return "\n\n".join(sections).strip()


def load_prompt(path: Union[str, Path]) -> str:
    """
    Read and compile the YAML prompt template.

    Raises:
        PromptError: file missing, invalid YAML, or not a mapping
    """
    path = Path(path)
    try:
        with path.open("r", encoding="utf-8") as handle:
            document = yaml.safe_load(handle)
    except OSError as e:
        raise PromptError(f"failed to read system prompt {path}: {e}") from e
    except yaml.YAMLError as e:
        raise PromptError(f"failed to parse system prompt YAML {path}: {e}") from e

    if not isinstance(document, dict):
        raise PromptError(f"system prompt {path} must be a YAML mapping")

    prompt = compile_prompt(document)
    logger.info(f"System prompt loaded from {path} ({len(prompt)} chars)")
    return prompt
