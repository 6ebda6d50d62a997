# Reusable prompt fragments for the answer model's system message.

import os

import yaml

from .types import Persona

BASE_GUARDRAILS = """\
- Use [MUTCD] for standards and rules.
- Use [BID] for contract, location, and equipment details.
- Use [Result N] blocks for live job and equipment data.
- Always cite sources exactly as shown.
- Keep answers concise and professional.
"""


def build_system_prompt(persona_name: str, style: str, directives: str) -> str:
    return f"""You are {persona_name}.
Your style: {style}

{directives.strip()}
{BASE_GUARDRAILS}"""


def load_persona(key: str, path: str | None = None) -> Persona:
    """Load persona from personas.yaml in this folder."""
    path = path or os.path.join(os.path.dirname(__file__), "personas.yaml")
    if not os.path.exists(path):
        raise FileNotFoundError(f"personas.yaml not found at {path}")
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if key not in data:
        raise KeyError(f"Persona '{key}' not found in personas.yaml")
    p = data[key]
    return Persona(
        key=key,
        name=p.get("name", key),
        style=p.get("style", ""),
        directives=p.get("directives", ""),
    )
