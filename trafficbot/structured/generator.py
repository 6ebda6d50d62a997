# Natural language -> one read-only SQL statement, via a single model call.
# Output is not trusted here: the validator and the executor's retry loop handle bad SQL.

from __future__ import annotations

import logging
import re
from typing import List, Optional, Sequence

from trafficbot.generate.types import Message, ModelParams

from .schema import SchemaDescriptor

logger = logging.getLogger(__name__)

DEFAULT_RULES = [
    "Questions about a job, contract number, location or rented equipment use jobs_complete.",
    "Questions about bids, bid status or estimates use available_jobs.",
    "equipment_rental is a JSON array; expand it with jsonb_array_elements(equipment_rental) AS e "
    "and read fields with e->>'type'.",
    "Compare text with = for exact identifiers (contract numbers) and ILIKE for names.",
]

DEFAULT_EXAMPLE = (
    "Question: How many Type 3s on JOB-789?\n"
    "SQL: SELECT COUNT(*) AS count FROM jobs_complete, jsonb_array_elements(equipment_rental) AS e "
    "WHERE contract_number = 'JOB-789' AND e->>'type' = 'Type 3'"
)

_FENCE = re.compile(r"^```(?:sql)?\s*|\s*```$", re.IGNORECASE)


def clean_query_text(raw: str) -> str:
    """Strip whitespace, markdown fences and trailing terminators from model output."""
    text = _FENCE.sub("", raw.strip()).strip()
    if text.lower().startswith("sql:"):
        text = text[4:].strip()
    return text.rstrip(";").strip()


class QueryGenerator:
    def __init__(self, model_client, params: Optional[ModelParams] = None,
                 rules: Optional[Sequence[str]] = None, example: Optional[str] = None):
        self.model_client = model_client
        self.params = params or ModelParams(temperature=0.0, max_tokens=400)
        self.rules = list(rules) if rules else DEFAULT_RULES
        self.example = example or DEFAULT_EXAMPLE

    def build_prompt(self, question: str, schema: SchemaDescriptor, feedback: Optional[str] = None) -> str:
        rules = "\n".join(f"{i}. {r}" for i, r in enumerate(self.rules, start=1))
        prompt = f"""Translate the question into one PostgreSQL query.

Available columns (use these exact names, nothing else):
{schema.render()}

Rules:
{rules}

Example:
{self.example}

Output exactly one SELECT statement. No prose, no markdown, no trailing semicolon.
"""
        if feedback:
            prompt += f"\nYour previous attempt was rejected: {feedback}\nFix it.\n"
        return prompt + f"\nQuestion: {question}\nSQL:"

    async def generate(self, question: str, schema: SchemaDescriptor, feedback: Optional[str] = None) -> str:
        messages: List[Message] = [
            Message(role="system", content="You write SQL for a traffic-control company's database."),
            Message(role="user", content=self.build_prompt(question, schema, feedback)),
        ]
        text, _meta = await self.model_client.generate(messages, self.params)
        query = clean_query_text(text or "")
        logger.debug("Generated query: %s", query)
        return query
