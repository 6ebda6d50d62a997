"""Generate -> Validate -> Execute, with bounded retry.

The retry-vs-fatal decision is a pure function of (state, ok, attempt,
max_attempts) so it can be tested without any I/O:

    GENERATE  --ok--> VALIDATE  --ok--> EXECUTE --ok--> SUCCESS
        |                 |                 |
        +------fail-------+-------fail------+--> RETRYABLE_FAILURE
                                                   |
                        attempt < max_attempts ----+----> GENERATE
                        otherwise              ---------> FATAL_FAILURE
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from trafficbot.errors import PipelineError, UnsafeGeneratedQuery

from .generator import QueryGenerator
from .schema import SchemaDescriptor
from .validator import QueryValidator

logger = logging.getLogger(__name__)


class State(str, Enum):
    GENERATE = "generate"
    VALIDATE = "validate"
    EXECUTE = "execute"
    SUCCESS = "success"
    RETRYABLE_FAILURE = "retryable_failure"
    FATAL_FAILURE = "fatal_failure"


TERMINAL = frozenset({State.SUCCESS, State.FATAL_FAILURE})

TRANSITIONS = {
    (State.GENERATE, True): State.VALIDATE,
    (State.GENERATE, False): State.RETRYABLE_FAILURE,
    (State.VALIDATE, True): State.EXECUTE,
    (State.VALIDATE, False): State.RETRYABLE_FAILURE,
    (State.EXECUTE, True): State.SUCCESS,
    (State.EXECUTE, False): State.RETRYABLE_FAILURE,
}


def next_state(state: State, ok: bool, attempt: int, max_attempts: int) -> State:
    if state in TERMINAL:
        return state
    if state is State.RETRYABLE_FAILURE:
        return State.GENERATE if attempt < max_attempts else State.FATAL_FAILURE
    return TRANSITIONS[(state, ok)]


@dataclass(frozen=True)
class GeneratedQuery:
    text: str
    attempt: int


@dataclass
class ExecutionReport:
    state: State
    attempts: int
    rows: List[Dict[str, Any]] = field(default_factory=list)
    query: Optional[GeneratedQuery] = None
    errors: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.state is State.SUCCESS


class QueryExecutor:
    def __init__(self, generator: QueryGenerator, validator: QueryValidator, store, max_attempts: int = 2):
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self.generator = generator
        self.validator = validator
        self.store = store
        self.max_attempts = max_attempts

    async def run(self, question: str, schema: SchemaDescriptor) -> ExecutionReport:
        """Drive the state machine to SUCCESS or FATAL_FAILURE. Never raises PipelineError."""
        state = State.GENERATE
        attempt = 0
        query: Optional[GeneratedQuery] = None
        feedback: Optional[str] = None
        rows: List[Dict[str, Any]] = []
        errors: List[str] = []

        while state not in TERMINAL:
            ok = False
            if state is State.GENERATE:
                attempt += 1
                query = None
                try:
                    text = await self.generator.generate(question, schema, feedback)
                    if text:
                        query = GeneratedQuery(text=text, attempt=attempt)
                        ok = True
                    else:
                        feedback = "the answer was empty"
                except PipelineError as e:
                    feedback = None
                    errors.append(f"attempt {attempt}: generation failed: {e}")

            elif state is State.VALIDATE:
                outcome = self.validator.validate(query.text, schema)
                ok = outcome.valid
                if not ok:
                    err = UnsafeGeneratedQuery(outcome.rejection, query.text, outcome.detail)
                    logger.info("Rejected generated query (attempt %d): %s", attempt, err)
                    errors.append(f"attempt {attempt}: {err}")
                    feedback = f"{err} in `{query.text}`"

            elif state is State.EXECUTE:
                try:
                    rows = await self.store.fetch(query.text)
                    ok = True
                except PipelineError as e:
                    logger.info("Query execution failed (attempt %d): %s", attempt, e)
                    errors.append(f"attempt {attempt}: execution failed: {e}")
                    feedback = f"the database returned an error: {e}"

            prev, state = state, next_state(state, ok, attempt, self.max_attempts)
            logger.debug("executor %s -> %s (attempt %d/%d)", prev.value, state.value, attempt, self.max_attempts)

        if state is State.FATAL_FAILURE:
            logger.warning("Structured query gave up after %d attempts: %s", attempt, "; ".join(errors))
        return ExecutionReport(state=state, attempts=attempt, rows=rows, query=query, errors=errors)
