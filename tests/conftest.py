import asyncio
from typing import List

import pytest

from trafficbot.errors import ExecutionFailure, UpstreamUnavailable
from trafficbot.generate.types import Message, ModelParams
from trafficbot.structured.schema import SchemaDescriptor

ALLOW_LIST = {
    "jobs_complete": ["id", "contract_number", "job_name", "equipment_rental"],
    "available_jobs": ["id", "contract_number", "status"],
}

TRIPLES = [
    ("jobs_complete", "id", "integer"),
    ("jobs_complete", "contract_number", "text"),
    ("jobs_complete", "job_name", "text"),
    ("jobs_complete", "equipment_rental", "jsonb"),
    ("jobs_complete", "internal_notes", "text"),  # not allow-listed
    ("available_jobs", "id", "integer"),
    ("available_jobs", "contract_number", "text"),
    ("available_jobs", "status", "text"),
]

TYPE3_SQL = (
    "SELECT COUNT(*) AS count FROM jobs_complete, jsonb_array_elements(equipment_rental) AS e "
    "WHERE contract_number = 'JOB-789' AND e->>'type' = 'Type 3'"
)


class FakeModel:
    """Scripted model: generate() pops replies, open_stream() yields deltas."""

    def __init__(self, replies=None, deltas=None, fail_open=False, fail_after=None, delay=0.0):
        self.replies = list(replies or [])
        self.deltas = list(deltas or [])
        self.fail_open = fail_open
        self.fail_after = fail_after
        self.delay = delay
        self.prompts: List[List[Message]] = []
        self.stream_messages: List[Message] = []
        self.pulled = 0
        self.closed = False

    async def generate(self, messages: List[Message], params: ModelParams):
        self.prompts.append(messages)
        reply = self.replies.pop(0) if self.replies else ""
        if isinstance(reply, Exception):
            raise reply
        return reply, {"engine": "fake"}

    async def open_stream(self, messages: List[Message], params: ModelParams):
        self.stream_messages = messages
        if self.fail_open:
            raise UpstreamUnavailable("completion", "boom", status=503)
        return self._deltas()

    async def _deltas(self):
        try:
            for i, d in enumerate(self.deltas):
                if self.fail_after is not None and i >= self.fail_after:
                    raise UpstreamUnavailable("completion", "connection reset")
                if self.delay:
                    await asyncio.sleep(self.delay)
                self.pulled += 1
                yield d
        finally:
            self.closed = True


class FakeStore:
    def __init__(self, rows=None, errors=0, triples=None, introspect_error=False):
        self.rows = rows if rows is not None else []
        self.errors = errors
        self.triples = triples if triples is not None else TRIPLES
        self.introspect_error = introspect_error
        self.executed: List[str] = []
        self.introspections = 0

    async def introspect(self, allow_list=None):
        self.introspections += 1
        if self.introspect_error:
            raise UpstreamUnavailable("schema introspection", "connection refused")
        return list(self.triples)

    async def fetch(self, sql: str):
        self.executed.append(sql)
        if self.errors:
            self.errors -= 1
            raise ExecutionFailure('column "contract_no" does not exist')
        return list(self.rows)


@pytest.fixture
def schema():
    return SchemaDescriptor.from_rows(TRIPLES, ALLOW_LIST)


@pytest.fixture
def store():
    return FakeStore(rows=[{"count": 4}])
