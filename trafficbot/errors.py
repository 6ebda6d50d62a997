"""Failure taxonomy shared by the retrieval and completion layers.

Transport-level exceptions (httpx, openai, SQLAlchemy) are translated into
these at the client boundary. Zero rows or zero chunks is not an error and
has no class here.
"""

from __future__ import annotations

from typing import Optional


class PipelineError(Exception):
    """Base class for every failure raised inside the pipeline."""


class ConfigurationError(PipelineError):
    """Deployment is misconfigured (e.g. embedding dimension mismatch)."""


class UpstreamUnavailable(PipelineError):
    """An external capability was unreachable or answered with a non-success status."""

    def __init__(self, service: str, detail: str = "", status: Optional[int] = None):
        self.service = service
        self.detail = detail
        self.status = status
        msg = f"{service} unavailable"
        if status is not None:
            msg += f" (status {status})"
        if detail:
            msg += f": {detail}"
        super().__init__(msg)


class SchemaUnavailable(PipelineError):
    """Schema introspection has never succeeded in this process."""


class UnsafeGeneratedQuery(PipelineError):
    """Validator rejected a generated query."""

    def __init__(self, reason, query: str, detail: str = ""):
        self.reason = reason
        self.query = query
        self.detail = detail
        super().__init__(f"{reason.value}: {detail}" if detail else reason.value)


class ExecutionFailure(PipelineError):
    """The structured store rejected a validated query."""


class ClientCancelled(PipelineError):
    """The caller went away before the turn finished."""
