# Structured path: schema-driven NL -> SQL, validation, bounded retry, formatting.

from .executor import ExecutionReport, GeneratedQuery, QueryExecutor, State, next_state
from .generator import QueryGenerator
from .schema import UNAVAILABLE, SchemaCache, SchemaDescriptor
from .store import SqlStore
from .validator import KeywordQueryValidator, QueryValidator, Rejection, ValidationOutcome

__all__ = [
    "ExecutionReport", "GeneratedQuery", "QueryExecutor", "State", "next_state",
    "QueryGenerator", "UNAVAILABLE", "SchemaCache", "SchemaDescriptor", "SqlStore",
    "KeywordQueryValidator", "QueryValidator", "Rejection", "ValidationOutcome",
]
