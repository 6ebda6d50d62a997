"""Local safety and shape checks for generated SQL.

Validators share one narrow interface, ``validate(query, schema) -> ValidationOutcome``,
so the checks below can be swapped without touching the executor. Checks run
in order and the first rejection wins:

1. the statement starts with SELECT                -> NotReadOnly
2. no INSERT/UPDATE/DELETE/DROP/ALTER/TRUNCATE token -> MutationKeywordDetected
3. (strict mode) the statement parses (sqlglot, Postgres dialect) and every
   table, column and function it references is in the schema, an alias, or
   an allowed function                             -> UnknownColumnReference
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, Optional, Protocol, Set

import sqlglot
from sqlglot import exp
from sqlglot.errors import ParseError, TokenError

from .schema import SchemaDescriptor


class Rejection(str, Enum):
    NOT_READ_ONLY = "NotReadOnly"
    MUTATION_KEYWORD_DETECTED = "MutationKeywordDetected"
    UNKNOWN_COLUMN_REFERENCE = "UnknownColumnReference"


@dataclass(frozen=True)
class ValidationOutcome:
    rejection: Optional[Rejection] = None
    detail: str = ""

    @property
    def valid(self) -> bool:
        return self.rejection is None

    def __str__(self) -> str:
        if self.valid:
            return "valid"
        return f"{self.rejection.value}: {self.detail}" if self.detail else self.rejection.value


VALID = ValidationOutcome()


class QueryValidator(Protocol):
    def validate(self, query: str, schema: SchemaDescriptor) -> ValidationOutcome: ...


READ_ONLY_VERB = "select"
MUTATION_KEYWORDS = ("insert", "update", "delete", "drop", "alter", "truncate")
DIALECT = "postgres"

_LEADING_VERB = re.compile(r"^\s*(\w+)")
_MUTATION = re.compile(r"\b(" + "|".join(MUTATION_KEYWORDS) + r")\b", re.IGNORECASE)

class KeywordQueryValidator:
    """Read-only verb + mutation keyword block, with an optional allow-list check."""

    def __init__(self, strict: bool = False, allowed_functions: Iterable[str] = ()):
        self.strict = strict
        self.allowed_functions: Set[str] = {f.lower() for f in allowed_functions}

    def validate(self, query: str, schema: SchemaDescriptor) -> ValidationOutcome:
        m = _LEADING_VERB.match(query or "")
        if not m or m.group(1).lower() != READ_ONLY_VERB:
            return ValidationOutcome(Rejection.NOT_READ_ONLY, f"starts with {m.group(1) if m else 'nothing'!r}")

        hit = _MUTATION.search(query)
        if hit:
            return ValidationOutcome(Rejection.MUTATION_KEYWORD_DETECTED, hit.group(1).upper())

        if self.strict:
            try:
                unknown = self.unknown_references(query, schema)
            except (ParseError, TokenError) as e:
                reason = (str(e).splitlines() or ["parse error"])[0][:200]
                return ValidationOutcome(Rejection.UNKNOWN_COLUMN_REFERENCE, f"unparseable: {reason}")
            if unknown:
                return ValidationOutcome(Rejection.UNKNOWN_COLUMN_REFERENCE, ", ".join(sorted(unknown)))
        return VALID

    def unknown_references(self, query: str, schema: SchemaDescriptor) -> Set[str]:
        """Tables, columns and functions in ``query`` that the schema does not expose.

        Raises ParseError/TokenError if the statement cannot be parsed as
        exactly one Postgres statement.
        """
        statements = [s for s in sqlglot.parse(query, read=DIALECT) if s is not None]
        if len(statements) != 1:
            raise ParseError(f"expected one statement, got {len(statements)}")
        tree = statements[0]

        tables = {t.lower() for t in schema.tables()}
        columns = {c.lower() for c in schema.column_names()}
        table_columns = {(t.lower(), c.lower()) for t, c in schema.columns}

        # alias -> table it names; set-returning functions and subqueries
        # have columns we cannot check
        table_aliases: Dict[str, str] = {}
        opaque: Set[str] = set()
        for node in tree.find_all(exp.TableAlias):
            alias = node.name.lower()
            parent = node.parent
            if isinstance(parent, exp.Table) and isinstance(parent.this, exp.Identifier):
                table_aliases[alias] = parent.name.lower()
            else:
                opaque.add(alias)
                opaque.update(c.name.lower() for c in node.columns)
        output_aliases = {a.alias.lower() for a in tree.find_all(exp.Alias)}

        unknown: Set[str] = set()
        for table in tree.find_all(exp.Table):
            if isinstance(table.this, exp.Identifier) and table.name.lower() not in tables:
                unknown.add(table.name)

        for fn in tree.find_all(exp.Anonymous):
            if fn.name.lower() not in self.allowed_functions:
                unknown.add(fn.name)

        for col in tree.find_all(exp.Column):
            if isinstance(col.this, exp.Star):
                continue
            name, qualifier = col.name.lower(), col.table.lower()
            if qualifier:
                if qualifier in opaque:
                    continue
                table = table_aliases.get(qualifier, qualifier)
                if table not in tables:
                    unknown.add(col.table)
                elif (table, name) not in table_columns:
                    unknown.add(f"{col.table}.{col.name}")
            elif name not in columns and name not in table_aliases and name not in opaque \
                    and name not in output_aliases:
                unknown.add(col.name)
        return unknown
