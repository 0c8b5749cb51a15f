"""Tagged row filters shared by every store backend.

A predicate is a conjunction of conditions, each restricting one column to a
set of allowed values. Stores either evaluate them against in-memory rows
(``matches``) or render them to a parameterized SQL clause (``to_sql``).
"""

from enum import Enum
from typing import Any, Dict, Iterable, List, Tuple

from pydantic import BaseModel, ConfigDict, field_validator

from .models import COLUMNS


def _plain(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


class Condition(BaseModel):
    """``column`` must hold one of ``values``."""
    column: str
    values: Tuple[Any, ...]

    model_config = ConfigDict(frozen=True)

    @field_validator("column")
    @classmethod
    def _known_column(cls, value: str) -> str:
        if value not in COLUMNS:
            raise ValueError(f"Unknown column: {value}")
        return value

    @field_validator("values")
    @classmethod
    def _plain_values(cls, values: Tuple[Any, ...]) -> Tuple[Any, ...]:
        if not values:
            raise ValueError("A condition needs at least one value")
        return tuple(_plain(v) for v in values)

    def matches(self, row: Dict[str, Any]) -> bool:
        return row.get(self.column) in self.values

    def to_sql(self) -> Tuple[str, List[Any]]:
        if len(self.values) == 1:
            return f"{self.column} = ?", [self.values[0]]
        placeholders = ", ".join("?" for _ in self.values)
        return f"{self.column} IN ({placeholders})", list(self.values)


class Predicate(BaseModel):
    """Conjunction of conditions. An empty predicate matches every row."""
    conditions: Tuple[Condition, ...] = ()

    model_config = ConfigDict(frozen=True)

    def __and__(self, other: "Predicate") -> "Predicate":
        return Predicate(conditions=self.conditions + other.conditions)

    def matches(self, row: Dict[str, Any]) -> bool:
        return all(condition.matches(row) for condition in self.conditions)

    def to_sql(self) -> Tuple[str, List[Any]]:
        if not self.conditions:
            return "1 = 1", []
        clauses = []
        params: List[Any] = []
        for condition in self.conditions:
            clause, values = condition.to_sql()
            clauses.append(clause)
            params.extend(values)
        return " AND ".join(clauses), params


MATCH_ALL = Predicate()


def equals(column: str, value: Any) -> Predicate:
    return Predicate(conditions=(Condition(column=column, values=(value,)),))


def is_in(column: str, values: Iterable[Any]) -> Predicate:
    return Predicate(conditions=(Condition(column=column, values=tuple(values)),))


def key_equals(configuration: str, identifier: str) -> Predicate:
    """Match the single row identified by ``(configuration, identifier)``."""
    return equals("configuration", configuration) & equals("identifier", identifier)
