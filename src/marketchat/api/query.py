"""Row filters and ordering shared by queries and subscriptions."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping


def _fmt(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


@dataclass(frozen=True)
class Filter:
    """
    A row predicate.

    All `eq` terms must match, no `neq` term may match, and when `any_of` is
    non-empty at least one of its (column, value) pairs must match.
    """

    eq: tuple[tuple[str, Any], ...] = ()
    neq: tuple[tuple[str, Any], ...] = ()
    any_of: tuple[tuple[str, Any], ...] = ()

    @classmethod
    def where(cls, **columns: Any) -> Filter:
        """Build an equality filter: Filter.where(chat_id="c1")."""
        return cls(eq=tuple(sorted(columns.items())))

    @classmethod
    def participant(cls, user_id: str) -> Filter:
        """Chats where the user is the buyer or the seller."""
        return cls(any_of=(("buyer_id", user_id), ("seller_id", user_id)))

    def excluding(self, **columns: Any) -> Filter:
        """Return a copy with extra inequality terms."""
        return Filter(eq=self.eq, neq=self.neq + tuple(sorted(columns.items())), any_of=self.any_of)

    def matches(self, row: Mapping[str, Any]) -> bool:
        """Test a row locally."""
        for column, value in self.eq:
            if row.get(column) != value:
                return False
        for column, value in self.neq:
            if row.get(column) == value:
                return False
        if self.any_of and not any(row.get(c) == v for c, v in self.any_of):
            return False
        return True

    def to_params(self) -> dict[str, str]:
        """Render as PostgREST query parameters."""
        params: dict[str, str] = {}
        for column, value in self.eq:
            params[column] = f"eq.{_fmt(value)}"
        for column, value in self.neq:
            params[column] = f"neq.{_fmt(value)}"
        if self.any_of:
            terms = ",".join(f"{c}.eq.{_fmt(v)}" for c, v in self.any_of)
            params["or"] = f"({terms})"
        return params

    def describe(self) -> str:
        """Short text form used in channel topics and log lines."""
        parts = [f"{c}=eq.{_fmt(v)}" for c, v in self.eq]
        parts += [f"{c}=neq.{_fmt(v)}" for c, v in self.neq]
        if self.any_of:
            parts.append("or(" + ",".join(f"{c}.eq.{_fmt(v)}" for c, v in self.any_of) + ")")
        return "&".join(parts) or "*"


@dataclass(frozen=True)
class Order:
    """Sort order for a query."""

    column: str
    ascending: bool = True

    def to_param(self) -> str:
        return f"{self.column}.{'asc' if self.ascending else 'desc'}"

