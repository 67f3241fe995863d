from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class Subject:
    """Authenticated actor that scoping decisions are computed for.

    ``role`` keeps the raw stored value. Values outside the known role set are
    legal data and resolve to the most restrictive policy row.
    """

    id: int
    role: str
    department_id: int | None = None
    correlation_id: str | None = None
