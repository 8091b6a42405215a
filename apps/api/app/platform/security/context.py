from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum


class Role(StrEnum):
    ADMIN = "admin"
    SDR = "sdr"
    CLOSER = "closer"

    @classmethod
    def parse(cls, value: object) -> Role | None:
        if isinstance(value, cls):
            return value
        if not isinstance(value, str):
            return None
        try:
            return cls(value.strip().lower())
        except ValueError:
            return None


@dataclass(frozen=True, slots=True)
class Principal:
    """Authenticated actor of a request, resolved once and never mutated."""

    user_id: str
    role: Role
    correlation_id: str | None = None

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN
