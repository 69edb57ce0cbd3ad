from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class Role(str, Enum):
    ADMIN = "admin"
    CLIENT = "client"


@dataclass(frozen=True)
class Actor:
    """Caller identity handed over by the auth/session provider."""

    id: str | None
    role: Role = Role.CLIENT

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN

    def owns(self, client_id: str | None) -> bool:
        return self.id is not None and client_id is not None and str(self.id) == str(client_id)

    def can_access(self, client_id: str | None) -> bool:
        return self.is_admin or self.owns(client_id)


__all__ = ["Role", "Actor"]
