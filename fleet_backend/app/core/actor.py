"""
Caller identity as seen by the dispatch services.

The API layer turns a decoded token into an Actor; services record it in
request history and audit entries.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional

from fleet_backend.app.models.enums import UserRole


@dataclass(frozen=True)
class Actor:
    user_id: Optional[int]
    role: Optional[UserRole]
    username: Optional[str] = None

    @classmethod
    def from_token(cls, payload: Dict[str, Any]) -> "Actor":
        role = payload.get("role")
        try:
            role = UserRole(role) if role else None
        except ValueError:
            role = None
        return cls(user_id=payload.get("user_id"), role=role, username=payload.get("sub"))

    @property
    def is_operator(self) -> bool:
        return self.role == UserRole.OPERATOR

    @property
    def role_name(self) -> str:
        return self.role.value if self.role else "SYSTEM"


SYSTEM_ACTOR = Actor(user_id=None, role=None, username="system")
