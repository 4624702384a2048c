"""Actor identity handed to the core by the auth gateway."""
from __future__ import annotations

from typing import Optional

from pydantic import BaseModel

from intelreview.models.base import RoleEnum


class Actor(BaseModel):
    user_id: Optional[int] = None
    username: Optional[str] = None
    role: str = RoleEnum.AGENT.value

    @property
    def is_admin(self) -> bool:
        return self.role == RoleEnum.ADMIN.value

    @property
    def can_review(self) -> bool:
        return self.role in (RoleEnum.ADMIN.value, RoleEnum.SUPERVISOR.value)

    @classmethod
    def system(cls) -> "Actor":
        """Actor for scheduled/CLI sweeps; recorded with NULL actor id."""
        return cls(user_id=None, username=None, role=RoleEnum.ADMIN.value)
