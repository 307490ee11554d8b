"""The resolved identity every lifecycle operation is invoked with."""

import uuid

from pydantic import BaseModel

from homebid.common.enums import UserRole

SYSTEM_ACTOR = "SYSTEM"

ARBITER_ROLES = frozenset({UserRole.MEDIATOR, UserRole.ADMIN})


class Caller(BaseModel):
    id: uuid.UUID | None
    role: UserRole | None

    model_config = {"frozen": True}

    @classmethod
    def system(cls) -> "Caller":
        return cls(id=None, role=None)

    @classmethod
    def of(cls, user) -> "Caller":
        return cls(id=user.id, role=UserRole(user.role))

    @property
    def is_system(self) -> bool:
        return self.id is None

    @property
    def is_arbiter(self) -> bool:
        return self.is_system or self.role in ARBITER_ROLES

    @property
    def actor(self) -> str:
        return SYSTEM_ACTOR if self.is_system else str(self.id)
