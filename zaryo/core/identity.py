"""Request-scoped caller identity supplied by the identity provider."""

from enum import Enum

from pydantic import BaseModel


class Role(str, Enum):
    ADMIN = "admin"
    COMPANY = "company"
    CREATOR = "creator"


class Identity(BaseModel):
    user_id: str
    role: Role = Role.CREATOR

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN
