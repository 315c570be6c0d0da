from typing import List

from pydantic import BaseModel

from bookstore.models.enums import Role


class Token(BaseModel):
    access_token: str
    token_type: str


class TokenData(BaseModel):
    """Caller identity decoded from the bearer token, passed to every operation."""

    id: int
    roles: List[str] = []

    @property
    def is_admin(self) -> bool:
        return Role.ADMIN.value in self.roles
