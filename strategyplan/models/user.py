from datetime import datetime
from typing import Optional
from pydantic import BaseModel, ConfigDict

ADMIN_ROLE = "administrator"


class Tenant(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    is_legacy: bool = False
    created_at: Optional[datetime] = None


class User(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    tenant_id: str
    email: str
    first_name: str = ""
    last_name: str = ""
    role: str = "member"
    must_change_password: bool = False
    created_at: Optional[datetime] = None

    @property
    def is_admin(self) -> bool:
        return self.role == ADMIN_ROLE

    @staticmethod
    def split_name(full_name: Optional[str]) -> tuple[str, str]:
        """'Ada King Lovelace' -> ('Ada', 'King Lovelace'); blank -> ('User', '')."""
        parts = (full_name or "").split()
        if not parts:
            return "User", ""
        return parts[0], " ".join(parts[1:])
