"""
Tenant directory.

Thin access to tenants, users, strategies and projects: enough for checkout
auto-provisioning and for the counts behind plan limits. General CRUD for
these records lives elsewhere.
"""
import logging
import secrets
import uuid
from datetime import datetime, timezone
from typing import List, Optional

import bcrypt
from sqlalchemy import false, func, insert, select

from strategyplan.core.database import get_db_session, tenants, users, strategies, projects
from strategyplan.models.user import ADMIN_ROLE, Tenant, User

logger = logging.getLogger(__name__)

# No 0/O, 1/l/I to keep one-time passwords readable in an email
TEMP_PASSWORD_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnpqrstuvwxyz23456789!@#$%"
TEMP_PASSWORD_LENGTH = 12

ARCHIVED_STRATEGY_STATUS = "Archived"


def generate_temp_password(length: int = TEMP_PASSWORD_LENGTH) -> str:
    return "".join(secrets.choice(TEMP_PASSWORD_ALPHABET) for _ in range(length))


def hash_password(password: str) -> str:
    """Hash a password with bcrypt."""
    return bcrypt.hashpw(password.encode(), bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode(), password_hash.encode())
    except ValueError:
        return False


def default_tenant_name(email: str, customer_name: Optional[str] = None) -> str:
    if customer_name and customer_name.strip():
        return customer_name.strip()
    return email.split("@")[0] + "'s Organization"


def _row_to_tenant(row) -> Tenant:
    return Tenant(id=row.id, name=row.name, is_legacy=bool(row.is_legacy), created_at=row.created_at)


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        tenant_id=row.tenant_id,
        email=row.email,
        first_name=row.first_name or "",
        last_name=row.last_name or "",
        role=row.role,
        must_change_password=bool(row.must_change_password),
        created_at=row.created_at,
    )


class TenantDirectory:

    def get_tenant(self, tenant_id: str) -> Optional[Tenant]:
        with get_db_session() as session:
            row = session.execute(select(tenants).where(tenants.c.id == tenant_id)).first()
            return _row_to_tenant(row) if row else None

    def create_tenant(self, name: str, *, is_legacy: bool = False, tenant_id: Optional[str] = None) -> Tenant:
        tenant_id = tenant_id or str(uuid.uuid4())
        now = datetime.now(timezone.utc)
        with get_db_session() as session:
            session.execute(
                insert(tenants).values(id=tenant_id, name=name, is_legacy=is_legacy, created_at=now)
            )
        return Tenant(id=tenant_id, name=name, is_legacy=is_legacy, created_at=now)

    def get_user(self, user_id: str) -> Optional[User]:
        with get_db_session() as session:
            row = session.execute(select(users).where(users.c.id == user_id)).first()
            return _row_to_user(row) if row else None

    def find_user_by_email(self, email: str) -> Optional[User]:
        with get_db_session() as session:
            row = session.execute(
                select(users).where(func.lower(users.c.email) == email.strip().lower())
            ).first()
            return _row_to_user(row) if row else None

    def create_user(
        self,
        tenant_id: str,
        email: str,
        *,
        password_hash: Optional[str] = None,
        first_name: str = "",
        last_name: str = "",
        role: str = "member",
        must_change_password: bool = False,
        user_id: Optional[str] = None,
    ) -> User:
        user_id = user_id or str(uuid.uuid4())
        now = datetime.now(timezone.utc)
        with get_db_session() as session:
            session.execute(
                insert(users).values(
                    id=user_id,
                    tenant_id=tenant_id,
                    email=email.strip().lower(),
                    password_hash=password_hash,
                    first_name=first_name,
                    last_name=last_name,
                    role=role,
                    must_change_password=must_change_password,
                    created_at=now,
                )
            )
        return self.get_user(user_id)

    def provision_tenant_with_admin(
        self,
        email: str,
        password_hash: str,
        customer_name: Optional[str] = None,
    ) -> tuple[Tenant, User]:
        """
        Create a tenant and its first administrator in one transaction.

        The administrator must change the generated password on first login.

        Raises:
            IntegrityError: If a user with this email was created concurrently
        """
        tenant_id = str(uuid.uuid4())
        user_id = str(uuid.uuid4())
        name = default_tenant_name(email, customer_name)
        first_name, last_name = User.split_name(customer_name)
        now = datetime.now(timezone.utc)

        with get_db_session() as session:
            session.execute(
                insert(tenants).values(id=tenant_id, name=name, is_legacy=False, created_at=now)
            )
            session.execute(
                insert(users).values(
                    id=user_id,
                    tenant_id=tenant_id,
                    email=email.strip().lower(),
                    password_hash=password_hash,
                    first_name=first_name,
                    last_name=last_name,
                    role=ADMIN_ROLE,
                    must_change_password=True,
                    created_at=now,
                )
            )

        logger.info("tenant.provisioned", extra={"tenant_id": tenant_id})
        return self.get_tenant(tenant_id), self.get_user(user_id)

    def find_admin(self, tenant_id: str) -> Optional[User]:
        """First administrator, else the oldest user."""
        members = self.list_users(tenant_id)
        for member in members:
            if member.is_admin:
                return member
        return members[0] if members else None

    def list_users(self, tenant_id: str) -> List[User]:
        with get_db_session() as session:
            rows = session.execute(
                select(users).where(users.c.tenant_id == tenant_id).order_by(users.c.created_at, users.c.id)
            ).fetchall()
            return [_row_to_user(row) for row in rows]

    def count_users(self, tenant_id: str) -> int:
        with get_db_session() as session:
            return session.execute(
                select(func.count()).select_from(users).where(users.c.tenant_id == tenant_id)
            ).scalar_one()

    def count_active_projects(self, tenant_id: str) -> int:
        with get_db_session() as session:
            return session.execute(
                select(func.count())
                .select_from(projects)
                .where(projects.c.tenant_id == tenant_id, projects.c.is_archived == false())
            ).scalar_one()

    def list_active_strategy_ids(self, tenant_id: str) -> List[str]:
        """Non-archived strategies, oldest first."""
        with get_db_session() as session:
            rows = session.execute(
                select(strategies.c.id)
                .where(
                    strategies.c.tenant_id == tenant_id,
                    strategies.c.status != ARCHIVED_STRATEGY_STATUS,
                )
                .order_by(strategies.c.created_at, strategies.c.id)
            ).fetchall()
            return [row.id for row in rows]

    def count_active_strategies(self, tenant_id: str) -> int:
        return len(self.list_active_strategy_ids(tenant_id))

    def create_strategy(self, tenant_id: str, title: str, *, status: str = "Active",
                        created_at: Optional[datetime] = None) -> str:
        strategy_id = str(uuid.uuid4())
        with get_db_session() as session:
            session.execute(
                insert(strategies).values(
                    id=strategy_id,
                    tenant_id=tenant_id,
                    title=title,
                    status=status,
                    created_at=created_at or datetime.now(timezone.utc),
                )
            )
        return strategy_id

    def create_project(self, tenant_id: str, title: str, *, strategy_id: Optional[str] = None,
                       is_archived: bool = False) -> str:
        project_id = str(uuid.uuid4())
        with get_db_session() as session:
            session.execute(
                insert(projects).values(
                    id=project_id,
                    tenant_id=tenant_id,
                    strategy_id=strategy_id,
                    title=title,
                    is_archived=is_archived,
                    created_at=datetime.now(timezone.utc),
                )
            )
        return project_id
