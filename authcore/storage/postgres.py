from __future__ import annotations

import json
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from authcore.logging import get_logger
from authcore.storage.common import (
    SYSTEM_ROLE_SEED,
    normalize_email,
    parse_json_field,
    row_value,
)
from authcore.storage.errors import ConstraintViolation
from authcore.storage.models import (
    ApiKey,
    OneTimeToken,
    OrgMember,
    Organization,
    Permission,
    Role,
    Session,
    SystemRole,
    User,
    utcnow,
)

REQUIRED_TABLES = [
    "app_user",
    "user_auth_credential",
    "auth_session",
    "api_key",
    "one_time_token",
    "organization",
    "organization_member",
    "role",
    "permission",
    "role_permission",
    "member_role",
]


class PostgresStore:
    """Postgres-backed store for identities, credentials and org permissions."""

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._verify_required_schema()
        self.ensure_system_roles()

    def _connect(self):
        return self.pool.connection()

    def close(self) -> None:
        self.pool.close()

    def _verify_required_schema(self) -> None:
        """Refuse to start against a database missing the auth tables."""

        with self._connect() as conn:
            missing_tables = []
            for table in REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)

        if missing_tables:
            raise RuntimeError(
                "Missing required Postgres tables: {}. Apply scripts/schema.sql first.".format(
                    ", ".join(sorted(missing_tables))
                )
            )

    # ------------------------------------------------------------------
    # row mapping
    # ------------------------------------------------------------------
    @staticmethod
    def _user_from_row(row: Dict[str, Any]) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            name=row.get("name"),
            system_role=row_value(row, "system_role", SystemRole.USER.value),
            email_verified=bool(row_value(row, "email_verified", False)),
            created_at=row_value(row, "created_at", utcnow()),
            last_login_at=row.get("last_login_at"),
        )

    @staticmethod
    def _session_from_row(row: Dict[str, Any]) -> Session:
        return Session(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            refresh_token_hash=row["refresh_token_hash"],
            expires_at=row["expires_at"],
            created_at=row_value(row, "created_at", utcnow()),
            user_agent=row.get("user_agent"),
            ip_address=str(row["ip_address"]) if row.get("ip_address") else None,
        )

    @staticmethod
    def _api_key_from_row(row: Dict[str, Any]) -> ApiKey:
        return ApiKey(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            name=row["name"],
            short_token=row["short_token"],
            key_hash=row["key_hash"],
            salt=row["salt"],
            scopes=list(row_value(row, "scopes", [])),
            expires_at=row.get("expires_at"),
            last_used_at=row.get("last_used_at"),
            created_at=row_value(row, "created_at", utcnow()),
        )

    @staticmethod
    def _token_from_row(row: Dict[str, Any]) -> OneTimeToken:
        return OneTimeToken(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            purpose=row["purpose"],
            token_hash=row["token_hash"],
            expires_at=row["expires_at"],
            used=bool(row_value(row, "used", False)),
            used_at=row.get("used_at"),
            created_at=row_value(row, "created_at", utcnow()),
        )

    @staticmethod
    def _org_from_row(row: Dict[str, Any]) -> Organization:
        return Organization(
            id=str(row["id"]),
            name=row["name"],
            slug=row["slug"],
            acl_version=int(row_value(row, "acl_version", 0)),
            created_at=row_value(row, "created_at", utcnow()),
        )

    @staticmethod
    def _member_from_row(row: Dict[str, Any]) -> OrgMember:
        return OrgMember(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            organization_id=str(row["organization_id"]),
            created_at=row_value(row, "created_at", utcnow()),
        )

    @staticmethod
    def _role_from_row(row: Dict[str, Any]) -> Role:
        org_id = row.get("organization_id")
        return Role(
            id=str(row["id"]),
            name=row["name"],
            organization_id=str(org_id) if org_id else None,
            description=row.get("description"),
            is_system=bool(row_value(row, "is_system", False)),
            created_at=row_value(row, "created_at", utcnow()),
        )

    @staticmethod
    def _permission_from_row(row: Dict[str, Any]) -> Permission:
        org_id = row.get("organization_id")
        return Permission(
            id=str(row["id"]),
            action=row["action"],
            subject=row["subject"],
            conditions=parse_json_field(row.get("conditions")),
            fields=list(row_value(row, "fields", [])),
            inverted=bool(row_value(row, "inverted", False)),
            organization_id=str(org_id) if org_id else None,
        )

    # ------------------------------------------------------------------
    # seed
    # ------------------------------------------------------------------
    def ensure_system_roles(self) -> None:
        with self._connect() as conn, conn.transaction():
            for name, description, grants in SYSTEM_ROLE_SEED:
                existing = conn.execute(
                    "SELECT id FROM role WHERE name = %s AND organization_id IS NULL",
                    (name,),
                ).fetchone()
                if existing:
                    continue
                role_id = str(uuid.uuid4())
                conn.execute(
                    """
                    INSERT INTO role (id, name, description, organization_id, is_system)
                    VALUES (%s, %s, %s, NULL, TRUE)
                    """,
                    (role_id, name, description),
                )
                for action, subject, conditions in grants:
                    perm_id = str(uuid.uuid4())
                    conn.execute(
                        """
                        INSERT INTO permission (id, action, subject, conditions, fields, inverted, organization_id)
                        VALUES (%s, %s, %s, %s, %s, FALSE, NULL)
                        """,
                        (
                            perm_id,
                            action,
                            subject,
                            json.dumps(conditions) if conditions else None,
                            [],
                        ),
                    )
                    conn.execute(
                        "INSERT INTO role_permission (role_id, permission_id) VALUES (%s, %s)",
                        (role_id, perm_id),
                    )
                self.logger.info("system_role_seeded", role=name)

    # ------------------------------------------------------------------
    # users
    # ------------------------------------------------------------------
    def create_user(
        self,
        email: str,
        name: Optional[str] = None,
        *,
        system_role: str = SystemRole.USER.value,
        password_hash: Optional[str] = None,
    ) -> User:
        user_id = str(uuid.uuid4())
        normalized = normalize_email(email)
        try:
            with self._connect() as conn, conn.transaction():
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, email, name, system_role)
                    VALUES (%s, %s, %s, %s)
                    RETURNING *
                    """,
                    (user_id, normalized, name, system_role),
                ).fetchone()
                if password_hash:
                    conn.execute(
                        """
                        INSERT INTO user_auth_credential (user_id, password_hash, last_updated_at)
                        VALUES (%s, %s, now())
                        """,
                        (user_id, password_hash),
                    )
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "email already exists", {"field": "email"}, constraint="user_email"
            )
        return self._user_from_row(row)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (normalize_email(email),)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def save_password(self, user_id: str, password_hash: str) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_auth_credential (user_id, password_hash, last_updated_at)
                    VALUES (%s, %s, now())
                    ON CONFLICT (user_id) DO UPDATE
                    SET password_hash = EXCLUDED.password_hash,
                        last_updated_at = now()
                    """,
                    (user_id, password_hash),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "user not found for credentials", {"user_id": user_id}
            )

    def get_password_hash(self, user_id: str) -> Optional[str]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash FROM user_auth_credential WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        return str(row["password_hash"]) if row else None

    def update_last_login(self, user_id: str, at: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE app_user SET last_login_at = %s WHERE id = %s", (at, user_id)
            )

    def mark_email_verified(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET email_verified = TRUE WHERE id = %s RETURNING *",
                (user_id,),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def update_system_role(self, user_id: str, system_role: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET system_role = %s WHERE id = %s RETURNING *",
                (system_role, user_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def delete_user(self, user_id: str) -> bool:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM app_user WHERE id = %s", (user_id,))
            return result.rowcount > 0

    # ------------------------------------------------------------------
    # sessions
    # ------------------------------------------------------------------
    def create_session(self, session: Session) -> Session:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO auth_session (id, user_id, refresh_token_hash, expires_at, created_at, user_agent, ip_address)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        session.id,
                        session.user_id,
                        session.refresh_token_hash,
                        session.expires_at,
                        session.created_at,
                        session.user_agent,
                        session.ip_address,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "refresh token hash already exists",
                constraint="session_refresh_token_hash",
            )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("session user missing", {"user_id": session.user_id})
        return session

    def get_session_by_hash(self, refresh_token_hash: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE refresh_token_hash = %s",
                (refresh_token_hash,),
            ).fetchone()
        return self._session_from_row(row) if row else None

    def delete_session_by_hash(self, refresh_token_hash: str) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM auth_session WHERE refresh_token_hash = %s",
                (refresh_token_hash,),
            )
            return result.rowcount

    def delete_session(self, session_id: str, user_id: str) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM auth_session WHERE id = %s AND user_id = %s",
                (session_id, user_id),
            )
            return result.rowcount

    def list_sessions(self, user_id: str) -> List[Session]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM auth_session WHERE user_id = %s ORDER BY created_at DESC",
                (user_id,),
            ).fetchall()
        return [self._session_from_row(row) for row in rows]

    def delete_user_sessions(
        self, user_id: str, except_hash: Optional[str] = None
    ) -> int:
        with self._connect() as conn:
            if except_hash:
                result = conn.execute(
                    "DELETE FROM auth_session WHERE user_id = %s AND refresh_token_hash <> %s",
                    (user_id, except_hash),
                )
            else:
                result = conn.execute(
                    "DELETE FROM auth_session WHERE user_id = %s", (user_id,)
                )
            return result.rowcount

    def delete_expired_sessions(self, now: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM auth_session WHERE expires_at < %s", (now,)
            )
            return result.rowcount

    # ------------------------------------------------------------------
    # api keys
    # ------------------------------------------------------------------
    def create_api_key(self, api_key: ApiKey) -> ApiKey:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO api_key (id, user_id, name, short_token, key_hash, salt, scopes, expires_at, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        api_key.id,
                        api_key.user_id,
                        api_key.name,
                        api_key.short_token,
                        api_key.key_hash,
                        api_key.salt,
                        list(api_key.scopes),
                        api_key.expires_at,
                        api_key.created_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "short token already exists", constraint="api_key_short_token"
            )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("api key user missing", {"user_id": api_key.user_id})
        return api_key

    def get_api_key_by_short_token(self, short_token: str) -> Optional[ApiKey]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM api_key WHERE short_token = %s", (short_token,)
            ).fetchone()
        return self._api_key_from_row(row) if row else None

    def list_api_keys(self, user_id: str) -> List[ApiKey]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM api_key WHERE user_id = %s ORDER BY created_at DESC",
                (user_id,),
            ).fetchall()
        return [self._api_key_from_row(row) for row in rows]

    def delete_api_key(self, api_key_id: str, user_id: str) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM api_key WHERE id = %s AND user_id = %s",
                (api_key_id, user_id),
            )
            return result.rowcount

    def touch_api_key(self, api_key_id: str, at: datetime) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE api_key SET last_used_at = %s WHERE id = %s", (at, api_key_id)
            )

    def delete_expired_api_keys(self, now: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM api_key WHERE expires_at IS NOT NULL AND expires_at < %s",
                (now,),
            )
            return result.rowcount

    # ------------------------------------------------------------------
    # one-time tokens
    # ------------------------------------------------------------------
    def create_one_time_token(self, token: OneTimeToken) -> OneTimeToken:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO one_time_token (id, user_id, purpose, token_hash, expires_at, used, created_at)
                    VALUES (%s, %s, %s, %s, %s, FALSE, %s)
                    """,
                    (
                        token.id,
                        token.user_id,
                        token.purpose,
                        token.token_hash,
                        token.expires_at,
                        token.created_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "token hash already exists", constraint="one_time_token_hash"
            )
        return token

    def get_one_time_token(self, purpose: str, token_hash: str) -> Optional[OneTimeToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM one_time_token WHERE purpose = %s AND token_hash = %s",
                (purpose, token_hash),
            ).fetchone()
        return self._token_from_row(row) if row else None

    def mark_one_time_token_used(self, token_id: str, at: datetime) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE one_time_token SET used = TRUE, used_at = %s WHERE id = %s AND used = FALSE",
                (at, token_id),
            )
            return result.rowcount > 0

    def invalidate_one_time_tokens(self, user_id: str, purpose: str) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE one_time_token SET used = TRUE WHERE user_id = %s AND purpose = %s AND used = FALSE",
                (user_id, purpose),
            )
            return result.rowcount

    def delete_expired_one_time_tokens(self, now: datetime) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM one_time_token WHERE expires_at < %s", (now,)
            )
            return result.rowcount

    # ------------------------------------------------------------------
    # organizations
    # ------------------------------------------------------------------
    def create_organization(
        self, name: str, slug: str, owner_user_id: str, owner_role_id: str
    ) -> Organization:
        org_id = str(uuid.uuid4())
        member_id = str(uuid.uuid4())
        try:
            with self._connect() as conn, conn.transaction():
                row = conn.execute(
                    "INSERT INTO organization (id, name, slug) VALUES (%s, %s, %s) RETURNING *",
                    (org_id, name, slug),
                ).fetchone()
                conn.execute(
                    "INSERT INTO organization_member (id, user_id, organization_id) VALUES (%s, %s, %s)",
                    (member_id, owner_user_id, org_id),
                )
                conn.execute(
                    "INSERT INTO member_role (member_id, role_id) VALUES (%s, %s)",
                    (member_id, owner_role_id),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "slug already exists", {"field": "slug"}, constraint="org_slug"
            )
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation("organization owner missing", {"error": str(exc)})
        return self._org_from_row(row)

    def get_organization(self, org_id: str) -> Optional[Organization]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM organization WHERE id = %s", (org_id,)
            ).fetchone()
        return self._org_from_row(row) if row else None

    def get_organization_by_slug(self, slug: str) -> Optional[Organization]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM organization WHERE slug = %s", (slug,)
            ).fetchone()
        return self._org_from_row(row) if row else None

    def bump_acl_version(self, org_id: str) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE organization SET acl_version = acl_version + 1 WHERE id = %s RETURNING acl_version",
                (org_id,),
            ).fetchone()
        if not row:
            raise ConstraintViolation("organization does not exist", {"org_id": org_id})
        return int(row["acl_version"])

    def get_membership(self, user_id: str, org_id: str) -> Optional[OrgMember]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM organization_member WHERE user_id = %s AND organization_id = %s",
                (user_id, org_id),
            ).fetchone()
        return self._member_from_row(row) if row else None

    def add_member(self, user_id: str, org_id: str, role_id: str) -> OrgMember:
        member_id = str(uuid.uuid4())
        try:
            with self._connect() as conn, conn.transaction():
                row = conn.execute(
                    """
                    INSERT INTO organization_member (id, user_id, organization_id)
                    VALUES (%s, %s, %s)
                    RETURNING *
                    """,
                    (member_id, user_id, org_id),
                ).fetchone()
                conn.execute(
                    "INSERT INTO member_role (member_id, role_id) VALUES (%s, %s)",
                    (member_id, role_id),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("user is already a member", constraint="org_member")
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation("membership target missing", {"error": str(exc)})
        return self._member_from_row(row)

    def remove_member(self, member_id: str) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM organization_member WHERE id = %s", (member_id,)
            )
            return result.rowcount

    def list_member_role_ids(self, member_id: str) -> List[str]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT role_id FROM member_role WHERE member_id = %s", (member_id,)
            ).fetchall()
        return [str(row["role_id"]) for row in rows]

    def assign_member_role(self, member_id: str, role_id: str) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    "INSERT INTO member_role (member_id, role_id) VALUES (%s, %s)",
                    (member_id, role_id),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("member already has this role", constraint="member_role")
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("role does not exist", {"role_id": role_id})

    def remove_member_role(self, member_id: str, role_id: str) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM member_role WHERE member_id = %s AND role_id = %s",
                (member_id, role_id),
            )
            return result.rowcount

    def list_role_holders(self, org_id: str, role_id: str) -> List[str]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT m.user_id
                FROM organization_member m
                JOIN member_role mr ON mr.member_id = m.id
                WHERE m.organization_id = %s AND mr.role_id = %s
                """,
                (org_id, role_id),
            ).fetchall()
        return [str(row["user_id"]) for row in rows]

    # ------------------------------------------------------------------
    # roles & permissions
    # ------------------------------------------------------------------
    def get_system_role(self, name: str) -> Optional[Role]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM role WHERE name = %s AND organization_id IS NULL AND is_system",
                (name,),
            ).fetchone()
        return self._role_from_row(row) if row else None

    def create_role(
        self, org_id: str, name: str, description: Optional[str] = None
    ) -> Role:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO role (id, name, description, organization_id, is_system)
                    VALUES (%s, %s, %s, %s, FALSE)
                    RETURNING *
                    """,
                    (str(uuid.uuid4()), name, description, org_id),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "role name already exists", {"field": "name"}, constraint="role_name"
            )
        return self._role_from_row(row)

    def get_role(self, role_id: str) -> Optional[Role]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM role WHERE id = %s", (role_id,)).fetchone()
        return self._role_from_row(row) if row else None

    def delete_role(self, role_id: str) -> int:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM role WHERE id = %s", (role_id,))
            return result.rowcount

    def add_role_permission(self, role_id: str, permission: Permission) -> Permission:
        try:
            with self._connect() as conn, conn.transaction():
                conn.execute(
                    """
                    INSERT INTO permission (id, action, subject, conditions, fields, inverted, organization_id)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        permission.id,
                        permission.action,
                        permission.subject,
                        json.dumps(permission.conditions) if permission.conditions else None,
                        list(permission.fields),
                        permission.inverted,
                        permission.organization_id,
                    ),
                )
                conn.execute(
                    "INSERT INTO role_permission (role_id, permission_id) VALUES (%s, %s)",
                    (role_id, permission.id),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("role does not exist", {"role_id": role_id})
        return permission

    def get_role_permission(self, role_id: str, permission_id: str) -> Optional[Permission]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT p.*
                FROM permission p
                JOIN role_permission rp ON rp.permission_id = p.id
                WHERE rp.role_id = %s AND p.id = %s
                """,
                (role_id, permission_id),
            ).fetchone()
        return self._permission_from_row(row) if row else None

    def delete_permission(self, permission_id: str) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM permission WHERE id = %s", (permission_id,)
            )
            return result.rowcount

    def list_member_permissions(
        self, user_id: str, org_id: str
    ) -> Optional[List[Tuple[str, Permission]]]:
        """(role_id, permission) pairs for the member; ``None`` for non-members."""
        with self._connect() as conn:
            member = conn.execute(
                "SELECT id FROM organization_member WHERE user_id = %s AND organization_id = %s",
                (user_id, org_id),
            ).fetchone()
            if not member:
                return None
            rows = conn.execute(
                """
                SELECT mr.role_id, p.*
                FROM member_role mr
                JOIN role_permission rp ON rp.role_id = mr.role_id
                JOIN permission p ON p.id = rp.permission_id
                WHERE mr.member_id = %s
                ORDER BY mr.role_id, p.id
                """,
                (member["id"],),
            ).fetchall()
        return [(str(row["role_id"]), self._permission_from_row(row)) for row in rows]
