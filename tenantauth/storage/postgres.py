from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from tenantauth.logging import get_logger
from tenantauth.storage.common import (
    claims_from_strings,
    claims_to_strings,
    ensure_aware,
    normalize_email,
    normalize_paging,
    safe_row_value,
)
from tenantauth.storage.errors import ConstraintViolation
from tenantauth.storage.models import (
    ActionToken,
    Credential,
    CredentialType,
    Establishment,
    Organisation,
    Role,
    Session,
    User,
    UserAccount,
)

_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        username TEXT NOT NULL UNIQUE,
        first_name TEXT,
        last_name TEXT,
        phone TEXT,
        profile_picture TEXT,
        enabled BOOLEAN NOT NULL DEFAULT TRUE,
        email_validated BOOLEAN NOT NULL DEFAULT FALSE,
        accepted_terms BOOLEAN NOT NULL DEFAULT FALSE,
        accepted_privacy_policy BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_credential (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        type TEXT NOT NULL,
        password TEXT,
        google_id TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        UNIQUE (user_id, type)
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS user_credential_google_id_idx
        ON user_credential (google_id) WHERE type = 'google'
    """,
    """
    CREATE TABLE IF NOT EXISTS role (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL UNIQUE,
        description TEXT,
        claims JSONB NOT NULL DEFAULT '[]'::jsonb
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS organisation (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL UNIQUE,
        enabled BOOLEAN NOT NULL DEFAULT TRUE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS establishment (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        organisation_id TEXT NOT NULL REFERENCES organisation(id) ON DELETE CASCADE,
        enabled BOOLEAN NOT NULL DEFAULT TRUE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        UNIQUE (organisation_id, name)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_account (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        organisation_id TEXT REFERENCES organisation(id) ON DELETE CASCADE,
        establishment_id TEXT REFERENCES establishment(id) ON DELETE CASCADE,
        role_ids TEXT[] NOT NULL DEFAULT '{}',
        enabled BOOLEAN NOT NULL DEFAULT TRUE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS user_account_tenant_idx ON user_account (
        user_id, COALESCE(organisation_id, ''), COALESCE(establishment_id, '')
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS action_token (
        token TEXT PRIMARY KEY,
        type INTEGER NOT NULL,
        email TEXT NOT NULL,
        user_id TEXT REFERENCES app_user(id) ON DELETE CASCADE,
        organisation_id TEXT,
        establishment_id TEXT,
        role_ids TEXT[] NOT NULL DEFAULT '{}',
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        expires_at TIMESTAMPTZ
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_session (
        token TEXT PRIMARY KEY,
        user_account_id TEXT NOT NULL REFERENCES user_account(id) ON DELETE CASCADE,
        user_id TEXT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        login_date TIMESTAMPTZ NOT NULL,
        expiration_date TIMESTAMPTZ NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS auth_session_account_idx ON auth_session (user_account_id)",
    "CREATE INDEX IF NOT EXISTS action_token_email_idx ON action_token (email)",
]

_USER_COLUMNS = (
    "id",
    "email",
    "username",
    "first_name",
    "last_name",
    "phone",
    "profile_picture",
    "enabled",
    "email_validated",
    "accepted_terms",
    "accepted_privacy_policy",
    "created_at",
    "updated_at",
)


class PostgresStore:
    """Postgres-backed identity store on a pooled psycopg connection."""

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def close(self) -> None:
        self.pool.close()

    def _ensure_schema(self) -> None:
        """Create the identity tables when they are missing."""

        with self._connect() as conn, conn.transaction():
            for statement in _SCHEMA:
                conn.execute(statement)

    # row mapping
    @staticmethod
    def _row_to_user(row: Dict[str, Any]) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            username=row["username"],
            first_name=row.get("first_name"),
            last_name=row.get("last_name"),
            phone=row.get("phone"),
            profile_picture=row.get("profile_picture"),
            enabled=bool(row.get("enabled", True)),
            email_validated=bool(row.get("email_validated", False)),
            accepted_terms=bool(row.get("accepted_terms", False)),
            accepted_privacy_policy=bool(row.get("accepted_privacy_policy", False)),
            created_at=ensure_aware(row["created_at"]),
            updated_at=ensure_aware(row["updated_at"]),
        )

    @staticmethod
    def _row_to_credential(row: Dict[str, Any]) -> Credential:
        return Credential(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            type=CredentialType(row["type"]),
            password=row.get("password"),
            google_id=row.get("google_id"),
            created_at=ensure_aware(row["created_at"]),
            updated_at=ensure_aware(row["updated_at"]),
        )

    @staticmethod
    def _row_to_role(row: Dict[str, Any]) -> Role:
        raw_claims = row.get("claims") or []
        if isinstance(raw_claims, str):
            raw_claims = json.loads(raw_claims)
        return Role(
            id=str(row["id"]),
            name=row["name"],
            description=row.get("description"),
            claims=claims_from_strings(raw_claims),
        )

    @staticmethod
    def _row_to_organisation(row: Dict[str, Any]) -> Organisation:
        return Organisation(
            id=str(row["id"]),
            name=row["name"],
            enabled=bool(row.get("enabled", True)),
            created_at=ensure_aware(row["created_at"]),
            updated_at=ensure_aware(row["updated_at"]),
        )

    @staticmethod
    def _row_to_establishment(row: Dict[str, Any]) -> Establishment:
        return Establishment(
            id=str(row["id"]),
            name=row["name"],
            organisation_id=str(row["organisation_id"]),
            enabled=bool(row.get("enabled", True)),
            created_at=ensure_aware(row["created_at"]),
            updated_at=ensure_aware(row["updated_at"]),
        )

    @staticmethod
    def _row_to_session(row: Dict[str, Any]) -> Session:
        return Session(
            token=row["token"],
            user_account_id=str(row["user_account_id"]),
            user_id=str(row["user_id"]),
            login_date=ensure_aware(row["login_date"]),
            expiration_date=ensure_aware(row["expiration_date"]),
        )

    def _load_roles(self, conn, role_ids: Sequence[str]) -> List[Role]:
        """Resolve role ids in their stored order, dropping ids that no longer exist."""
        if not role_ids:
            return []
        rows = conn.execute(
            "SELECT * FROM role WHERE id = ANY(%s)", (list(role_ids),)
        ).fetchall()
        by_id = {str(r["id"]): self._row_to_role(r) for r in rows}
        return [by_id[rid] for rid in role_ids if rid in by_id]

    def _row_to_account(self, conn, row: Dict[str, Any]) -> UserAccount:
        return UserAccount(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            organisation_id=safe_row_value(row, "organisation_id"),
            establishment_id=safe_row_value(row, "establishment_id"),
            roles=self._load_roles(conn, row.get("role_ids") or []),
            enabled=bool(row.get("enabled", True)),
            created_at=ensure_aware(row["created_at"]),
            updated_at=ensure_aware(row["updated_at"]),
        )

    def _row_to_action_token(self, conn, row: Dict[str, Any]) -> ActionToken:
        return ActionToken(
            token=row["token"],
            type=int(row["type"]),
            email=row["email"],
            user_id=safe_row_value(row, "user_id"),
            organisation_id=safe_row_value(row, "organisation_id"),
            establishment_id=safe_row_value(row, "establishment_id"),
            roles=self._load_roles(conn, row.get("role_ids") or []),
            created_at=ensure_aware(row["created_at"]),
            expires_at=ensure_aware(row.get("expires_at")),
        )

    def _search(
        self,
        conn,
        table: str,
        clauses: List[str],
        params: List[Any],
        order_by: str,
        page: int,
        size: int,
    ) -> Tuple[List[Dict[str, Any]], int]:
        page, size = normalize_paging(page, size)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        count_row = conn.execute(
            f"SELECT COUNT(*) AS total FROM {table} {where}", params
        ).fetchone()
        rows = conn.execute(
            f"SELECT * FROM {table} {where} ORDER BY {order_by} LIMIT %s OFFSET %s",
            [*params, size, (page - 1) * size],
        ).fetchall()
        return rows, int(count_row["total"]) if count_row else 0

    # users
    def create_user(self, user: User) -> User:
        email = normalize_email(user.email)
        values = [getattr(user, col) for col in _USER_COLUMNS]
        values[1] = email
        try:
            with self._connect() as conn:
                conn.execute(
                    f"INSERT INTO app_user ({', '.join(_USER_COLUMNS)}) "
                    f"VALUES ({', '.join(['%s'] * len(_USER_COLUMNS))})",
                    values,
                )
        except errors.UniqueViolation as exc:
            raise ConstraintViolation(
                "email or username already exists", {"constraint": _constraint(exc)}
            )
        user.email = email
        return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (normalize_email(email),)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def get_user_by_username(self, username: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE username = %s", (username,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def update_user(self, user: User) -> User:
        user.email = normalize_email(user.email)
        columns = _USER_COLUMNS[1:]
        try:
            with self._connect() as conn:
                cur = conn.execute(
                    f"UPDATE app_user SET {', '.join(f'{c} = %s' for c in columns)} "
                    "WHERE id = %s",
                    [*(getattr(user, c) for c in columns), user.id],
                )
        except errors.UniqueViolation as exc:
            raise ConstraintViolation(
                "email or username already exists", {"constraint": _constraint(exc)}
            )
        if cur.rowcount == 0:
            raise ConstraintViolation("user not found", {"user_id": user.id})
        return user

    def delete_user(self, user_id: str) -> bool:
        with self._connect() as conn, conn.transaction():
            cur = conn.execute("DELETE FROM app_user WHERE id = %s", (user_id,))
        return cur.rowcount > 0

    def search_users(
        self,
        *,
        user_id: Optional[str] = None,
        email: Optional[str] = None,
        username: Optional[str] = None,
        enabled: Optional[bool] = None,
        page: int = 1,
        size: int = 20,
    ) -> Tuple[List[User], int]:
        clauses: List[str] = []
        params: List[Any] = []
        if user_id:
            clauses.append("id = %s")
            params.append(user_id)
        if email:
            clauses.append("email ILIKE %s")
            params.append(f"%{email}%")
        if username:
            clauses.append("username ILIKE %s")
            params.append(f"%{username}%")
        if enabled is not None:
            clauses.append("enabled = %s")
            params.append(enabled)
        with self._connect() as conn:
            rows, total = self._search(
                conn, "app_user", clauses, params, "email", page, size
            )
        return [self._row_to_user(r) for r in rows], total

    # credentials
    def get_credential(
        self, user_id: str, credential_type: CredentialType
    ) -> Optional[Credential]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM user_credential WHERE user_id = %s AND type = %s",
                (user_id, CredentialType(credential_type).value),
            ).fetchone()
        return self._row_to_credential(row) if row else None

    def get_credential_by_google_id(self, google_id: str) -> Optional[Credential]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM user_credential WHERE type = 'google' AND google_id = %s",
                (google_id,),
            ).fetchone()
        return self._row_to_credential(row) if row else None

    def list_credentials(self, user_id: str) -> List[Credential]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM user_credential WHERE user_id = %s ORDER BY type",
                (user_id,),
            ).fetchall()
        return [self._row_to_credential(r) for r in rows]

    def save_credential(self, credential: Credential) -> Credential:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_credential (id, user_id, type, password, google_id, created_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    ON CONFLICT (user_id, type) DO UPDATE
                    SET password = EXCLUDED.password,
                        google_id = EXCLUDED.google_id,
                        updated_at = EXCLUDED.updated_at
                    """,
                    (
                        credential.id,
                        credential.user_id,
                        CredentialType(credential.type).value,
                        credential.password,
                        credential.google_id,
                        credential.created_at,
                        credential.updated_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("google id already linked", {"field": "google_id"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "user not found for credential", {"user_id": credential.user_id}
            )
        return credential

    def delete_credential(self, user_id: str, credential_type: CredentialType) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM user_credential WHERE user_id = %s AND type = %s",
                (user_id, CredentialType(credential_type).value),
            )
        return cur.rowcount > 0

    def delete_credentials(self, user_id: str) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM user_credential WHERE user_id = %s", (user_id,)
            )
        return cur.rowcount

    # roles
    def create_role(self, role: Role) -> Role:
        try:
            with self._connect() as conn:
                conn.execute(
                    "INSERT INTO role (id, name, description, claims) VALUES (%s, %s, %s, %s)",
                    (
                        role.id,
                        role.name,
                        role.description,
                        json.dumps(claims_to_strings(role.claims)),
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("role name already exists", {"field": "name"})
        return role

    def get_role(self, role_id: str) -> Optional[Role]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM role WHERE id = %s", (role_id,)).fetchone()
        return self._row_to_role(row) if row else None

    def get_role_by_name(self, name: str) -> Optional[Role]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM role WHERE name = %s", (name,)).fetchone()
        return self._row_to_role(row) if row else None

    def get_roles_by_names(self, names: Sequence[str]) -> List[Role]:
        if not names:
            return []
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM role WHERE name = ANY(%s)", (list(names),)
            ).fetchall()
        return [self._row_to_role(r) for r in rows]

    def list_roles(self) -> List[Role]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM role ORDER BY lower(name)").fetchall()
        return [self._row_to_role(r) for r in rows]

    def update_role(self, role: Role) -> Role:
        try:
            with self._connect() as conn:
                cur = conn.execute(
                    "UPDATE role SET name = %s, description = %s, claims = %s WHERE id = %s",
                    (
                        role.name,
                        role.description,
                        json.dumps(claims_to_strings(role.claims)),
                        role.id,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("role name already exists", {"field": "name"})
        if cur.rowcount == 0:
            raise ConstraintViolation("role not found", {"role_id": role.id})
        return role

    def delete_role(self, role_id: str) -> bool:
        with self._connect() as conn, conn.transaction():
            conn.execute(
                "UPDATE user_account SET role_ids = array_remove(role_ids, %s) "
                "WHERE %s = ANY(role_ids)",
                (role_id, role_id),
            )
            conn.execute(
                "UPDATE action_token SET role_ids = array_remove(role_ids, %s) "
                "WHERE %s = ANY(role_ids)",
                (role_id, role_id),
            )
            cur = conn.execute("DELETE FROM role WHERE id = %s", (role_id,))
        return cur.rowcount > 0

    # organisations
    def create_organisation(self, organisation: Organisation) -> Organisation:
        try:
            with self._connect() as conn:
                conn.execute(
                    "INSERT INTO organisation (id, name, enabled, created_at, updated_at) "
                    "VALUES (%s, %s, %s, %s, %s)",
                    (
                        organisation.id,
                        organisation.name,
                        organisation.enabled,
                        organisation.created_at,
                        organisation.updated_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "organisation name already exists", {"field": "name"}
            )
        return organisation

    def get_organisation(self, organisation_id: str) -> Optional[Organisation]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM organisation WHERE id = %s", (organisation_id,)
            ).fetchone()
        return self._row_to_organisation(row) if row else None

    def get_organisation_by_name(self, name: str) -> Optional[Organisation]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM organisation WHERE name = %s", (name,)
            ).fetchone()
        return self._row_to_organisation(row) if row else None

    def update_organisation(self, organisation: Organisation) -> Organisation:
        try:
            with self._connect() as conn:
                cur = conn.execute(
                    "UPDATE organisation SET name = %s, enabled = %s, updated_at = %s "
                    "WHERE id = %s",
                    (
                        organisation.name,
                        organisation.enabled,
                        organisation.updated_at,
                        organisation.id,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "organisation name already exists", {"field": "name"}
            )
        if cur.rowcount == 0:
            raise ConstraintViolation(
                "organisation not found", {"organisation_id": organisation.id}
            )
        return organisation

    def delete_organisation(self, organisation_id: str) -> bool:
        with self._connect() as conn, conn.transaction():
            cur = conn.execute(
                "DELETE FROM organisation WHERE id = %s", (organisation_id,)
            )
        return cur.rowcount > 0

    def search_organisations(
        self,
        *,
        organisation_id: Optional[str] = None,
        name: Optional[str] = None,
        page: int = 1,
        size: int = 20,
    ) -> Tuple[List[Organisation], int]:
        clauses: List[str] = []
        params: List[Any] = []
        if organisation_id:
            clauses.append("id = %s")
            params.append(organisation_id)
        if name:
            clauses.append("name ILIKE %s")
            params.append(f"%{name}%")
        with self._connect() as conn:
            rows, total = self._search(
                conn, "organisation", clauses, params, "lower(name)", page, size
            )
        return [self._row_to_organisation(r) for r in rows], total

    # establishments
    def create_establishment(self, establishment: Establishment) -> Establishment:
        try:
            with self._connect() as conn:
                conn.execute(
                    "INSERT INTO establishment (id, name, organisation_id, enabled, created_at, updated_at) "
                    "VALUES (%s, %s, %s, %s, %s, %s)",
                    (
                        establishment.id,
                        establishment.name,
                        establishment.organisation_id,
                        establishment.enabled,
                        establishment.created_at,
                        establishment.updated_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "establishment name already exists in organisation",
                {"field": "name", "organisation_id": establishment.organisation_id},
            )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "organisation not found",
                {"organisation_id": establishment.organisation_id},
            )
        return establishment

    def get_establishment(self, establishment_id: str) -> Optional[Establishment]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM establishment WHERE id = %s", (establishment_id,)
            ).fetchone()
        return self._row_to_establishment(row) if row else None

    def get_establishment_by_name(
        self, name: str, organisation_id: str
    ) -> Optional[Establishment]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM establishment WHERE name = %s AND organisation_id = %s",
                (name, organisation_id),
            ).fetchone()
        return self._row_to_establishment(row) if row else None

    def update_establishment(self, establishment: Establishment) -> Establishment:
        try:
            with self._connect() as conn, conn.transaction():
                cur = conn.execute(
                    "UPDATE establishment SET name = %s, organisation_id = %s, enabled = %s, "
                    "updated_at = %s WHERE id = %s",
                    (
                        establishment.name,
                        establishment.organisation_id,
                        establishment.enabled,
                        establishment.updated_at,
                        establishment.id,
                    ),
                )
                conn.execute(
                    "UPDATE user_account SET organisation_id = %s, updated_at = %s "
                    "WHERE establishment_id = %s AND organisation_id IS DISTINCT FROM %s",
                    (
                        establishment.organisation_id,
                        establishment.updated_at,
                        establishment.id,
                        establishment.organisation_id,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "establishment name already exists in organisation",
                {"field": "name", "organisation_id": establishment.organisation_id},
            )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "organisation not found",
                {"organisation_id": establishment.organisation_id},
            )
        if cur.rowcount == 0:
            raise ConstraintViolation(
                "establishment not found", {"establishment_id": establishment.id}
            )
        return establishment

    def delete_establishment(self, establishment_id: str) -> bool:
        with self._connect() as conn, conn.transaction():
            cur = conn.execute(
                "DELETE FROM establishment WHERE id = %s", (establishment_id,)
            )
        return cur.rowcount > 0

    def list_establishments(self, organisation_id: str) -> List[Establishment]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM establishment WHERE organisation_id = %s ORDER BY lower(name)",
                (organisation_id,),
            ).fetchall()
        return [self._row_to_establishment(r) for r in rows]

    def search_establishments(
        self,
        *,
        establishment_id: Optional[str] = None,
        name: Optional[str] = None,
        organisation_id: Optional[str] = None,
        page: int = 1,
        size: int = 20,
    ) -> Tuple[List[Establishment], int]:
        clauses: List[str] = []
        params: List[Any] = []
        if establishment_id:
            clauses.append("id = %s")
            params.append(establishment_id)
        if organisation_id:
            clauses.append("organisation_id = %s")
            params.append(organisation_id)
        if name:
            clauses.append("name ILIKE %s")
            params.append(f"%{name}%")
        with self._connect() as conn:
            rows, total = self._search(
                conn, "establishment", clauses, params, "lower(name)", page, size
            )
        return [self._row_to_establishment(r) for r in rows], total

    # user accounts
    def _write_account(self, account: UserAccount, *, insert: bool) -> UserAccount:
        role_ids = [role.id for role in account.roles]
        try:
            with self._connect() as conn:
                if insert:
                    conn.execute(
                        """
                        INSERT INTO user_account (id, user_id, organisation_id, establishment_id, role_ids, enabled, created_at, updated_at)
                        VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                        """,
                        (
                            account.id,
                            account.user_id,
                            account.organisation_id,
                            account.establishment_id,
                            role_ids,
                            account.enabled,
                            account.created_at,
                            account.updated_at,
                        ),
                    )
                else:
                    cur = conn.execute(
                        """
                        UPDATE user_account
                        SET organisation_id = %s, establishment_id = %s, role_ids = %s,
                            enabled = %s, updated_at = %s
                        WHERE id = %s
                        """,
                        (
                            account.organisation_id,
                            account.establishment_id,
                            role_ids,
                            account.enabled,
                            account.updated_at,
                            account.id,
                        ),
                    )
                    if cur.rowcount == 0:
                        raise ConstraintViolation(
                            "user account not found", {"user_account_id": account.id}
                        )
                row = conn.execute(
                    "SELECT * FROM user_account WHERE id = %s", (account.id,)
                ).fetchone()
                return self._row_to_account(conn, row)
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "user account already exists for this tenant",
                {"user_id": account.user_id},
            )
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation(
                "user account references a missing record",
                {"constraint": _constraint(exc)},
            )

    def create_user_account(self, account: UserAccount) -> UserAccount:
        return self._write_account(account, insert=True)

    def update_user_account(self, account: UserAccount) -> UserAccount:
        return self._write_account(account, insert=False)

    def get_user_account(self, account_id: str) -> Optional[UserAccount]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM user_account WHERE id = %s", (account_id,)
            ).fetchone()
            return self._row_to_account(conn, row) if row else None

    def find_user_account(
        self,
        user_id: str,
        organisation_id: Optional[str],
        establishment_id: Optional[str],
    ) -> Optional[UserAccount]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM user_account
                WHERE user_id = %s
                  AND organisation_id IS NOT DISTINCT FROM %s
                  AND establishment_id IS NOT DISTINCT FROM %s
                """,
                (user_id, organisation_id, establishment_id),
            ).fetchone()
            return self._row_to_account(conn, row) if row else None

    def delete_user_account(self, account_id: str) -> bool:
        with self._connect() as conn, conn.transaction():
            cur = conn.execute("DELETE FROM user_account WHERE id = %s", (account_id,))
        return cur.rowcount > 0

    @staticmethod
    def _account_filters(
        account_id: Optional[str],
        user_id: Optional[str],
        organisation_id: Optional[str],
        establishment_id: Optional[str],
        role: Optional[str],
    ) -> Tuple[List[str], List[Any]]:
        clauses: List[str] = []
        params: List[Any] = []
        for column, value in (
            ("id", account_id),
            ("user_id", user_id),
            ("organisation_id", organisation_id),
            ("establishment_id", establishment_id),
        ):
            if value:
                clauses.append(f"{column} = %s")
                params.append(value)
        if role:
            clauses.append(
                "EXISTS (SELECT 1 FROM role r WHERE r.name = %s AND r.id = ANY(role_ids))"
            )
            params.append(role)
        return clauses, params

    def list_user_accounts(
        self,
        *,
        user_id: Optional[str] = None,
        organisation_id: Optional[str] = None,
        establishment_id: Optional[str] = None,
    ) -> List[UserAccount]:
        clauses, params = self._account_filters(
            None, user_id, organisation_id, establishment_id, None
        )
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM user_account {where} ORDER BY created_at", params
            ).fetchall()
            return [self._row_to_account(conn, r) for r in rows]

    def search_user_accounts(
        self,
        *,
        account_id: Optional[str] = None,
        user_id: Optional[str] = None,
        organisation_id: Optional[str] = None,
        establishment_id: Optional[str] = None,
        role: Optional[str] = None,
        page: int = 1,
        size: int = 20,
    ) -> Tuple[List[UserAccount], int]:
        clauses, params = self._account_filters(
            account_id, user_id, organisation_id, establishment_id, role
        )
        with self._connect() as conn:
            rows, total = self._search(
                conn, "user_account", clauses, params, "created_at", page, size
            )
            return [self._row_to_account(conn, r) for r in rows], total

    # action tokens
    def create_action_token(self, token: ActionToken) -> ActionToken:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO action_token (token, type, email, user_id, organisation_id, establishment_id, role_ids, created_at, expires_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        token.token,
                        int(token.type),
                        normalize_email(token.email),
                        token.user_id,
                        token.organisation_id,
                        token.establishment_id,
                        [role.id for role in token.roles],
                        token.created_at,
                        token.expires_at,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("action token already exists", {"field": "token"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("user not found", {"user_id": token.user_id})
        return token

    def get_action_token(self, token: str) -> Optional[ActionToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM action_token WHERE token = %s", (token,)
            ).fetchone()
            return self._row_to_action_token(conn, row) if row else None

    def take_action_token(self, token: str) -> Optional[ActionToken]:
        with self._connect() as conn, conn.transaction():
            row = conn.execute(
                "DELETE FROM action_token WHERE token = %s RETURNING *", (token,)
            ).fetchone()
            return self._row_to_action_token(conn, row) if row else None

    def delete_action_token(self, token: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM action_token WHERE token = %s", (token,))
        return cur.rowcount > 0

    def delete_expired_action_tokens(self, now: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM action_token WHERE expires_at IS NOT NULL AND expires_at < %s",
                (now,),
            )
        return cur.rowcount

    def list_action_tokens(self, *, email: Optional[str] = None) -> List[ActionToken]:
        with self._connect() as conn:
            if email is None:
                rows = conn.execute(
                    "SELECT * FROM action_token ORDER BY created_at"
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM action_token WHERE email = %s ORDER BY created_at",
                    (normalize_email(email),),
                ).fetchall()
            return [self._row_to_action_token(conn, r) for r in rows]

    # sessions
    def replace_sessions(self, session: Session) -> int:
        try:
            with self._connect() as conn, conn.transaction():
                # serialize concurrent logins for the same account
                conn.execute(
                    "SELECT id FROM user_account WHERE id = %s FOR UPDATE",
                    (session.user_account_id,),
                )
                cur = conn.execute(
                    "DELETE FROM auth_session WHERE user_account_id = %s",
                    (session.user_account_id,),
                )
                deleted = cur.rowcount
                conn.execute(
                    """
                    INSERT INTO auth_session (token, user_account_id, user_id, login_date, expiration_date)
                    VALUES (%s, %s, %s, %s, %s)
                    """,
                    (
                        session.token,
                        session.user_account_id,
                        session.user_id,
                        session.login_date,
                        session.expiration_date,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "user account not found",
                {"user_account_id": session.user_account_id},
            )
        except errors.UniqueViolation:
            raise ConstraintViolation("session token already exists", {"field": "token"})
        return deleted

    def get_session(self, token: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE token = %s", (token,)
            ).fetchone()
        return self._row_to_session(row) if row else None

    def delete_session(self, token: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM auth_session WHERE token = %s", (token,))
        return cur.rowcount > 0

    def delete_sessions(
        self,
        *,
        user_account_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> int:
        if user_account_id is None and user_id is None:
            raise ValueError("delete_sessions requires user_account_id or user_id")
        clauses: List[str] = []
        params: List[Any] = []
        if user_account_id is not None:
            clauses.append("user_account_id = %s")
            params.append(user_account_id)
        if user_id is not None:
            clauses.append("user_id = %s")
            params.append(user_id)
        with self._connect() as conn:
            cur = conn.execute(
                f"DELETE FROM auth_session WHERE {' AND '.join(clauses)}", params
            )
        return cur.rowcount

    def delete_expired_sessions(self, now: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM auth_session WHERE expiration_date <= %s", (now,)
            )
        return cur.rowcount

    def search_sessions(
        self,
        *,
        user_account_id: Optional[str] = None,
        user_id: Optional[str] = None,
        active_at: Optional[datetime] = None,
        expired_at: Optional[datetime] = None,
        page: int = 1,
        size: int = 20,
    ) -> Tuple[List[Session], int]:
        clauses: List[str] = []
        params: List[Any] = []
        if user_account_id:
            clauses.append("user_account_id = %s")
            params.append(user_account_id)
        if user_id:
            clauses.append("user_id = %s")
            params.append(user_id)
        if active_at is not None:
            clauses.append("expiration_date > %s")
            params.append(active_at)
        if expired_at is not None:
            clauses.append("expiration_date <= %s")
            params.append(expired_at)
        with self._connect() as conn:
            rows, total = self._search(
                conn, "auth_session", clauses, params, "login_date DESC", page, size
            )
        return [self._row_to_session(r) for r in rows], total


def _constraint(exc: errors.Error) -> Optional[str]:
    diag = getattr(exc, "diag", None)
    return getattr(diag, "constraint_name", None) if diag else None
