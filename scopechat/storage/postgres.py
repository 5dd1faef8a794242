from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from scopechat.logging import get_logger
from scopechat.storage.errors import ConstraintViolation
from scopechat.storage.models import Project, User

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id UUID PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_auth_credential (
        user_id UUID PRIMARY KEY REFERENCES app_user(id) ON DELETE CASCADE,
        password_hash TEXT NOT NULL,
        password_algo TEXT NOT NULL,
        last_updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS project (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        name TEXT NOT NULL,
        system_prompt TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS project_user_created_idx ON project (user_id, created_at DESC)",
)


class PostgresStore:
    """Postgres-backed store for users, credentials and projects."""

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

    def _ensure_schema(self) -> None:
        """Create the tables this store reads and writes if they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)
        self.logger.info("postgres_schema_ready")

    @staticmethod
    def _row_to_user(row: Dict[str, Any]) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            created_at=row.get("created_at") or datetime.now(timezone.utc),
        )

    @staticmethod
    def _row_to_project(row: Dict[str, Any]) -> Project:
        return Project(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            name=row["name"],
            system_prompt=row["system_prompt"],
            created_at=row.get("created_at") or datetime.now(timezone.utc),
        )

    def create_user(
        self, email: str, password_hash: str, password_algo: str
    ) -> User:
        """Insert the user row and its credential in a single transaction."""
        user_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "INSERT INTO app_user (id, email) VALUES (%s, %s) RETURNING created_at",
                    (user_id, email),
                ).fetchone()
                conn.execute(
                    """
                    INSERT INTO user_auth_credential (user_id, password_hash, password_algo, last_updated_at)
                    VALUES (%s, %s, %s, now())
                    """,
                    (user_id, password_hash, password_algo),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        created_at = row.get("created_at") if row else None
        return User(
            id=user_id,
            email=email,
            created_at=created_at or datetime.now(timezone.utc),
        )

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT id, email, created_at FROM app_user WHERE email = %s", (email,)
            ).fetchone()
        if not row:
            return None
        return self._row_to_user(row)

    def get_user(self, user_id: str) -> Optional[User]:
        try:
            uuid.UUID(str(user_id))
        except ValueError:
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT id, email, created_at FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        if not row:
            return None
        return self._row_to_user(row)

    def get_password_record(self, user_id: str) -> Optional[tuple[str, str]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash, password_algo FROM user_auth_credential WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        if not row:
            return None
        return str(row["password_hash"]), str(row["password_algo"])

    def create_project(self, user_id: str, name: str, system_prompt: str) -> Project:
        project = Project.new(user_id, name, system_prompt)
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO project (id, user_id, name, system_prompt)
                    VALUES (%s, %s, %s, %s)
                    RETURNING created_at
                    """,
                    (project.id, user_id, name, system_prompt),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "user not found for project", {"user_id": user_id}
            )
        if row and row.get("created_at"):
            project.created_at = row["created_at"]
        return project

    def get_project(self, project_id: str) -> Optional[Project]:
        # Malformed ids cannot match; avoid a driver-level cast error
        try:
            uuid.UUID(str(project_id))
        except ValueError:
            return None
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT id, user_id, name, system_prompt, created_at
                FROM project WHERE id = %s
                """,
                (project_id,),
            ).fetchone()
        if not row:
            return None
        return self._row_to_project(row)

    def list_projects(self, user_id: str) -> List[Project]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT id, user_id, name, system_prompt, created_at
                FROM project WHERE user_id = %s
                ORDER BY created_at DESC, id
                """,
                (user_id,),
            ).fetchall()
        return [self._row_to_project(row) for row in rows]

    def ping(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1")

    def close(self) -> None:
        self.pool.close()
