from __future__ import annotations

import os
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date, datetime
from typing import Generator, List, Optional

from .errors import ConflictError, InfrastructureError
from .models import Priority, RefreshTokenRecord, Role, Todo, TodoStatus, User
from .repositories import (
    PageRequest,
    RefreshTokenRepository,
    Repositories,
    SearchResult,
    TodoFilter,
    TodoRepository,
    UserRepository,
)


@dataclass(frozen=True)
class _Cols:
    table: str = "todos"
    id: str = "id"
    owner_id: str = "owner_id"
    title: str = "title"
    description: str = "description"
    status: str = "status"
    priority: str = "priority"
    due_date: str = "due_date"
    created_at: str = "created_at"
    updated_at: str = "updated_at"
    deleted_at: str = "deleted_at"
    version: str = "version"


_COLS = _Cols()

_ORDER_EXPR = {
    "createdAt": [],
    "title": ["py_lower({title}) {dir}"],
    "dueDate": ["({due_date} IS NULL) ASC", "{due_date} {dir}"],
}


def _ts(value: Optional[datetime]) -> Optional[str]:
    return None if value is None else value.isoformat(timespec="microseconds")


def _parse_dt(s: Optional[str]) -> Optional[datetime]:
    if s is None:
        return None
    return datetime.fromisoformat(s)


def _parse_date(s: Optional[str]) -> Optional[date]:
    if s is None:
        return None
    return date.fromisoformat(s)


def _py_lower(value: Optional[str]) -> Optional[str]:
    return value.lower() if isinstance(value, str) else value


def _like_pattern(text: str) -> str:
    escaped = text.lower().replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


class _SQLiteStore:
    """
    Shared connection handling. One connection per operation; sqlite errors
    surface as ConflictError (constraint violations) or InfrastructureError.
    """

    conflict_message = "Conflict"

    def __init__(self, db_path: str) -> None:
        os.makedirs(os.path.dirname(db_path) or ".", exist_ok=True)
        self._db_path = db_path
        self._init_db()

    @contextmanager
    def _conn(self) -> Generator[sqlite3.Connection, None, None]:
        try:
            conn = sqlite3.connect(self._db_path, timeout=10)
        except sqlite3.Error as exc:
            raise InfrastructureError(f"Cannot open database {self._db_path}: {exc}") from exc
        conn.row_factory = sqlite3.Row
        # SQLite's lower() only folds ASCII; match str.lower used by the memory backend
        conn.create_function("py_lower", 1, _py_lower, deterministic=True)
        try:
            yield conn
            conn.commit()
        except sqlite3.IntegrityError as exc:
            conn.rollback()
            raise ConflictError(self.conflict_message) from exc
        except sqlite3.Error as exc:
            conn.rollback()
            raise InfrastructureError(f"Database operation failed: {exc}") from exc
        finally:
            conn.close()

    def _init_db(self) -> None:
        raise NotImplementedError


class SQLiteUserRepository(_SQLiteStore, UserRepository):
    """
    SQLite user store; the UNIQUE index on email enforces uniqueness.
    """

    conflict_message = "Email already registered"

    def _init_db(self) -> None:
        with self._conn() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS users (
                    id TEXT PRIMARY KEY,
                    email TEXT NOT NULL COLLATE NOCASE UNIQUE,
                    password_hash TEXT NOT NULL,
                    display_name TEXT NOT NULL,
                    role TEXT NOT NULL,
                    active INTEGER NOT NULL DEFAULT 1,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )

    def _row_to_user(self, row: sqlite3.Row) -> User:
        return User(
            id=str(row["id"]),
            email=str(row["email"]),
            password_hash=str(row["password_hash"]),
            display_name=str(row["display_name"]),
            role=Role(row["role"]),
            active=bool(row["active"]),
            created_at=_parse_dt(row["created_at"]),  # type: ignore[arg-type]
            updated_at=_parse_dt(row["updated_at"]),  # type: ignore[arg-type]
        )

    def find_by_email(self, email: str) -> Optional[User]:
        with self._conn() as conn:
            row = conn.execute("SELECT * FROM users WHERE email = ?", (email.strip().lower(),)).fetchone()
            return self._row_to_user(row) if row else None

    def find_by_id(self, user_id: str) -> Optional[User]:
        with self._conn() as conn:
            row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
            return self._row_to_user(row) if row else None

    def save(self, user: User) -> User:
        with self._conn() as conn:
            conn.execute(
                """
                INSERT INTO users (id, email, password_hash, display_name, role, active, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    email = excluded.email,
                    password_hash = excluded.password_hash,
                    display_name = excluded.display_name,
                    role = excluded.role,
                    active = excluded.active,
                    updated_at = excluded.updated_at
                """,
                (
                    user.id,
                    user.email.strip().lower(),
                    user.password_hash,
                    user.display_name,
                    user.role.value,
                    1 if user.active else 0,
                    _ts(user.created_at),
                    _ts(user.updated_at),
                ),
            )
            row = conn.execute("SELECT * FROM users WHERE id = ?", (user.id,)).fetchone()
            assert row is not None
            return self._row_to_user(row)

    def exists_by_email(self, email: str) -> bool:
        with self._conn() as conn:
            row = conn.execute("SELECT 1 FROM users WHERE email = ?", (email.strip().lower(),)).fetchone()
            return row is not None


class SQLiteTodoRepository(_SQLiteStore, TodoRepository):
    """
    SQLite todo store implementing the TodoRepository interface.
    """

    conflict_message = "Todo was modified concurrently"

    def _init_db(self) -> None:
        with self._conn() as conn:
            conn.execute(
                f"""
                CREATE TABLE IF NOT EXISTS {_COLS.table} (
                    {_COLS.id} TEXT PRIMARY KEY,
                    {_COLS.owner_id} TEXT NOT NULL,
                    {_COLS.title} TEXT NOT NULL,
                    {_COLS.description} TEXT NULL,
                    {_COLS.status} TEXT NOT NULL,
                    {_COLS.priority} TEXT NULL,
                    {_COLS.due_date} TEXT NULL,
                    {_COLS.created_at} TEXT NOT NULL,
                    {_COLS.updated_at} TEXT NOT NULL,
                    {_COLS.deleted_at} TEXT NULL,
                    {_COLS.version} INTEGER NOT NULL DEFAULT 1
                )
                """
            )
            conn.execute(
                f"CREATE INDEX IF NOT EXISTS idx_{_COLS.table}_owner ON {_COLS.table}({_COLS.owner_id}, {_COLS.deleted_at})"
            )
            conn.execute(
                f"CREATE INDEX IF NOT EXISTS idx_{_COLS.table}_created_at ON {_COLS.table}({_COLS.created_at})"
            )
            conn.execute(
                f"CREATE INDEX IF NOT EXISTS idx_{_COLS.table}_due_date ON {_COLS.table}({_COLS.due_date})"
            )

    def _row_to_todo(self, row: sqlite3.Row) -> Todo:
        return Todo(
            id=str(row[_COLS.id]),
            owner_id=str(row[_COLS.owner_id]),
            title=str(row[_COLS.title]),
            description=row[_COLS.description],
            status=TodoStatus(row[_COLS.status]),
            priority=Priority(row[_COLS.priority]) if row[_COLS.priority] else None,
            due_date=_parse_date(row[_COLS.due_date]),
            created_at=_parse_dt(row[_COLS.created_at]),  # type: ignore[arg-type]
            updated_at=_parse_dt(row[_COLS.updated_at]),  # type: ignore[arg-type]
            deleted_at=_parse_dt(row[_COLS.deleted_at]),
            version=int(row[_COLS.version]),
        )

    def _select(self, conn: sqlite3.Connection, todo_id: str) -> Optional[sqlite3.Row]:
        return conn.execute(f"SELECT * FROM {_COLS.table} WHERE {_COLS.id} = ?", (todo_id,)).fetchone()

    def find_by_id(self, todo_id: str, owner_id: str, include_deleted: bool = False) -> Optional[Todo]:
        sql = f"SELECT * FROM {_COLS.table} WHERE {_COLS.id} = ? AND {_COLS.owner_id} = ?"
        if not include_deleted:
            sql += f" AND {_COLS.deleted_at} IS NULL"
        with self._conn() as conn:
            row = conn.execute(sql, (todo_id, owner_id)).fetchone()
            return self._row_to_todo(row) if row else None

    def save(self, todo: Todo, expected_version: Optional[int] = None) -> Todo:
        values = (
            todo.title,
            todo.description,
            todo.status.value,
            todo.priority.value if todo.priority else None,
            todo.due_date.isoformat() if todo.due_date else None,
            _ts(todo.updated_at),
            _ts(todo.deleted_at),
        )
        with self._conn() as conn:
            if expected_version is not None:
                cur = conn.execute(
                    f"""
                    UPDATE {_COLS.table}
                    SET {_COLS.title} = ?, {_COLS.description} = ?, {_COLS.status} = ?,
                        {_COLS.priority} = ?, {_COLS.due_date} = ?, {_COLS.updated_at} = ?,
                        {_COLS.deleted_at} = ?, {_COLS.version} = {_COLS.version} + 1
                    WHERE {_COLS.id} = ? AND {_COLS.version} = ? AND {_COLS.deleted_at} IS NULL
                    """,
                    (*values, todo.id, expected_version),
                )
                if cur.rowcount == 0:
                    raise ConflictError(self.conflict_message)
            else:
                conn.execute(
                    f"""
                    INSERT INTO {_COLS.table} ({_COLS.title}, {_COLS.description}, {_COLS.status},
                        {_COLS.priority}, {_COLS.due_date}, {_COLS.updated_at}, {_COLS.deleted_at},
                        {_COLS.id}, {_COLS.owner_id}, {_COLS.created_at}, {_COLS.version})
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 1)
                    ON CONFLICT({_COLS.id}) DO UPDATE SET
                        {_COLS.title} = excluded.{_COLS.title},
                        {_COLS.description} = excluded.{_COLS.description},
                        {_COLS.status} = excluded.{_COLS.status},
                        {_COLS.priority} = excluded.{_COLS.priority},
                        {_COLS.due_date} = excluded.{_COLS.due_date},
                        {_COLS.updated_at} = excluded.{_COLS.updated_at},
                        {_COLS.deleted_at} = excluded.{_COLS.deleted_at},
                        {_COLS.version} = {_COLS.table}.{_COLS.version} + 1
                    """,
                    (*values, todo.id, todo.owner_id, _ts(todo.created_at)),
                )
            row = self._select(conn, todo.id)
            assert row is not None
            return self._row_to_todo(row)

    def soft_delete(self, todo_id: str, deleted_at: datetime) -> bool:
        with self._conn() as conn:
            cur = conn.execute(
                f"""
                UPDATE {_COLS.table}
                SET {_COLS.deleted_at} = ?, {_COLS.version} = {_COLS.version} + 1
                WHERE {_COLS.id} = ? AND {_COLS.deleted_at} IS NULL
                """,
                (_ts(deleted_at), todo_id),
            )
            return cur.rowcount > 0

    def search(self, owner_id: Optional[str], flt: TodoFilter, page: PageRequest) -> SearchResult:
        clauses: List[str] = []
        params: list = []

        if owner_id is not None:
            clauses.append(f"{_COLS.owner_id} = ?")
            params.append(owner_id)

        if not flt.include_deleted:
            clauses.append(f"{_COLS.deleted_at} IS NULL")

        if flt.status is not None:
            clauses.append(f"{_COLS.status} = ?")
            params.append(flt.status.value)

        if flt.priority_in:
            marks = ", ".join("?" for _ in flt.priority_in)
            clauses.append(f"{_COLS.priority} IN ({marks})")
            params.extend(sorted(p.value for p in flt.priority_in))

        if flt.query:
            # Substring search on title and description
            clauses.append(
                f"(py_lower({_COLS.title}) LIKE ? ESCAPE '\\' OR py_lower({_COLS.description}) LIKE ? ESCAPE '\\')"
            )
            like = _like_pattern(flt.query)
            params.extend([like, like])

        if flt.due_before is not None:
            clauses.append(f"{_COLS.due_date} < ?")
            params.append(flt.due_before.isoformat())

        if flt.due_after is not None:
            clauses.append(f"{_COLS.due_date} > ?")
            params.append(flt.due_after.isoformat())

        where_sql = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        direction = "DESC" if page.sort_direction == "desc" else "ASC"
        order_terms = [
            term.format(title=_COLS.title, due_date=_COLS.due_date, dir=direction)
            for term in _ORDER_EXPR[page.sort_by]
        ]
        order_terms += [f"{_COLS.created_at} {direction}", f"{_COLS.id} {direction}"]
        order_sql = f"ORDER BY {', '.join(order_terms)}"

        with self._conn() as conn:
            # total count
            count_row = conn.execute(
                f"SELECT COUNT(*) as cnt FROM {_COLS.table} {where_sql}", params
            ).fetchone()
            total = int(count_row["cnt"]) if count_row else 0

            rows = conn.execute(
                f"""
                SELECT * FROM {_COLS.table}
                {where_sql}
                {order_sql}
                LIMIT ? OFFSET ?
                """,
                [*params, page.limit, page.offset],
            ).fetchall()
            return SearchResult(items=[self._row_to_todo(r) for r in rows], total=total)


class SQLiteRefreshTokenRepository(_SQLiteStore, RefreshTokenRepository):
    def _init_db(self) -> None:
        with self._conn() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS refresh_tokens (
                    token_hash TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    issued_at TEXT NOT NULL,
                    expires_at TEXT NOT NULL,
                    consumed_at TEXT NULL,
                    revoked_at TEXT NULL
                )
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS idx_refresh_tokens_user ON refresh_tokens(user_id)")

    def _row_to_record(self, row: sqlite3.Row) -> RefreshTokenRecord:
        return RefreshTokenRecord(
            token_hash=str(row["token_hash"]),
            user_id=str(row["user_id"]),
            issued_at=_parse_dt(row["issued_at"]),  # type: ignore[arg-type]
            expires_at=_parse_dt(row["expires_at"]),  # type: ignore[arg-type]
            consumed_at=_parse_dt(row["consumed_at"]),
            revoked_at=_parse_dt(row["revoked_at"]),
        )

    def save(self, record: RefreshTokenRecord) -> None:
        with self._conn() as conn:
            conn.execute(
                """
                INSERT INTO refresh_tokens (token_hash, user_id, issued_at, expires_at, consumed_at, revoked_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    record.token_hash,
                    record.user_id,
                    _ts(record.issued_at),
                    _ts(record.expires_at),
                    _ts(record.consumed_at),
                    _ts(record.revoked_at),
                ),
            )

    def find(self, token_hash: str) -> Optional[RefreshTokenRecord]:
        with self._conn() as conn:
            row = conn.execute("SELECT * FROM refresh_tokens WHERE token_hash = ?", (token_hash,)).fetchone()
            return self._row_to_record(row) if row else None

    def consume(self, token_hash: str, now: datetime) -> Optional[RefreshTokenRecord]:
        with self._conn() as conn:
            # Single UPDATE so two concurrent refreshes cannot both win
            cur = conn.execute(
                """
                UPDATE refresh_tokens SET consumed_at = ?
                WHERE token_hash = ? AND consumed_at IS NULL AND revoked_at IS NULL AND expires_at > ?
                """,
                (_ts(now), token_hash, _ts(now)),
            )
            if cur.rowcount == 0:
                return None
            row = conn.execute("SELECT * FROM refresh_tokens WHERE token_hash = ?", (token_hash,)).fetchone()
            return self._row_to_record(row) if row else None

    def revoke(self, token_hash: str, now: datetime) -> bool:
        with self._conn() as conn:
            cur = conn.execute(
                """
                UPDATE refresh_tokens SET revoked_at = ?
                WHERE token_hash = ? AND consumed_at IS NULL AND revoked_at IS NULL
                """,
                (_ts(now), token_hash),
            )
            return cur.rowcount > 0

    def revoke_all_for_user(self, user_id: str, now: datetime) -> int:
        with self._conn() as conn:
            cur = conn.execute(
                """
                UPDATE refresh_tokens SET revoked_at = ?
                WHERE user_id = ? AND consumed_at IS NULL AND revoked_at IS NULL
                """,
                (_ts(now), user_id),
            )
            return cur.rowcount


def sqlite_repositories(db_path: str) -> Repositories:
    return Repositories(
        users=SQLiteUserRepository(db_path),
        todos=SQLiteTodoRepository(db_path),
        refresh_tokens=SQLiteRefreshTokenRepository(db_path),
    )
