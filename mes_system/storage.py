"""SQLite-backed persistence helpers for the MES client."""

from __future__ import annotations

import pickle
import sqlite3
from typing import Any, Generic, Iterator, List, Optional, Sequence, Tuple, TypeVar

from .domain import Department, Employee, OperationLog, Permission, RolePermission
from .repository import DuplicateRecordError, EntityStore, RecordNotFoundError

T = TypeVar("T")

# Lookup columns kept next to the pickled payload of each table.
TABLE_COLUMNS = {
    "departments": ("parent_id",),
    "permissions": ("parent_id",),
    "employees": ("department_id",),
    "role_permissions": ("role_id", "permission_id"),
    "operation_logs": (),
}


class SQLiteRecords(Generic[T]):
    """Record table persisting pickled entities inside SQLite.

    ``columns`` names integer attributes (parent links, foreign keys) that
    are copied into their own indexed columns on every write, so
    ``find_by`` on them is a query instead of a scan over unpickled rows.
    Every read hands out a fresh copy of the entity.
    """

    def __init__(
        self,
        connection: sqlite3.Connection,
        table: str,
        columns: Sequence[str] = (),
    ) -> None:
        self._connection = connection
        self._table = table
        self._columns = tuple(columns)
        column_sql = "".join(f", {name} INTEGER" for name in self._columns)
        with connection:
            connection.execute(
                f"CREATE TABLE IF NOT EXISTS {table} ("  # nosec - static table names
                f"id INTEGER PRIMARY KEY{column_sql}, payload BLOB NOT NULL)"
            )
            for name in self._columns:
                connection.execute(
                    f"CREATE INDEX IF NOT EXISTS ix_{table}_{name} ON {table} ({name})"
                )

    @property
    def columns(self) -> Tuple[str, ...]:
        return self._columns

    def __contains__(self, entity_id: object) -> bool:
        if not isinstance(entity_id, int):
            return False
        cursor = self._connection.execute(
            f"SELECT 1 FROM {self._table} WHERE id = ? LIMIT 1", (entity_id,)
        )
        return cursor.fetchone() is not None

    def __iter__(self) -> Iterator[T]:
        return iter(self.list())

    def __len__(self) -> int:
        (count,) = self._connection.execute(
            f"SELECT COUNT(1) FROM {self._table}"
        ).fetchone()
        return int(count)

    def _values(self, entity: T) -> Tuple[Any, ...]:
        return tuple(getattr(entity, name, None) for name in self._columns) + (
            pickle.dumps(entity),
        )

    def _load(self, cursor: sqlite3.Cursor) -> List[T]:
        return [pickle.loads(row[0]) for row in cursor.fetchall()]

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------
    def insert(self, entity: T) -> None:
        names = ", ".join(("id",) + self._columns + ("payload",))
        marks = ", ".join("?" * (len(self._columns) + 2))
        try:
            with self._connection:
                self._connection.execute(
                    f"INSERT INTO {self._table} ({names}) VALUES ({marks})",
                    (entity.id,) + self._values(entity),
                )
        except sqlite3.IntegrityError as exc:
            raise DuplicateRecordError(
                f"Record with id {entity.id!r} already exists"
            ) from exc

    def replace(self, entity: T) -> None:
        assignments = ", ".join(f"{name} = ?" for name in self._columns + ("payload",))
        with self._connection:
            cursor = self._connection.execute(
                f"UPDATE {self._table} SET {assignments} WHERE id = ?",
                self._values(entity) + (entity.id,),
            )
        if cursor.rowcount == 0:
            raise RecordNotFoundError(f"Record with id {entity.id!r} not found")

    def remove(self, entity_id: int) -> None:
        with self._connection:
            cursor = self._connection.execute(
                f"DELETE FROM {self._table} WHERE id = ?", (entity_id,)
            )
        if cursor.rowcount == 0:
            raise RecordNotFoundError(f"Record with id {entity_id!r} not found")

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def get(self, entity_id: int) -> T:
        row = self._connection.execute(
            f"SELECT payload FROM {self._table} WHERE id = ?", (entity_id,)
        ).fetchone()
        if row is None:
            raise RecordNotFoundError(f"Record with id {entity_id!r} not found")
        return pickle.loads(row[0])

    def list(self) -> List[T]:
        return self._load(
            self._connection.execute(f"SELECT payload FROM {self._table} ORDER BY id")
        )

    def find_by(self, attribute: str, value: Any) -> List[T]:
        if attribute not in self._columns:
            return [entity for entity in self.list() if getattr(entity, attribute, None) == value]
        # IS matches NULL as well, so roots are found with value None.
        return self._load(
            self._connection.execute(
                f"SELECT payload FROM {self._table} WHERE {attribute} IS ? ORDER BY id",
                (value,),
            )
        )

    def max_id(self) -> int:
        (highest,) = self._connection.execute(
            f"SELECT MAX(id) FROM {self._table}"
        ).fetchone()
        return int(highest or 0)


class MESDatabase:
    """Convenience facade bundling SQLite-backed entity stores."""

    def __init__(self, path: str) -> None:
        self._connection = sqlite3.connect(path, check_same_thread=False)
        self.departments: EntityStore[Department] = self._store("departments")
        self.permissions: EntityStore[Permission] = self._store("permissions")
        self.employees: EntityStore[Employee] = self._store("employees")
        self.role_permissions: EntityStore[RolePermission] = self._store("role_permissions")
        self.operation_logs: EntityStore[OperationLog] = self._store("operation_logs")

    def _store(self, table: str) -> EntityStore[Any]:
        return EntityStore(SQLiteRecords(self._connection, table, TABLE_COLUMNS[table]))

    @property
    def connection(self) -> sqlite3.Connection:
        return self._connection

    def close(self) -> None:
        self._connection.close()

    def __enter__(self) -> "MESDatabase":
        return self

    def __exit__(
        self,
        exc_type: Optional[type[BaseException]],
        exc: Optional[BaseException],
        traceback: Optional[BaseException],
    ) -> None:
        self.close()


__all__ = ["TABLE_COLUMNS", "SQLiteRecords", "MESDatabase"]
