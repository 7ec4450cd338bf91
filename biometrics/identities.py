"""
Identity Store

Holds user profile records keyed by user id.
"""

import dataclasses
import logging
import sqlite3
import threading
from abc import ABC, abstractmethod
from typing import Optional

from utils.sqlite import SQLiteDatabase, StorageError

from .models import User

logger = logging.getLogger(__name__)


class IdentityStore(ABC):
    """Storage interface for user records."""

    @abstractmethod
    def create(self, user: User) -> None:
        """Persist a new user; raises StorageError if the id is taken."""

    @abstractmethod
    def get(self, user_id: str) -> Optional[User]:
        """Look up a user by id."""

    @abstractmethod
    def update(self, user: User) -> None:
        """Replace the attributes of an existing user."""


class InMemoryIdentityStore(IdentityStore):
    def __init__(self):
        self._lock = threading.RLock()
        self._users: dict[str, User] = {}

    def create(self, user: User) -> None:
        with self._lock:
            if user.user_id in self._users:
                raise StorageError(f"User {user.user_id} already exists")
            self._users[user.user_id] = dataclasses.replace(user)

    def get(self, user_id: str) -> Optional[User]:
        with self._lock:
            user = self._users.get(user_id)
            return dataclasses.replace(user) if user else None

    def update(self, user: User) -> None:
        with self._lock:
            if user.user_id not in self._users:
                raise StorageError(f"User {user.user_id} does not exist")
            self._users[user.user_id] = dataclasses.replace(user)


class SQLiteIdentityStore(IdentityStore):
    MIGRATIONS = [
        [
            """
            CREATE TABLE IF NOT EXISTS users (
                user_id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                given_name TEXT NOT NULL,
                family_name TEXT NOT NULL,
                email TEXT NOT NULL,
                preferred_username TEXT,
                email_verified INTEGER NOT NULL DEFAULT 0,
                phone_number TEXT,
                phone_number_verified INTEGER NOT NULL DEFAULT 0,
                face_verified INTEGER NOT NULL DEFAULT 0,
                picture TEXT,
                template_id TEXT,
                created_at REAL NOT NULL,
                updated_at REAL NOT NULL
            )
            """,
        ],
    ]

    _COLUMNS = [f.name for f in dataclasses.fields(User)]
    _BOOLEAN_COLUMNS = {"email_verified", "phone_number_verified", "face_verified"}

    def __init__(self, db: SQLiteDatabase):
        self.db = db
        self.db.ensure_schema("users", self.MIGRATIONS)

    def _row_to_user(self, row) -> User:
        values = {}
        for column in self._COLUMNS:
            value = row[column]
            values[column] = bool(value) if column in self._BOOLEAN_COLUMNS else value
        return User(**values)

    def create(self, user: User) -> None:
        values = dataclasses.asdict(user)
        placeholders = ", ".join("?" for _ in self._COLUMNS)
        try:
            with self.db.transaction() as conn:
                conn.execute(
                    f"INSERT INTO users ({', '.join(self._COLUMNS)}) VALUES ({placeholders})",
                    [values[c] for c in self._COLUMNS],
                )
        except StorageError as e:
            if isinstance(e.__cause__, sqlite3.IntegrityError):
                raise StorageError(f"User {user.user_id} already exists") from e
            raise

    def get(self, user_id: str) -> Optional[User]:
        with self.db.connection() as conn:
            row = conn.execute("SELECT * FROM users WHERE user_id = ?", (user_id,)).fetchone()
        return self._row_to_user(row) if row else None

    def update(self, user: User) -> None:
        values = dataclasses.asdict(user)
        columns = [c for c in self._COLUMNS if c != "user_id"]
        assignments = ", ".join(f"{c} = ?" for c in columns)
        with self.db.transaction() as conn:
            cursor = conn.execute(
                f"UPDATE users SET {assignments} WHERE user_id = ?",
                [values[c] for c in columns] + [user.user_id],
            )
            if cursor.rowcount == 0:
                raise StorageError(f"User {user.user_id} does not exist")
