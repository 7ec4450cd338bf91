"""
Template Store

Holds enrolled face templates keyed by template id and owner. The store knows
nothing about OAuth; the matcher reads from it and enrollment writes to it.
"""

import json
import logging
import threading
from abc import ABC, abstractmethod

from utils.sqlite import SQLiteDatabase

from .models import BiometricTemplate

logger = logging.getLogger(__name__)


class TemplateStore(ABC):
    """Storage interface for biometric templates."""

    @abstractmethod
    def add(self, template: BiometricTemplate) -> None:
        """Persist a new template."""

    @abstractmethod
    def remove(self, template_id: str) -> bool:
        """Delete a template, returning whether it existed."""

    @abstractmethod
    def all(self) -> list[BiometricTemplate]:
        """All templates in enrollment order."""

    @abstractmethod
    def for_user(self, user_id: str) -> list[BiometricTemplate]:
        """Templates owned by one user."""

    @abstractmethod
    def count(self) -> int:
        """Number of enrolled templates."""


class InMemoryTemplateStore(TemplateStore):
    def __init__(self):
        self._lock = threading.RLock()
        self._templates: dict[str, BiometricTemplate] = {}

    def add(self, template: BiometricTemplate) -> None:
        with self._lock:
            if template.template_id in self._templates:
                raise ValueError(f"Template {template.template_id} already exists")
            self._templates[template.template_id] = template

    def remove(self, template_id: str) -> bool:
        with self._lock:
            return self._templates.pop(template_id, None) is not None

    def all(self) -> list[BiometricTemplate]:
        with self._lock:
            return list(self._templates.values())

    def for_user(self, user_id: str) -> list[BiometricTemplate]:
        with self._lock:
            return [t for t in self._templates.values() if t.user_id == user_id]

    def count(self) -> int:
        with self._lock:
            return len(self._templates)


class SQLiteTemplateStore(TemplateStore):
    """Templates persisted in the shared SQLite database; vectors stored as JSON."""

    MIGRATIONS = [
        [
            """
            CREATE TABLE IF NOT EXISTS biometric_templates (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                template_id TEXT NOT NULL UNIQUE,
                user_id TEXT NOT NULL,
                vector TEXT NOT NULL,
                enrolled_at REAL NOT NULL
            )
            """,
            "CREATE INDEX IF NOT EXISTS idx_templates_user_id ON biometric_templates (user_id)",
        ],
    ]

    def __init__(self, db: SQLiteDatabase):
        self.db = db
        self.db.ensure_schema("biometric_templates", self.MIGRATIONS)

    @staticmethod
    def _row_to_template(row) -> BiometricTemplate:
        return BiometricTemplate(
            template_id=row["template_id"],
            user_id=row["user_id"],
            vector=tuple(json.loads(row["vector"])),
            enrolled_at=row["enrolled_at"],
        )

    def add(self, template: BiometricTemplate) -> None:
        with self.db.transaction() as conn:
            conn.execute(
                "INSERT INTO biometric_templates (template_id, user_id, vector, enrolled_at) VALUES (?, ?, ?, ?)",
                (template.template_id, template.user_id, json.dumps(list(template.vector)), template.enrolled_at),
            )
        logger.debug(f"Stored template {template.template_id} for user {template.user_id}")

    def remove(self, template_id: str) -> bool:
        with self.db.transaction() as conn:
            cursor = conn.execute("DELETE FROM biometric_templates WHERE template_id = ?", (template_id,))
            return cursor.rowcount > 0

    def all(self) -> list[BiometricTemplate]:
        with self.db.connection() as conn:
            rows = conn.execute("SELECT * FROM biometric_templates ORDER BY seq").fetchall()
        return [self._row_to_template(row) for row in rows]

    def for_user(self, user_id: str) -> list[BiometricTemplate]:
        with self.db.connection() as conn:
            rows = conn.execute(
                "SELECT * FROM biometric_templates WHERE user_id = ? ORDER BY seq", (user_id,)
            ).fetchall()
        return [self._row_to_template(row) for row in rows]

    def count(self) -> int:
        with self.db.connection() as conn:
            return conn.execute("SELECT COUNT(*) FROM biometric_templates").fetchone()[0]
