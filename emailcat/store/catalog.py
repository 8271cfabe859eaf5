"""SQLite-backed catalog of categories, rules and label mappings.

Read by the classifiers and label router; written by seeding and the CLI.
Rule patterns are validated on insert so that only compilable rules are
ever stored.
"""

import logging
import sqlite3
from pathlib import Path

from emailcat.defaults import DEFAULT_CATEGORIES, DEFAULT_RULES
from emailcat.executors.rule_classifier import validate_pattern
from emailcat.schemas.classification import REVIEW, Category, Rule, RuleField, RuleType
from emailcat.schemas.email import LabelKind
from emailcat.schemas.processing import LabelMapping

logger = logging.getLogger(__name__)

_CREATE_TABLES = """
CREATE TABLE IF NOT EXISTS categories (
    id           INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id      TEXT NOT NULL,
    code         TEXT NOT NULL,
    name         TEXT NOT NULL,
    description  TEXT,
    is_active    INTEGER NOT NULL DEFAULT 1,
    is_system    INTEGER NOT NULL DEFAULT 0,
    UNIQUE (user_id, code)
);
CREATE TABLE IF NOT EXISTS rules (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    category_id     INTEGER NOT NULL REFERENCES categories(id) ON DELETE CASCADE,
    name            TEXT NOT NULL,
    type            TEXT NOT NULL,
    field           TEXT NOT NULL,
    pattern         TEXT NOT NULL,
    case_sensitive  INTEGER NOT NULL DEFAULT 0,
    priority        INTEGER NOT NULL DEFAULT 0,
    confidence      REAL NOT NULL DEFAULT 0.8,
    is_active       INTEGER NOT NULL DEFAULT 1
);
CREATE TABLE IF NOT EXISTS label_mappings (
    category_id     INTEGER NOT NULL REFERENCES categories(id) ON DELETE CASCADE,
    connection_id   TEXT NOT NULL,
    provider_label  TEXT NOT NULL,
    label_kind      TEXT NOT NULL,
    PRIMARY KEY (category_id, connection_id)
);
"""

_SELECT_ACTIVE_RULES = """
SELECT r.*, c.code AS category_code
FROM rules r JOIN categories c ON c.id = r.category_id
WHERE c.user_id = ? AND c.is_active = 1 AND r.is_active = 1
ORDER BY r.priority DESC, r.id ASC
"""

_UPSERT_MAPPING = """
INSERT INTO label_mappings (category_id, connection_id, provider_label, label_kind)
VALUES (?, ?, ?, ?)
ON CONFLICT (category_id, connection_id)
DO UPDATE SET provider_label = excluded.provider_label, label_kind = excluded.label_kind
"""


def _row_to_category(row: sqlite3.Row) -> Category:
    return Category(
        id=row["id"],
        user_id=row["user_id"],
        code=row["code"],
        name=row["name"],
        description=row["description"],
        is_active=bool(row["is_active"]),
        is_system=bool(row["is_system"]),
    )


def _row_to_rule(row: sqlite3.Row) -> Rule:
    return Rule(
        id=row["id"],
        category_id=row["category_id"],
        category_code=row["category_code"],
        name=row["name"],
        type=RuleType(row["type"]),
        field=RuleField(row["field"]),
        pattern=row["pattern"],
        case_sensitive=bool(row["case_sensitive"]),
        priority=row["priority"],
        confidence=row["confidence"],
        is_active=bool(row["is_active"]),
    )


class CatalogStore:
    """Categories, rules and label mappings for all users.

    Usage::

        with CatalogStore("/path/to/emailcat.db") as catalog:
            catalog.seed_defaults("user-1")
            rules = catalog.list_active_rules("user-1")
    """

    def __init__(self, db_path: str | Path) -> None:
        self._db_path = Path(db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(self._db_path))
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA foreign_keys=ON")
        self._conn.executescript(_CREATE_TABLES)
        self._conn.commit()

    def close(self) -> None:
        self._conn.close()

    def __enter__(self) -> "CatalogStore":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    # --- Categories ---

    def add_category(self, category: Category) -> Category:
        """Insert a category.

        Raises:
            ValueError: If the user already has a category with this code.
        """
        try:
            cursor = self._conn.execute(
                "INSERT INTO categories (user_id, code, name, description, is_active, is_system) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (
                    category.user_id,
                    category.code,
                    category.name,
                    category.description,
                    int(category.is_active),
                    int(category.is_system),
                ),
            )
            self._conn.commit()
        except sqlite3.IntegrityError as exc:
            self._conn.rollback()
            raise ValueError(
                f"Category {category.code} already exists for user {category.user_id}"
            ) from exc
        return category.model_copy(update={"id": cursor.lastrowid})

    def get_category(self, category_id: int) -> Category | None:
        row = self._conn.execute("SELECT * FROM categories WHERE id = ?", (category_id,)).fetchone()
        return _row_to_category(row) if row else None

    def get_category_by_code(self, user_id: str, code: str) -> Category | None:
        row = self._conn.execute(
            "SELECT * FROM categories WHERE user_id = ? AND code = ?", (user_id, code)
        ).fetchone()
        return _row_to_category(row) if row else None

    def list_categories(self, user_id: str, *, active_only: bool = True) -> list[Category]:
        sql = "SELECT * FROM categories WHERE user_id = ?"
        if active_only:
            sql += " AND is_active = 1"
        rows = self._conn.execute(sql + " ORDER BY id", (user_id,)).fetchall()
        return [_row_to_category(r) for r in rows]

    # --- Rules ---

    def add_rule(
        self,
        category_id: int,
        name: str,
        rule_type: RuleType,
        field: RuleField,
        pattern: str,
        *,
        case_sensitive: bool = False,
        priority: int = 0,
        confidence: float = 0.8,
        is_active: bool = True,
    ) -> Rule:
        """Insert a rule after checking that its pattern compiles.

        Raises:
            ValueError: If the category is unknown or the pattern is invalid.
        """
        category = self.get_category(category_id)
        if category is None:
            raise ValueError(f"Category not found: {category_id}")
        validate_pattern(rule_type, pattern)

        rule = Rule(
            category_id=category_id,
            category_code=category.code,
            name=name,
            type=rule_type,
            field=field,
            pattern=pattern,
            case_sensitive=case_sensitive,
            priority=priority,
            confidence=confidence,
            is_active=is_active,
        )
        cursor = self._conn.execute(
            "INSERT INTO rules (category_id, name, type, field, pattern, case_sensitive, "
            "priority, confidence, is_active) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                rule.category_id,
                rule.name,
                rule.type.value,
                rule.field.value,
                rule.pattern,
                int(rule.case_sensitive),
                rule.priority,
                rule.confidence,
                int(rule.is_active),
            ),
        )
        self._conn.commit()
        return rule.model_copy(update={"id": cursor.lastrowid})

    def list_active_rules(self, user_id: str) -> list[Rule]:
        """Active rules of active categories, highest priority first."""
        rows = self._conn.execute(_SELECT_ACTIVE_RULES, (user_id,)).fetchall()
        return [_row_to_rule(r) for r in rows]

    # --- Label mappings ---

    def set_label_mapping(self, mapping: LabelMapping) -> None:
        self._conn.execute(
            _UPSERT_MAPPING,
            (
                mapping.category_id,
                mapping.connection_id,
                mapping.provider_label,
                mapping.label_kind.value,
            ),
        )
        self._conn.commit()

    def get_label_mapping(self, category_id: int, connection_id: str) -> LabelMapping | None:
        row = self._conn.execute(
            "SELECT * FROM label_mappings WHERE category_id = ? AND connection_id = ?",
            (category_id, connection_id),
        ).fetchone()
        if row is None:
            return None
        return LabelMapping(
            category_id=row["category_id"],
            connection_id=row["connection_id"],
            provider_label=row["provider_label"],
            label_kind=LabelKind(row["label_kind"]),
        )

    # --- Seeding ---

    def seed_defaults(self, user_id: str) -> tuple[int, int]:
        """Create missing default categories and rules for a user.

        Idempotent: existing categories (by code) and rules (by category and
        name) are left untouched.

        Returns:
            Tuple of (categories created, rules created).
        """
        created_categories = 0
        for code, (name, description) in DEFAULT_CATEGORIES.items():
            if self.get_category_by_code(user_id, code) is None:
                self.add_category(
                    Category(
                        user_id=user_id,
                        code=code,
                        name=name,
                        description=description,
                        is_system=True,
                    )
                )
                created_categories += 1

        created_rules = 0
        for code, name, rule_type, field, pattern, priority, confidence in DEFAULT_RULES:
            category = self.get_category_by_code(user_id, code)
            if category is None or code == REVIEW:
                continue
            exists = self._conn.execute(
                "SELECT 1 FROM rules WHERE category_id = ? AND name = ?",
                (category.id, name),
            ).fetchone()
            if exists:
                continue
            self.add_rule(
                category.id,
                name,
                rule_type,
                field,
                pattern,
                priority=priority,
                confidence=confidence,
            )
            created_rules += 1

        logger.info(
            "Seeded defaults for user %s: %d categor(ies), %d rule(s)",
            user_id,
            created_categories,
            created_rules,
        )
        return created_categories, created_rules
