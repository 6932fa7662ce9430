"""Holder for the active RuleTables with atomic hot reload.

Readers take a snapshot with ``current()`` and keep using it for the whole
job, so a reload never becomes visible halfway through a computation.
"""

import logging
import threading
from pathlib import Path

from services.rules.tables import DEFAULT_RULE_TABLES, RuleTables
from services.shared.config import Settings

logger = logging.getLogger(__name__)


class RuleTableStore:
    """Thread-safe reference to the active RuleTables."""

    def __init__(self, tables: RuleTables = DEFAULT_RULE_TABLES) -> None:
        self._tables = tables
        self._lock = threading.Lock()

    def current(self) -> RuleTables:
        """Return the active tables. The returned object is immutable."""
        return self._tables

    def swap(self, tables: RuleTables) -> RuleTables:
        """Replace the active tables and return the previous ones."""
        with self._lock:
            previous = self._tables
            self._tables = tables
        logger.info(f"Rule tables swapped: {previous.version} -> {tables.version}")
        return previous

    def reload(self, path: str | Path) -> RuleTables:
        """Load tables from a JSON file and swap them in.

        The file is fully parsed and validated before the swap, so an invalid
        file leaves the active tables untouched.

        Raises:
            pydantic.ValidationError: If the file does not describe valid tables
            OSError: If the file cannot be read
        """
        tables = RuleTables.from_json_file(path)
        self.swap(tables)
        return tables


def create_rule_table_store(settings: Settings) -> RuleTableStore:
    """Build a store from ``settings.rule_tables_path`` or the shipped defaults."""
    if settings.rule_tables_path:
        tables = RuleTables.from_json_file(settings.rule_tables_path)
        logger.info(f"Loaded rule tables {tables.version} from {settings.rule_tables_path}")
        return RuleTableStore(tables)
    logger.info(f"Using default rule tables {DEFAULT_RULE_TABLES.version}")
    return RuleTableStore()
