"""SQL statement sinks: a text stream and a live SQLite database."""

import logging
import sqlite3
from pathlib import Path
from typing import List, TextIO

logger = logging.getLogger(__name__)


class SqlWriter:
    """Writes statements and comment banners to a text stream."""

    def __init__(self, stream: TextIO):
        self.stream = stream
        self.statements = 0

    def comment(self, text: str):
        self.stream.write(f"-- {text}\n")

    def statement(self, sql: str):
        self.stream.write(f"{sql};\n")
        self.statements += 1

    def close(self):
        self.stream.flush()


class SqliteWriter:
    """Executes statements into a SQLite database inside one transaction."""

    def __init__(self, conn: sqlite3.Connection):
        self.conn = conn
        self.statements = 0
        self.failed = 0

    @classmethod
    def create(cls, sqlite_path) -> 'SqliteWriter':
        """Open a fresh database file, replacing an existing one."""
        path = Path(sqlite_path)
        if path.exists():
            logger.warning(f"Output file already exists and will be overwritten: {path}")
            path.unlink()
        path.parent.mkdir(parents=True, exist_ok=True)
        return cls(sqlite3.connect(str(path)))

    def comment(self, text: str):
        logger.debug(f"-- {text}")

    def statement(self, sql: str):
        try:
            self.conn.execute(sql)
            self.statements += 1
        except sqlite3.Error as e:
            self.failed += 1
            logger.error(f"Error executing statement: {e}")
            logger.debug(f"SQL: {sql[:500]}")

    def close(self):
        self.conn.commit()
        self.conn.close()


class MultiWriter:
    """Fans every statement out to several writers."""

    def __init__(self, writers: List):
        self.writers = writers

    def comment(self, text: str):
        for writer in self.writers:
            writer.comment(text)

    def statement(self, sql: str):
        for writer in self.writers:
            writer.statement(sql)

    def close(self):
        for writer in self.writers:
            writer.close()

    @property
    def failed(self) -> int:
        return sum(getattr(writer, 'failed', 0) for writer in self.writers)

    @property
    def statements(self) -> int:
        return max((writer.statements for writer in self.writers), default=0)
