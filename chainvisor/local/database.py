import time
import sqlite3
import logging
from pathlib import Path
from collections import namedtuple
from contextlib import contextmanager
from typing import Any, Dict, Generator, List, Optional, Tuple

LogEntry = namedtuple('LogEntry', ['timestamp', 'level', 'module', 'message'])
log = logging.getLogger(__name__)


class LogDBManager:
    """
    Manages all interactions with the supervisor's logging SQLite database.
    """

    def __init__(self, db_path: Path):
        """
        Initializes the LogDBManager.

        :param db_path: The path to the logging SQLite database file.
        """
        self.db_path = db_path

    @contextmanager
    def _get_connection(self) -> Generator[sqlite3.Connection, None, None]:
        """
        Context manager that creates and returns a new database connection.

        :return Generator[sqlite3.Connection, None, None]: A generator yielding a database connection.
        """
        conn = sqlite3.connect(self.db_path, timeout=10)
        try:
            yield conn
        finally:
            conn.close()

    def execute(self, sql: str, params: Optional[Tuple[Any, ...]] = None) -> Any:
        """
        Executes a raw SQL command on the database.

        :param sql: The SQL command to execute.
        :param params: Optional parameters for the SQL command.
        :return: The result of the query.
        """
        with self._get_connection() as conn:
            cursor = conn.cursor()
            cursor.execute(sql, params or ())
            conn.commit()
            return cursor.fetchall()

    def initialize_database(self) -> None:
        """
        Ensures the log table exists in the database.
        """
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            self.execute('''
                CREATE TABLE IF NOT EXISTS logs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    timestamp REAL,
                    level TEXT,
                    module TEXT,
                    funcName TEXT,
                    lineno INTEGER,
                    message TEXT
                )
            ''')
        except sqlite3.Error as e:
            log.critical(f"Could not create log database tables: {e}", exc_info=True)
            raise

    def insert_log_batch(self, log_entries: List[Dict[str, Any]]) -> None:
        """
        Inserts multiple log entries in a single transaction.

        :param log_entries: List of dictionaries with keys: timestamp, level, module, funcName, lineno, message
        """
        if not log_entries:
            return

        params = [(
            entry['timestamp'],
            entry['level'],
            entry['module'],
            entry['funcName'],
            entry['lineno'],
            entry['message']
        ) for entry in log_entries]

        with self._get_connection() as conn:
            conn.executemany(
                '''INSERT INTO logs (timestamp, level, module, funcName, lineno, message)
                   VALUES (?, ?, ?, ?, ?, ?)''',
                params
            )
            conn.commit()

    def fetch_last_entries(self, limit: int, include_debug: bool = False) -> List[LogEntry]:
        """
        Fetches the most recent N log entries from the database.

        :param limit: The maximum number of log entries to retrieve.
        :param include_debug: Whether DEBUG records are included.
        :return list: A list of LogEntry namedtuples, oldest first.
        """
        if not self.db_path.exists():
            return []

        query = "SELECT timestamp, level, module, message FROM logs"
        if not include_debug:
            query += " WHERE level != 'DEBUG'"
        query += " ORDER BY id DESC LIMIT ?"

        entries = []
        try:
            with self._get_connection() as conn:
                conn.row_factory = sqlite3.Row
                rows = conn.execute(query, (limit,)).fetchall()
        except sqlite3.Error as e:
            log.error(f"Failed to fetch log entries from database: {e}")
            return entries

        for row in reversed(rows):
            dt = time.strftime('%Y-%m-%d %H:%M:%S', time.localtime(row['timestamp']))
            entries.append(LogEntry(
                timestamp=row['timestamp'], level=row['level'], module=row['module'],
                message=f"{dt} - {row['level']:<8} - [{row['module']}] - {row['message']}"
            ))
        return entries
