import sqlite3
import threading
from typing import Optional, Tuple, Dict, Iterable

class StorageDB:
    def __init__(self, db_path: str):
        self.conn = sqlite3.connect(db_path, check_same_thread=False)
        self.cursor = self.conn.cursor()
        self._lock = threading.Lock()
        self._init_db()

    def _init_db(self):
        with self._lock:
            # Operations journal: one row per committed operation (receipt JSON)
            self.cursor.execute('''
                CREATE TABLE IF NOT EXISTS operations (
                    seq INTEGER PRIMARY KEY,
                    op_id TEXT UNIQUE,
                    data TEXT
                )
            ''')
            # State table: Key-Value store for engine and collaborator state
            self.cursor.execute('''
                CREATE TABLE IF NOT EXISTS state (
                    key TEXT PRIMARY KEY,
                    value TEXT
                )
            ''')
            self.conn.commit()

    def close(self):
        with self._lock:
            self.conn.close()

    # --- Operation journal ---
    def save_operation(self, seq: int, op_id: str, data: str):
        with self._lock:
            self.cursor.execute('INSERT OR REPLACE INTO operations (seq, op_id, data) VALUES (?, ?, ?)', (seq, op_id, data))
            self.conn.commit()

    def get_operation(self, op_id: str) -> Optional[str]:
        with self._lock:
            self.cursor.execute('SELECT data FROM operations WHERE op_id = ?', (op_id,))
            row = self.cursor.fetchone()
            return row[0] if row else None

    def get_last_operation(self) -> Optional[Tuple[int, str, str]]:
        """Returns (seq, op_id, data) of the last journaled operation."""
        with self._lock:
            self.cursor.execute('SELECT seq, op_id, data FROM operations ORDER BY seq DESC LIMIT 1')
            row = self.cursor.fetchone()
            return row if row else None

    # --- State Methods ---
    def get_state(self, key: str) -> Optional[str]:
        with self._lock:
            self.cursor.execute('SELECT value FROM state WHERE key = ?', (key,))
            row = self.cursor.fetchone()
            return row[0] if row else None

    def set_state(self, key: str, value: str):
        with self._lock:
            self.cursor.execute('INSERT OR REPLACE INTO state (key, value) VALUES (?, ?)', (key, value))
            self.conn.commit()

    def delete_state(self, key: str):
        with self._lock:
            self.cursor.execute('DELETE FROM state WHERE key = ?', (key,))
            self.conn.commit()

    def write_batch(self, puts: Dict[str, str], deletes: Iterable[str] = ()):
        """Applies puts and deletes in a single transaction."""
        with self._lock:
            try:
                for key in deletes:
                    self.cursor.execute('DELETE FROM state WHERE key = ?', (key,))
                self.cursor.executemany(
                    'INSERT OR REPLACE INTO state (key, value) VALUES (?, ?)',
                    list(puts.items())
                )
                self.conn.commit()
            except sqlite3.Error:
                self.conn.rollback()
                raise

    def get_state_by_prefix(self, prefix: str) -> Dict[str, str]:
        with self._lock:
            self.cursor.execute('SELECT key, value FROM state WHERE key LIKE ?', (f"{prefix}%",))
            return {row[0]: row[1] for row in self.cursor.fetchall()}

    def clear_state(self):
        with self._lock:
            self.cursor.execute('DELETE FROM state')
            self.conn.commit()
