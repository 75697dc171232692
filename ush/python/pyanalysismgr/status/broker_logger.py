from datetime import datetime, timezone
from logging import getLogger
import sqlite3
from typing import Optional

from wxflow.sqlitedb import SQLiteDB

from pyanalysismgr.status.status_file import StatusSnapshot

logger = getLogger(__name__.split('.')[-1])

DEFAULT_UPDATE_INTERVAL_MINUTES = 15
MIN_UPDATE_INTERVAL_MINUTES = 5

STATUS_COLUMNS = [
    ('mgr_name', 'TEXT'),
    ('mgr_status', 'TEXT'),
    ('last_update', 'TEXT'),
    ('last_start_time', 'TEXT'),
    ('cpu_utilization', 'REAL'),
    ('free_memory_mb', 'REAL'),
    ('process_id', 'INTEGER'),
    ('prog_runner_process_id', 'INTEGER'),
    ('prog_runner_core_usage', 'REAL'),
    ('most_recent_error_message', 'TEXT'),
    ('step_tool', 'TEXT'),
    ('task_status', 'TEXT'),
    ('duration_hours', 'REAL'),
    ('progress', 'REAL'),
    ('current_operation', 'TEXT'),
    ('task_detail_status', 'TEXT'),
    ('job', 'INTEGER'),
    ('job_step', 'INTEGER'),
    ('dataset', 'TEXT'),
    ('most_recent_log_message', 'TEXT'),
    ('most_recent_job_info', 'TEXT'),
    ('spectrum_count', 'INTEGER'),
]

# name, max length
_TRUNCATED_COLUMNS = {
    'mgr_name': 128,
    'mgr_status': 50,
    'most_recent_error_message': 1024,
    'step_tool': 128,
    'task_status': 50,
    'current_operation': 256,
    'task_detail_status': 50,
    'dataset': 256,
    'most_recent_log_message': 1024,
    'most_recent_job_info': 256,
}


class BrokerStatusLogger(SQLiteDB):
    """
    Store manager status snapshots in a SQLite "broker" database.

    Snapshots arrive on every status update but are only written once per
    update interval, unless forced.
    """

    def __init__(self, db_name: str, update_interval_minutes: float = DEFAULT_UPDATE_INTERVAL_MINUTES) -> None:
        super().__init__(db_name)
        self.db_name = db_name
        self._update_interval_minutes = 0.0
        self.update_interval_minutes = update_interval_minutes
        self.last_write_time: Optional[datetime] = None
        self.create_database()

    @property
    def update_interval_minutes(self) -> float:
        return self._update_interval_minutes

    @update_interval_minutes.setter
    def update_interval_minutes(self, value: float) -> None:
        self._update_interval_minutes = max(value, 0)

    def create_database(self) -> None:
        columns = ', '.join(f"{name} {sql_type}" for name, sql_type in STATUS_COLUMNS)
        self.connect()
        cursor = self.connection.cursor()
        cursor.execute(f"""
            CREATE TABLE IF NOT EXISTS manager_status (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                {columns}
            )
        """)
        cursor.execute("CREATE INDEX IF NOT EXISTS idx_manager_status_mgr ON manager_status (mgr_name, last_update)")
        self.connection.commit()
        self.disconnect()

    def insert_record(self, query: str, params: tuple) -> None:
        self.connect()
        cursor = self.connection.cursor()
        try:
            cursor.execute(query, params)
            self.connection.commit()
        finally:
            self.disconnect()

    def execute_query(self, query: str, params: tuple = None) -> list:
        self.connect()
        cursor = self.connection.cursor()
        cursor.execute(query, params or [])
        results = cursor.fetchall()
        self.disconnect()
        return results

    @staticmethod
    def snapshot_row(snapshot: StatusSnapshot) -> dict:
        row = {
            'mgr_name': snapshot.mgr_name,
            'mgr_status': str(snapshot.mgr_status),
            'last_update': snapshot.last_update.astimezone(timezone.utc).isoformat(),
            'last_start_time': snapshot.task_start_time.astimezone(timezone.utc).isoformat(),
            'cpu_utilization': snapshot.cpu_utilization,
            'free_memory_mb': snapshot.free_memory_mb,
            'process_id': snapshot.process_id,
            'prog_runner_process_id': snapshot.prog_runner_process_id,
            'prog_runner_core_usage': snapshot.prog_runner_core_usage,
            'most_recent_error_message': snapshot.most_recent_error_message,
            'step_tool': snapshot.tool,
            'task_status': str(snapshot.task_status),
            'duration_hours': snapshot.run_time_hours,
            'progress': snapshot.progress,
            'current_operation': snapshot.current_operation,
            'task_detail_status': str(snapshot.task_status_detail),
            'job': snapshot.job,
            'job_step': snapshot.step,
            'dataset': snapshot.dataset,
            'most_recent_log_message': snapshot.most_recent_log_message,
            'most_recent_job_info': snapshot.most_recent_job_info,
            'spectrum_count': snapshot.spectrum_count,
        }
        for name, max_length in _TRUNCATED_COLUMNS.items():
            row[name] = (row[name] or '')[:max_length]
        return row

    def log_status(self, snapshot: StatusSnapshot, force_log: bool = False) -> bool:
        """
        Store the snapshot if the update interval has elapsed (or force_log is set).

        Returns True if a row was written. Database errors are logged, not raised.
        """
        now = datetime.now(timezone.utc)
        if not force_log and self.last_write_time is not None and \
                (now - self.last_write_time).total_seconds() / 60.0 < self.update_interval_minutes:
            return False

        self.last_write_time = now

        row = self.snapshot_row(snapshot)
        names = [name for name, _ in STATUS_COLUMNS]
        query = (f"INSERT INTO manager_status ({', '.join(names)}) "
                 f"VALUES ({', '.join('?' for _ in names)})")
        try:
            self.insert_record(query, tuple(row[name] for name in names))
        except sqlite3.Error as e:
            logger.warning(f"Error storing status in {self.db_name}: {e}")
            return False

        return True

    def latest_status(self, mgr_name: str) -> Optional[dict]:
        names = [name for name, _ in STATUS_COLUMNS]
        rows = self.execute_query(f"SELECT {', '.join(names)} FROM manager_status "
                                  "WHERE mgr_name = ? ORDER BY id DESC LIMIT 1", (mgr_name,))
        if not rows:
            return None
        return dict(zip(names, rows[0]))


def enable_broker_logging(status, db_name: str, status_interval_minutes: int = DEFAULT_UPDATE_INTERVAL_MINUTES,
                          max_interval_minutes: float = 60) -> BrokerStatusLogger:
    """
    Attach a broker logger to a StatusFile (or adjust the interval of the existing one).

    Negative intervals fall back to 15 minutes, and intervals under 5 minutes are raised to 5.
    """
    if status.broker_logger is not None:
        if round(status.broker_logger.update_interval_minutes) != status_interval_minutes:
            status.broker_logger.update_interval_minutes = status_interval_minutes
        return status.broker_logger

    if status_interval_minutes < 0:
        status_interval_minutes = DEFAULT_UPDATE_INTERVAL_MINUTES
    elif status_interval_minutes < MIN_UPDATE_INTERVAL_MINUTES:
        status_interval_minutes = MIN_UPDATE_INTERVAL_MINUTES

    status.broker_logger = BrokerStatusLogger(db_name, min(status_interval_minutes, max_interval_minutes))
    return status.broker_logger
