import os
import time
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from logging import getLogger
from typing import Optional

from wxflow import rm_p

logger = getLogger(__name__.split('.')[-1])

LOCK_FILE_SUFFIX = '.lock'

# Matches "yyyy-MM-dd hh:mm:ss tt", used in lock files and status logs
DATE_TIME_FORMAT = '%Y-%m-%d %I:%M:%S %p'


class LockStatus(Enum):
    ACQUIRED = 'acquired'
    ALREADY_EXISTS = 'already exists'


@dataclass
class LockFileResult:
    """Outcome of an attempt to create a lock file."""
    status: LockStatus
    lock_path: str

    @property
    def acquired(self) -> bool:
        return self.status == LockStatus.ACQUIRED


def lock_file_path(data_file_path: str) -> str:
    return data_file_path + LOCK_FILE_SUFFIX


def create_lock_file(data_file_path: str, description: str) -> LockFileResult:
    """
    Create data_file_path + ".lock" exclusively.

    The lock file holds the description followed by " at yyyy-mm-dd hh:mm:ss AM".
    If another process already holds the lock the result status is ALREADY_EXISTS
    and nothing is written.
    """
    lock_path = lock_file_path(data_file_path)
    try:
        with open(lock_path, 'x') as lock_file:
            lock_file.write(f"{description} at {datetime.now().strftime(DATE_TIME_FORMAT)}\n")
    except FileExistsError:
        logger.debug(f"Lock file already exists: {lock_path}")
        return LockFileResult(LockStatus.ALREADY_EXISTS, lock_path)

    return LockFileResult(LockStatus.ACQUIRED, lock_path)


def delete_lock_file(data_file_path: str) -> None:
    """Remove the lock file for data_file_path; a lock that is already gone is fine."""
    path = data_file_path if data_file_path.endswith(LOCK_FILE_SUFFIX) else lock_file_path(data_file_path)
    rm_p(path)


def lock_age_minutes(lock_path: str, now: Optional[float] = None) -> float:
    now = now if now is not None else time.time()
    return (now - os.path.getmtime(lock_path)) / 60.0


def wait_or_reclaim(data_file_path: str,
                    description: str,
                    max_wait_minutes: float = 120,
                    poll_interval_seconds: float = 5,
                    log_interval_minutes: float = 5,
                    status=None) -> None:
    """
    Wait for another process to release the lock on a data file.

    Parameters
    ----------
    data_file_path : str
        Path of the file being protected (not the lock file itself)
    description : str
        Description of the data file, used in log messages
    max_wait_minutes : float
        A lock older than this is considered abandoned
    poll_interval_seconds : float
        Delay between checks for the lock file
    log_interval_minutes : float
        How often to log that we are still waiting (minimum 1 minute)
    status : StatusFile, optional
        Receives the "waiting" message as its most recent log message

    Notes
    -----
    If the lock is already older than max_wait_minutes it is deleted right away.
    Otherwise we poll until the lock disappears or crosses max_wait_minutes,
    then delete whatever lock remains. Callers should then look for the data
    file and create their own lock if it is still missing.
    """
    if data_file_path.lower().endswith(LOCK_FILE_SUFFIX):
        raise ValueError(f"data_file_path may not end in {LOCK_FILE_SUFFIX}: {data_file_path}")

    lock_path = lock_file_path(data_file_path)
    if not os.path.exists(lock_path):
        return

    try:
        lock_created = os.path.getmtime(lock_path)
    except FileNotFoundError:
        return

    if lock_age_minutes(lock_path) >= max_wait_minutes:
        logger.info(f"Deleting aged {description} lock file {lock_path}")
        rm_p(lock_path)
        return

    logger.debug(f"{description} lock file found; will wait for file to be deleted or age; "
                 f"{os.path.basename(lock_path)} created "
                 f"{datetime.fromtimestamp(lock_created).strftime(DATE_TIME_FORMAT)}")

    log_interval_seconds = max(log_interval_minutes, 1) * 60
    last_progress = time.time()

    while True:
        time.sleep(poll_interval_seconds)

        if not os.path.exists(lock_path):
            break

        if (time.time() - lock_created) / 60.0 > max_wait_minutes:
            break

        if time.time() - last_progress >= log_interval_seconds:
            message = f"Waiting for lock file {os.path.basename(lock_path)}"
            logger.debug(message)
            if status is not None:
                status.most_recent_log_message = message
            last_progress = time.time()

    if os.path.exists(lock_path):
        logger.warning(f"Lock file {lock_path} exceeded {max_wait_minutes} minutes; deleting it")
        rm_p(lock_path)
