import os
import stat
import time
from logging import getLogger

from wxflow import cp, mkdir_p

logger = getLogger(__name__.split('.')[-1])

DEFAULT_RETRY_COUNT = 3
DEFAULT_RETRY_HOLDOFF_SEC = 15


def _holdoff_and_count(retry_holdoff_seconds: float, max_retry_count: int):
    return max(retry_holdoff_seconds, 1), max(max_retry_count, 1)


def copy_file_with_retry(source_file_path: str,
                         target_file_path: str,
                         overwrite: bool,
                         max_retry_count: int = DEFAULT_RETRY_COUNT,
                         retry_holdoff_seconds: float = DEFAULT_RETRY_HOLDOFF_SEC,
                         increase_holdoff: bool = False) -> None:
    """
    Copy a file, retrying when the copy fails.

    :param source_file_path: File to copy; must exist
    :param target_file_path: Destination path (not a directory)
    :param overwrite: When False an existing target raises FileExistsError
    :param max_retry_count: Number of retries after the first attempt (minimum 1)
    :param retry_holdoff_seconds: Wait between attempts (minimum 1 second)
    :param increase_holdoff: Multiply the holdoff by 1.5 after each failure
    :raises FileNotFoundError: if the source does not exist
    :raises OSError: if every attempt fails
    """
    holdoff, max_retry_count = _holdoff_and_count(retry_holdoff_seconds, max_retry_count)

    if not os.path.isfile(source_file_path):
        raise FileNotFoundError(f"Source file not found for copy operation: {source_file_path}")

    attempt_count = 0
    while attempt_count <= max_retry_count:
        attempt_count += 1

        if not overwrite and os.path.exists(target_file_path):
            raise FileExistsError(f"Tried to overwrite an existing file when overwrite = False: {target_file_path}")

        try:
            start = time.time()
            cp(source_file_path, target_file_path)
            logger.debug(f"Copied {source_file_path} to {target_file_path} in {time.time() - start:.1f} seconds")
            return
        except OSError as e:
            logger.error(f"Error copying {source_file_path} to {target_file_path}: {e}")

            if attempt_count > max_retry_count:
                break

            time.sleep(holdoff)

        if increase_holdoff:
            holdoff *= 1.5

    raise OSError(f"Excessive failures during file copy of {source_file_path}")


def directory_exists_with_retry(directory_path: str,
                                max_retry_count: int = DEFAULT_RETRY_COUNT,
                                retry_holdoff_seconds: float = DEFAULT_RETRY_HOLDOFF_SEC,
                                increase_holdoff: bool = False) -> bool:
    """Return True if the directory exists; errors while checking are retried, then treated as missing."""
    holdoff, max_retry_count = _holdoff_and_count(retry_holdoff_seconds, max_retry_count)

    attempt_count = 0
    while attempt_count <= max_retry_count:
        attempt_count += 1
        try:
            os.stat(directory_path)
        except FileNotFoundError:
            return False
        except OSError as e:
            logger.error(f"Error looking for directory {directory_path}: {e}")
            if attempt_count > max_retry_count:
                break
            time.sleep(holdoff)
            if increase_holdoff:
                holdoff *= 1.5
            continue
        return os.path.isdir(directory_path)

    return False


def create_directory_with_retry(directory_path: str,
                                max_retry_count: int = DEFAULT_RETRY_COUNT,
                                retry_holdoff_seconds: float = DEFAULT_RETRY_HOLDOFF_SEC,
                                increase_holdoff: bool = False) -> None:
    """
    Create a directory (and any missing parents); an existing directory is success.

    :raises FileNotFoundError: if directory_path is empty
    :raises OSError: if the directory could not be created
    """
    holdoff, max_retry_count = _holdoff_and_count(retry_holdoff_seconds, max_retry_count)

    if not directory_path or not directory_path.strip():
        raise FileNotFoundError("Directory path cannot be empty when calling create_directory_with_retry")

    attempt_count = 0
    while attempt_count <= max_retry_count:
        attempt_count += 1
        try:
            if os.path.isdir(directory_path):
                return
            mkdir_p(directory_path)
            return
        except OSError as e:
            logger.error(f"Error creating directory {directory_path}: {e}")
            if attempt_count > max_retry_count:
                break
            time.sleep(holdoff)

        if increase_holdoff:
            holdoff *= 1.5

    if not directory_exists_with_retry(directory_path, 1, 3):
        raise OSError(f"Excessive failures during directory creation: {directory_path}")


def delete_file_with_retries(file_path: str, max_retry_count: int = 3, debug_level: int = 1) -> bool:
    """
    Delete a file, clearing the read-only bit and retrying on failure.

    :raises FileNotFoundError: if the file does not exist
    """
    if not os.path.isfile(file_path):
        raise FileNotFoundError(f"Specified file not found: {file_path}")

    retry_count = 0
    while retry_count < max_retry_count:
        try:
            os.remove(file_path)
            return True
        except PermissionError as e:
            if debug_level > 0:
                logger.debug(f"File {file_path} may be read-only, attribute reset attempt #{retry_count}: {e}")
            os.chmod(file_path, os.stat(file_path).st_mode | stat.S_IWUSR)
            retry_count += 1
        except OSError as e:
            if debug_level > 0:
                logger.debug(f"Error deleting file {file_path}, attempt #{retry_count}: {e}")
            time.sleep(2)
            retry_count += 1

    logger.error(f"Unable to delete file {file_path} after {max_retry_count} attempts")
    return False


def copy_directory(source_dir_path: str,
                   target_dir_path: str,
                   overwrite: bool,
                   max_retry_count: int = DEFAULT_RETRY_COUNT,
                   continue_on_error: bool = True) -> None:
    """
    Recursively copy a directory.

    Existing files are only replaced when overwrite is True. With continue_on_error,
    problems are logged and the remaining files are still copied.
    """
    def fail(message: str) -> None:
        if continue_on_error:
            logger.error(message)
            return
        raise FileNotFoundError(message)

    if not directory_exists_with_retry(source_dir_path, 3, 3):
        return fail(f"Source directory does not exist: {source_dir_path}")

    parent = os.path.dirname(os.path.abspath(target_dir_path))
    if not directory_exists_with_retry(parent, 1, 1):
        return fail(f"Destination directory does not exist: {parent}")

    if not os.path.isdir(target_dir_path):
        create_directory_with_retry(target_dir_path, max_retry_count, DEFAULT_RETRY_HOLDOFF_SEC)

    with os.scandir(source_dir_path) as entries:
        entries = sorted(entries, key=lambda e: e.name)

    for entry in entries:
        if entry.is_dir():
            continue
        target_path = os.path.join(target_dir_path, entry.name)
        try:
            if overwrite or not os.path.exists(target_path):
                copy_file_with_retry(entry.path, target_path, overwrite, max_retry_count, DEFAULT_RETRY_HOLDOFF_SEC)
        except OSError as e:
            if not continue_on_error:
                raise
            logger.error(f"Error copying {entry.path} to {target_path}: {e}")

    for entry in entries:
        if entry.is_dir():
            copy_directory(entry.path, os.path.join(target_dir_path, entry.name),
                           overwrite, max_retry_count, continue_on_error)


def is_vim_swap_file(file_name: str) -> bool:
    """True for editor swap files such as .results.txt.swp"""
    name = os.path.basename(file_name)
    return name.startswith('.') and os.path.splitext(name)[1].lower() in ('.swp', '.swo', '.swn')


def get_directory_size(directory_path: str) -> int:
    """Total size in bytes of every file below directory_path."""
    total = 0
    for root, _dirs, files in os.walk(directory_path):
        for name in files:
            try:
                total += os.path.getsize(os.path.join(root, name))
            except OSError:
                # Deleted by another process while we were scanning
                continue
    return total


def bytes_to_mb(num_bytes: float) -> float:
    return num_bytes / 1024.0 / 1024.0


def bytes_to_gb(num_bytes: float) -> float:
    return num_bytes / 1024.0 / 1024.0 / 1024.0
