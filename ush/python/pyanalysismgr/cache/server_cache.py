import glob
import hashlib
import os
import re
import time
from collections import Counter
from datetime import datetime, timezone
from logging import getLogger
from typing import Optional

from wxflow import cp, logit, mkdir_p, rm_p

from pyanalysismgr.core.job_context import RateLimiter
from pyanalysismgr.core.file_tools import bytes_to_mb
from pyanalysismgr.core.lock_file import DATE_TIME_FORMAT

logger = getLogger(__name__.split('.')[-1])

SERVER_CACHE_HASHCHECK_FILE_SUFFIX = '.hashcheck'
PURGE_CHECK_FILENAME = 'PurgeCheckFile.txt'
CACHED_SERVER_FILES_PURGE_INTERVAL_HOURS = 24
DEFAULT_SPACE_USAGE_THRESHOLD_GB = 18000
MIN_SPACE_USAGE_THRESHOLD_GB = 10

_YEAR_QUARTER = re.compile(r'^[0-9]{4}_0*[1-4]$')
_TOOL_NAME_VERSION = re.compile(r'^(?P<tool_name_version>.+\d+_\d+)_\d+$')


def compute_md5(file_path: str, chunk_size: int = 1024 * 1024) -> str:
    md5 = hashlib.md5()
    with open(file_path, 'rb') as f:
        for chunk in iter(lambda: f.read(chunk_size), b''):
            md5.update(chunk)
    return md5.hexdigest()


def create_hashcheck_file(data_file_path: str, compute_md5_hash: bool = True) -> str:
    """
    Write <data_file_path>.hashcheck describing the file's size, date and MD5 hash.

    Returns the path to the new file, or an empty string if the data file is missing.
    """
    if not os.path.isfile(data_file_path):
        return ''

    md5_hash = compute_md5(data_file_path) if compute_md5_hash else ''
    st = os.stat(data_file_path)
    modified = datetime.fromtimestamp(st.st_mtime, timezone.utc)

    hashcheck_path = data_file_path + SERVER_CACHE_HASHCHECK_FILE_SUFFIX
    with open(hashcheck_path, 'w') as f:
        f.write(f"# Hashcheck file created {datetime.now().strftime(DATE_TIME_FORMAT)}\n")
        f.write(f"size={st.st_size}\n")
        f.write(f"modification_date_utc={modified.strftime('%Y-%m-%d %H:%M:%S')}\n")
        f.write(f"hash={md5_hash}\n")
        f.write("hashtype=MD5\n")

    return hashcheck_path


def dataset_year_quarter(directory_path: str) -> str:
    """Return the 2014_1 style year/quarter directory name nearest the end of the path."""
    if not directory_path:
        return ''
    for name in reversed(re.split(r'[\\/]', directory_path)):
        if _YEAR_QUARTER.match(name):
            return name
    return ''


def tool_name_version_folder(results_directory_name: str) -> str:
    """
    Strip the dataset ID from a ToolName_Version_DatasetID directory name.

    MSXML_Gen_1_120_275966 becomes MSXML_Gen_1_120.

    :raises ValueError: if the name does not end in _<version>_<id>
    """
    match = _TOOL_NAME_VERSION.match(results_directory_name or '')
    if not match:
        raise ValueError(f"Directory name is not in the expected form of ToolName_Version_DatasetID: {results_directory_name}")
    return match.group('tool_name_version')


class ServerCache:
    """
    Shared cache directory of converted spectrum files (mzML, mzXML, ...).

    Every cached file is accompanied by a .hashcheck file; only files with a
    companion are considered for purging. Purging is rate limited per manager
    and across managers (via the shared PurgeCheckFile.txt).
    """

    def __init__(self, cache_directory: str, manager_name: str,
                 rate_limiter: Optional[RateLimiter] = None,
                 bytes_per_gb: int = 1024 ** 3) -> None:
        self.cache_directory = cache_directory
        self.manager_name = manager_name
        self.rate_limiter = rate_limiter or RateLimiter(CACHED_SERVER_FILES_PURGE_INTERVAL_HOURS * 3600)
        self.bytes_per_gb = bytes_per_gb

    def copy_file_to_cache(self, source_file_path: str, subdirectory: str = '',
                           year_quarter: str = '', purge_old_files: bool = True) -> str:
        """
        Copy a file (plus a fresh .hashcheck file) into the cache.

        The target is <cache>/<subdirectory>/<year_quarter>/<file name>.
        Returns the cached file path, or an empty string on failure.
        """
        if not os.path.isdir(self.cache_directory):
            logger.warning(f"Cache directory not found: {self.cache_directory}")
            return ''

        target_dir = self.cache_directory
        if subdirectory:
            target_dir = os.path.join(target_dir, subdirectory)
        if year_quarter:
            target_dir = os.path.join(target_dir, year_quarter)

        try:
            mkdir_p(target_dir)

            hashcheck_path = create_hashcheck_file(source_file_path, compute_md5_hash=True)
            if not hashcheck_path:
                logger.error(f"Hashcheck file was not created for {source_file_path}")
                return ''

            target_path = os.path.join(target_dir, os.path.basename(source_file_path))
            start = time.time()
            cp(source_file_path, target_path)
            logger.info(f"Copied {os.path.basename(source_file_path)} to {target_dir} in {time.time() - start:.1f} seconds")

            cp(hashcheck_path, os.path.join(target_dir, os.path.basename(hashcheck_path)))
        except OSError as e:
            logger.error(f"Error copying {source_file_path} to the server cache: {e}")
            return ''

        if purge_old_files:
            self.purge_old_files()

        return target_path

    def _purge_check_recent(self) -> bool:
        purge_check_file = os.path.join(self.cache_directory, PURGE_CHECK_FILENAME)
        if not os.path.exists(purge_check_file):
            return False
        age_hours = (time.time() - os.path.getmtime(purge_check_file)) / 3600.0
        return age_hours < CACHED_SERVER_FILES_PURGE_INTERVAL_HOURS

    def _touch_purge_check_file(self) -> None:
        purge_check_file = os.path.join(self.cache_directory, PURGE_CHECK_FILENAME)
        try:
            with open(purge_check_file, 'a') as f:
                f.write(f"{datetime.now().strftime(DATE_TIME_FORMAT)} - {self.manager_name}\n")
        except OSError as e:
            # Another manager may be updating the file at the same time
            logger.debug(f"Unable to update {purge_check_file}: {e}")

    @logit(logger)
    def purge_old_files(self, space_usage_threshold_gb: float = DEFAULT_SPACE_USAGE_THRESHOLD_GB) -> int:
        """
        Delete the oldest cached files once the cache exceeds space_usage_threshold_gb.

        Files are removed oldest first until usage drops below 95% of the
        threshold. Returns the number of files deleted.
        """
        if not self.cache_directory or not self.cache_directory.strip():
            raise ValueError("Cache directory path cannot be empty")

        space_usage_threshold_gb = max(space_usage_threshold_gb, MIN_SPACE_USAGE_THRESHOLD_GB)

        if not self.rate_limiter.ready():
            return 0

        if not os.path.isdir(self.cache_directory):
            return 0

        if self._purge_check_recent():
            return 0

        self._touch_purge_check_file()
        self.rate_limiter.mark()

        logger.info(f"Examining hashcheck files in directory {self.cache_directory}")

        data_files = []
        total_bytes = 0
        pattern = os.path.join(glob.escape(self.cache_directory), '**', '*' + SERVER_CACHE_HASHCHECK_FILE_SUFFIX)
        for hashcheck_path in glob.glob(pattern, recursive=True):
            data_path = hashcheck_path[:-len(SERVER_CACHE_HASHCHECK_FILE_SUFFIX)]
            try:
                st = os.stat(data_path)
            except FileNotFoundError:
                continue
            data_files.append((st.st_mtime, data_path, st.st_size))
            total_bytes += st.st_size

        if total_bytes / float(self.bytes_per_gb) <= space_usage_threshold_gb:
            return 0

        purge_log_file = os.path.join(self.cache_directory, f"PurgeLog_{datetime.now().year}.txt")
        if not os.path.exists(purge_log_file):
            try:
                with open(purge_log_file, 'a') as f:
                    f.write('\t'.join(['Date', 'Manager', 'Size (MB)', 'Modification_Date', 'Path']) + '\n')
            except OSError as e:
                logger.debug(f"Unable to create {purge_log_file}: {e}")

        purged_entries = []
        error_summary = Counter()
        size_deleted_mb = 0.0

        for mtime, data_path, size in sorted(data_files):
            size_mb = bytes_to_mb(size)
            total_bytes -= size
            try:
                os.remove(data_path)
                purged_entries.append('\t'.join([datetime.now().strftime(DATE_TIME_FORMAT),
                                                 self.manager_name,
                                                 f"{size_mb:.2f}",
                                                 datetime.fromtimestamp(mtime).strftime(DATE_TIME_FORMAT),
                                                 data_path]))
                size_deleted_mb += size_mb
                rm_p(data_path + SERVER_CACHE_HASHCHECK_FILE_SUFFIX)
            except OSError as e:
                error_summary[type(e).__name__] += 1

            if total_bytes / float(self.bytes_per_gb) < space_usage_threshold_gb * 0.95:
                break

        logger.info(f"Deleted {len(purged_entries)} file(s) from {self.cache_directory}, "
                    f"recovering {size_deleted_mb:.1f} MB in disk space")

        if error_summary:
            logger.error(f"Unable to delete {sum(error_summary.values())} file(s) from {self.cache_directory}")
            for exception_name, count in error_summary.items():
                logger.error(f"  {exception_name}: {count}")

        if purged_entries:
            try:
                with open(purge_log_file, 'a') as f:
                    f.write('\n'.join(purged_entries) + '\n')
            except OSError as e:
                logger.warning(f"Unable to append to {purge_log_file}: {e}")

        return len(purged_entries)
