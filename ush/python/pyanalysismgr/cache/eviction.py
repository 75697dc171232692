import glob
import os
import time
from datetime import datetime, timezone
from logging import getLogger
from typing import Callable, List, Optional

import psutil
from wxflow import logit

from pyanalysismgr.cache.models import CacheEntry, DirectoryQuota
from pyanalysismgr.core.file_tools import get_directory_size

logger = getLogger(__name__.split('.')[-1])

FASTA_FILE_EXTENSION = '.fasta'
HASHCHECK_SUFFIX = '.hashcheck'
LASTUSED_FILE_EXTENSION = '.LastUsed'
MAX_DIR_SIZE_FILENAME = 'MaxDirSize.txt'

# Suffixes removed from a FASTA base name so that decoy variants are purged with the original
EXTENSIONS_TO_TRIM = ['.revcat', '.icsfldecoy']

BYTES_PER_GB = 1024 ** 3
MIN_RETENTION_DAYS = 5
MIN_DIRECTORY_SIZE_GB = 10
RESCAN_AFTER_PURGING_GB = 10
MAX_PURGE_ITERATIONS = 100

LAST_USED_DATE_FORMAT = '%Y-%m-%d %H:%M:%S'
_LAST_USED_PARSE_FORMATS = [LAST_USED_DATE_FORMAT, '%Y-%m-%d', '%m/%d/%Y %I:%M:%S %p', '%m/%d/%Y %H:%M:%S', '%m/%d/%Y']


def _utc(timestamp: float) -> datetime:
    return datetime.fromtimestamp(timestamp, timezone.utc)


def parse_last_used_date(text: str) -> Optional[datetime]:
    """Parse the date stored on the first line of a .LastUsed file; None if unreadable."""
    text = (text or '').strip()
    if not text:
        return None
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        parsed = None
        for fmt in _LAST_USED_PARSE_FORMATS:
            try:
                parsed = datetime.strptime(text, fmt)
                break
            except ValueError:
                continue
    if parsed is None:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _read_first_line(path: str) -> str:
    with open(path, 'r') as f:
        return f.readline()


def _last_used_for(fasta_path: str) -> datetime:
    """Newest of the file times and any .hashcheck / .LastUsed companion evidence."""
    st = os.stat(fasta_path)
    # st_ctime is the inode change time on POSIX, so only a real birth time is trusted
    last_used = _utc(max(st.st_mtime, getattr(st, "st_birthtime", st.st_mtime)))

    directory, name = os.path.split(fasta_path)

    hashcheck_files = sorted(glob.glob(os.path.join(directory, glob.escape(name) + '*' + HASHCHECK_SUFFIX)))
    if hashcheck_files:
        last_used = max(last_used, _utc(os.path.getmtime(hashcheck_files[0])))

    last_used_files = [p for p in [os.path.join(directory, name + LASTUSED_FILE_EXTENSION)] if os.path.exists(p)]

    if name.lower().endswith('.revcat.fasta'):
        alt_name = name[:-len('.revCat.fasta')] + FASTA_FILE_EXTENSION + LASTUSED_FILE_EXTENSION
        alt_path = os.path.join(directory, alt_name)
        if os.path.exists(alt_path):
            last_used_files.append(alt_path)

    if last_used_files:
        last_used = max(last_used, _utc(os.path.getmtime(last_used_files[0])))
        try:
            parsed = parse_last_used_date(_read_first_line(last_used_files[0]))
            if parsed is not None:
                last_used = max(last_used, parsed)
        except (OSError, UnicodeDecodeError) as e:
            logger.debug(f"Unable to read {last_used_files[0]}; using file times: {e}")

    return last_used


def get_fasta_files_by_last_use(directory: str) -> List[CacheEntry]:
    """
    Find every FASTA file below directory, oldest last-use first.

    A FASTA file's last use is the newest of its modification/creation time,
    its first .hashcheck companion, its .LastUsed marker file, and the date
    written on the first line of that marker.
    """
    entries = []
    pattern = os.path.join(glob.escape(directory), '**', '*' + FASTA_FILE_EXTENSION)
    for fasta_path in glob.glob(pattern, recursive=True):
        try:
            entries.append(CacheEntry(fasta_path, _last_used_for(fasta_path), os.path.getsize(fasta_path)))
        except FileNotFoundError:
            # Purged by another manager while we were scanning
            continue

    entries.sort(key=lambda entry: entry.last_used)
    return entries


def update_last_used_file(fasta_path: str) -> None:
    """Record that fasta_path was just used by writing the current UTC time to <fasta>.LastUsed"""
    last_used_path = fasta_path + LASTUSED_FILE_EXTENSION
    try:
        with open(last_used_path, 'w') as f:
            f.write(datetime.now(timezone.utc).strftime(LAST_USED_DATE_FORMAT) + '\n')
    except OSError as e:
        logger.warning(f"Unable to update {last_used_path}: {e}")


def read_max_dir_size_file(max_dir_size_file: str) -> Optional[DirectoryQuota]:
    """
    Read the MaxSizeGB=<int> setting from a MaxDirSize.txt file.

    Blank lines and lines starting with # are ignored. Returns None (after
    logging an error) when the key is missing or its value is not an integer.
    """
    error_suffix = f"; cannot manage drive space usage: {os.path.dirname(max_dir_size_file)}"

    with open(max_dir_size_file, 'r') as f:
        for line in f:
            line = line.rstrip('\r\n')
            if not line.strip() or line.startswith('#'):
                continue

            parts = line.split('=')
            if len(parts) < 2:
                continue

            if parts[0].lower() != 'maxsizegb':
                continue

            try:
                max_size_gb = int(parts[1].strip())
            except ValueError:
                logger.error(f"MaxSizeGB line does not contain an integer in {max_dir_size_file}{error_suffix}")
                return None

            if max_size_gb > 0:
                return DirectoryQuota.size_cap_gb(max_size_gb)
            break

    logger.error(f"MaxSizeGB line not found in {max_dir_size_file}{error_suffix}")
    return None


class CacheEvictionPolicy:
    """
    Least-recently-used purging of FASTA filesets in a shared organism database directory.

    Two strategies are available:
    - free space percent: delete until the drive has at least the threshold percent free
    - size cap: delete until the directory uses less than MaxSizeGB (from MaxDirSize.txt)

    Neither strategy deletes a fileset used within the last min_retention_days,
    or one whose name starts with the current job's FASTA base name. Several
    managers may purge the same directory at once; files that vanish under us
    are counted, not treated as failures.
    """

    def __init__(self,
                 debug_level: int = 1,
                 preview: bool = False,
                 min_retention_days: float = MIN_RETENTION_DAYS,
                 min_directory_size_gb: float = MIN_DIRECTORY_SIZE_GB,
                 bytes_per_gb: int = BYTES_PER_GB,
                 disk_usage: Optional[Callable] = None,
                 clock: Optional[Callable[[], float]] = None) -> None:
        self.debug_level = debug_level
        self.preview = preview
        self.min_retention_days = min_retention_days
        self.min_directory_size_gb = min_directory_size_gb
        self.bytes_per_gb = bytes_per_gb
        self.disk_usage = disk_usage or psutil.disk_usage
        self.clock = clock or time.time

        self.files_already_deleted = 0
        self.delete_errors = 0
        self.purged_files: List[str] = []

    def _now(self) -> datetime:
        return _utc(self.clock())

    def _to_gb(self, num_bytes: float) -> float:
        return num_bytes / float(self.bytes_per_gb)

    def _is_recent(self, entry: CacheEntry) -> bool:
        return entry.age_days(self._now()) < self.min_retention_days

    def purge_fasta_files(self, entry: CacheEntry, legacy_fasta_base_name: str = '') -> int:
        """
        Delete every file sharing the FASTA file's base name.

        Returns the number of bytes deleted (or that would be deleted, in preview mode).
        The current job's FASTA file is never deleted.
        """
        base_name = os.path.splitext(os.path.basename(entry.file_path))[0]

        if legacy_fasta_base_name and base_name.lower().startswith(legacy_fasta_base_name.lower()):
            logger.debug(f"Not purging {entry.file_path}; the current job uses it")
            return 0

        for suffix in EXTENSIONS_TO_TRIM:
            if base_name.lower().endswith(suffix):
                base_name = base_name[:-len(suffix)]
                break

        directory = os.path.dirname(entry.file_path)
        files_to_delete = sorted(glob.glob(os.path.join(glob.escape(directory), glob.escape(base_name) + '.*')))

        if self.debug_level >= 1:
            logger.info(f"Deleting {len(files_to_delete):2d} file{'' if len(files_to_delete) == 1 else 's'} "
                        f"associated with {entry.file_path}")

        bytes_deleted = 0
        for path in files_to_delete:
            try:
                size = os.path.getsize(path)
                if self.preview:
                    logger.info(f"    Preview delete {os.path.basename(path)}")
                else:
                    os.remove(path)
                bytes_deleted += size
                self.purged_files.append(path)
            except FileNotFoundError:
                self.files_already_deleted += 1
            except OSError as e:
                self.delete_errors += 1
                logger.error(f"Error deleting {path}: {e}")

        return bytes_deleted

    @logit(logger)
    def purge_if_low_free_space(self,
                                org_db_directory: str,
                                free_space_threshold_percent: float,
                                required_free_space_mb: float = 0,
                                max_directory_size_gb: float = 0,
                                legacy_fasta_base_name: str = '') -> None:
        """
        Entry point used before creating new cache entries.

        MaxDirSize.txt in the directory selects the size cap strategy; otherwise
        max_directory_size_gb (if positive) is applied first and the free space
        strategy runs afterwards.
        """
        quota = DirectoryQuota.free_space_percent(free_space_threshold_percent)
        org_db_directory = os.path.abspath(org_db_directory)

        # Guard against being called on a drive root
        if len(org_db_directory) < 4:
            logger.warning(f"Warning: Org DB directory length is less than 4 characters; this is unexpected: {org_db_directory}")
            return

        max_dir_size_file = os.path.join(org_db_directory, MAX_DIR_SIZE_FILENAME)
        if os.path.exists(max_dir_size_file):
            if self.purge_using_space_used_threshold_file(max_dir_size_file, legacy_fasta_base_name):
                return

        if max_directory_size_gb > 0:
            self.purge_using_space_used_threshold(org_db_directory, max_directory_size_gb, legacy_fasta_base_name)

        try:
            usage = self.disk_usage(org_db_directory)
        except OSError as e:
            logger.warning(f"Warning: could not determine the drive free space ({e}) and could not find file "
                           f"{MAX_DIR_SIZE_FILENAME}; cannot manage drive space usage: {org_db_directory}")
            logger.info(f"Create file {MAX_DIR_SIZE_FILENAME} with 'MaxSizeGB=50' on a single line. "
                        "Comment lines are allowed using # as a comment character")
            return

        percent_free = usage.free / float(usage.total) * 100
        if percent_free >= quota.value:
            if self.debug_level >= 2:
                logger.info(f"Free space on {org_db_directory} ({self._to_gb(usage.free):.1f} GB) is over "
                            f"{quota.value:g}% of the total space; purge not required")
            return

        self.purge_using_free_space_threshold(org_db_directory, legacy_fasta_base_name, quota,
                                              required_free_space_mb, percent_free)

    def purge_using_free_space_threshold(self,
                                         org_db_directory: str,
                                         legacy_fasta_base_name: str,
                                         quota: DirectoryQuota,
                                         required_free_space_mb: float,
                                         percent_free_at_start: float) -> None:
        usage = self.disk_usage(org_db_directory)
        total = float(usage.total)
        free_space_gb = self._to_gb(usage.free)

        log_info = (self.debug_level >= 1 and free_space_gb < 100) or \
                   (self.debug_level >= 2 and free_space_gb < 250) or \
                   self.debug_level >= 3

        if log_info:
            logger.info(f"Free space on {org_db_directory} ({free_space_gb:.1f} GB) is {percent_free_at_start:.1f}% "
                        f"of the total space; purge required since less than threshold of {quota.value:g}%")

        total_bytes_purged = 0

        def current_free_gb():
            if self.preview:
                return free_space_gb + self._to_gb(total_bytes_purged)
            return self._to_gb(self.disk_usage(org_db_directory).free)

        for entry in get_fasta_files_by_last_use(org_db_directory):
            if self._is_recent(entry):
                if log_info:
                    logger.info(f"All FASTA files in {org_db_directory} are less than {self.min_retention_days:g} days old; "
                                "will not purge any more files to free disk space")
                break

            total_bytes_purged += self.purge_fasta_files(entry, legacy_fasta_base_name)

            updated_free_gb = current_free_gb()
            percent_free = updated_free_gb * self.bytes_per_gb / total * 100

            if required_free_space_mb > 0 and updated_free_gb * 1024.0 < required_free_space_mb:
                # Required space is known and not yet reached; keep deleting
                if self.debug_level >= 2:
                    logger.debug(f"Free space on {org_db_directory} ({updated_free_gb:.1f} GB) is now {percent_free:.1f}% of the total space")
                continue

            if percent_free >= quota.value:
                if self.debug_level >= 1:
                    logger.info(f"Free space on {org_db_directory} ({updated_free_gb:.1f} GB) is now over {quota.value:g}% "
                                f"of the total space; deleted {self._to_gb(total_bytes_purged):.1f} GB of cached files")
                break

            if self.debug_level >= 2:
                logger.debug(f"Free space on {org_db_directory} ({updated_free_gb:.1f} GB) is now {percent_free:.1f}% of the total space")

        final_free_gb = current_free_gb()
        if required_free_space_mb > 0 and final_free_gb * 1024.0 < required_free_space_mb:
            logger.warning(f"Warning: unable to delete enough files to free up the required space on {org_db_directory} "
                           f"({final_free_gb:.1f} GB vs. {required_free_space_mb / 1024.0:.1f} GB); "
                           f"deleted {self._to_gb(total_bytes_purged):.1f} GB of cached files")

    def purge_using_space_used_threshold_file(self, max_dir_size_file: str, legacy_fasta_base_name: str = '') -> bool:
        """Apply the size cap named in MaxDirSize.txt; False if the file is unusable."""
        try:
            quota = read_max_dir_size_file(max_dir_size_file)
        except OSError as e:
            logger.error(f"Error reading {max_dir_size_file}: {e}")
            return False

        if quota is None:
            return False

        return self.purge_using_space_used_threshold(os.path.dirname(os.path.abspath(max_dir_size_file)),
                                                     quota.value, legacy_fasta_base_name)

    @logit(logger)
    def purge_using_space_used_threshold(self, org_db_directory: str, max_directory_size_gb: float,
                                         legacy_fasta_base_name: str = '') -> bool:
        """
        Delete the oldest FASTA filesets until the directory is below max_directory_size_gb.

        Returns False only when called with a non-positive size. Running out of
        eligible files is logged as a warning but still counts as success.
        """
        if max_directory_size_gb <= 0:
            logger.warning(f"purge_using_space_used_threshold should be called with a positive integer, "
                           f"not {max_directory_size_gb}; aborting")
            return False

        if max_directory_size_gb < self.min_directory_size_gb:
            logger.warning(f"Max directory size is too small; increasing from {max_directory_size_gb} GB "
                           f"to {self.min_directory_size_gb} GB")
            max_directory_size_gb = self.min_directory_size_gb

        max_bytes = max_directory_size_gb * self.bytes_per_gb
        purge_successful = False
        total_bytes_purged_overall = 0

        # At most RESCAN_AFTER_PURGING_GB is deleted per iteration, bounding a single call
        for _ in range(MAX_PURGE_ITERATIONS):
            space_usage_bytes = get_directory_size(org_db_directory)
            # Deleted files are still on disk in preview mode
            space_usage_bytes -= total_bytes_purged_overall if self.preview else 0

            if space_usage_bytes <= max_bytes:
                message = (f"Space usage in {org_db_directory} is {self._to_gb(space_usage_bytes):.1f} GB, "
                           f"which is below the threshold of {max_directory_size_gb:g} GB; nothing to purge")
                logger.debug(message)
                return True

            fasta_files = get_fasta_files_by_last_use(org_db_directory)
            if self.preview:
                fasta_files = [f for f in fasta_files if f.file_path not in self.purged_files]

            if not fasta_files:
                logger.warning(f"Did not find any FASTA files to purge in {org_db_directory}")
                return True

            bytes_to_purge = space_usage_bytes - max_bytes
            total_bytes_purged = 0
            files_processed = 0
            rescan = False

            for entry in fasta_files:
                files_processed += 1

                if self._is_recent(entry):
                    logger.info(f"All FASTA files in {org_db_directory} are less than {self.min_retention_days:g} days old; "
                                "will not purge any more files to free disk space")
                    files_processed = len(fasta_files)
                    break

                bytes_deleted = self.purge_fasta_files(entry, legacy_fasta_base_name)
                total_bytes_purged += bytes_deleted
                total_bytes_purged_overall += bytes_deleted

                if total_bytes_purged >= bytes_to_purge:
                    logger.info(f"Space usage in {org_db_directory} is now below {max_directory_size_gb:g} GB; "
                                f"deleted {self._to_gb(total_bytes_purged_overall):.1f} GB of cached files")
                    return True

                if self.debug_level >= 2:
                    logger.debug(f"Purging FASTA files: {total_bytes_purged / 1024.0 / 1024.0:.1f} / "
                                 f"{bytes_to_purge / 1024.0 / 1024.0:.1f} MB deleted")

                if self._to_gb(total_bytes_purged) > RESCAN_AFTER_PURGING_GB:
                    # Another manager may be purging the same directory; re-scan
                    rescan = True
                    break

            if rescan or files_processed < len(fasta_files):
                continue

            purge_successful = total_bytes_purged >= bytes_to_purge
            break

        if not purge_successful:
            logger.warning(f"Warning: unable to delete enough files to lower the space usage in {org_db_directory} "
                           f"to below {max_directory_size_gb:g} GB; "
                           f"deleted {self._to_gb(total_bytes_purged_overall):.1f} GB of cached files")

        return True
