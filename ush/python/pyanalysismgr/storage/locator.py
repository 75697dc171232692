import glob
import os
import time
from dataclasses import dataclass, field
from enum import Enum
from logging import getLogger
from typing import Any, List, Optional, Tuple

from wxflow import logit

from pyanalysismgr.core.job_context import JOB_PARAM_TRANSFER_DIRECTORY_PATH, JobContext

logger = getLogger(__name__.split('.')[-1])

STORAGE_PATH_INFO_FILE_SUFFIX = '_StoragePathInfo.txt'
MYEMSL_PATH_FLAG = r'\\MyEMSL'
DEFAULT_MAX_RETRY_COUNT = 3
DEFAULT_FOLDER_EXISTS_RETRY_HOLDOFF_SECONDS = 5


class StorageTier(Enum):
    PRIMARY = 'primary'
    MYEMSL = 'MyEMSL'
    ARCHIVE = 'archive'
    TRANSFER = 'transfer'
    NOT_FOUND = 'not found'


@dataclass
class DirectorySearchResult:
    """Where a dataset was found, or why it was not."""
    path: str
    found: bool
    tier: StorageTier
    message: str = ''
    myemsl_file_ids: List[int] = field(default_factory=list)


class ArchiveCatalog:
    """
    Index of dataset files held in the MyEMSL archive.

    Implementations query the archive's metadata service; the locator only
    needs to know whether any matching files exist.
    """

    def find_files(self, file_name: str, subdirectory: str, dataset: str, recurse: bool) -> List[Any]:
        """Return archive entries (with a file_id attribute) matching the request."""
        raise NotImplementedError("Subclasses must implement find_files method")


def _first_line(path: str) -> str:
    with open(path, 'r') as f:
        return f.readline().strip()


def resolve_storage_path(directory_path: str, file_name: str) -> str:
    """
    Return the path to file_name in directory_path, following a relocation pointer if needed.

    When the file is missing but <file_name>_StoragePathInfo.txt exists, its first
    line is the real location. Returns an empty string if neither exists.
    """
    physical_path = os.path.join(directory_path, file_name)
    if os.path.exists(physical_path):
        return physical_path

    info_file = os.path.join(directory_path, file_name + STORAGE_PATH_INFO_FILE_SUFFIX)
    if not os.path.exists(info_file):
        return ''

    return _first_line(info_file)


def resolve_ser_storage_path(directory_path: str) -> str:
    """
    Locate the ser file (or 0.ser directory) for a Bruker dataset directory.

    _StoragePathInfo.txt in the directory takes precedence; its first line is the
    real location. Returns an empty string when nothing is found.
    """
    info_file = os.path.join(directory_path, STORAGE_PATH_INFO_FILE_SUFFIX)
    if os.path.exists(info_file):
        return _first_line(info_file)

    ser_file = os.path.join(directory_path, 'ser')
    if os.path.isfile(ser_file):
        return ser_file

    ser_dir = os.path.join(directory_path, '0.ser')
    if os.path.isdir(ser_dir):
        return ser_dir

    return ''


class TieredFileLocator:
    """
    Find the storage location holding a valid copy of a dataset.

    Candidates are checked in order: the dataset storage path, MyEMSL, the
    archive path (only when Aurora is reachable or MyEMSL searching is
    disabled), then the transfer directory.
    """

    def __init__(self, context: JobContext, catalog: Optional[ArchiveCatalog] = None,
                 aurora_available: bool = False, myemsl_search_disabled: bool = False,
                 retry_holdoff_seconds: float = 1) -> None:
        self.context = context
        self.catalog = catalog
        self.aurora_available = aurora_available
        self.myemsl_search_disabled = myemsl_search_disabled or catalog is None
        self.retry_holdoff_seconds = retry_holdoff_seconds

    @property
    def debug_level(self) -> int:
        return self.context.debug_level

    def _candidate_paths(self, dataset_name: str, retrieving_instrument_data: bool,
                         assume_unpurged: bool) -> List[Tuple[str, StorageTier, bool]]:
        """(path, tier, warn if missing) tuples, in search order"""
        context = self.context
        dataset_dir_name = context.dataset_directory_name or dataset_name
        paths = []

        def add(base: str, tier: StorageTier) -> None:
            if not base:
                return
            paths.append((os.path.join(str(base), dataset_dir_name), tier, True))
            if dataset_dir_name != dataset_name:
                paths.append((os.path.join(str(base), dataset_name), tier, False))

        instrument_data_purged = int(context.get_param('InstrumentDataPurged', 0) or 0)
        if not (retrieving_instrument_data and instrument_data_purged != 0 and not assume_unpurged):
            add(context.get_param('DatasetStoragePath', ''), StorageTier.PRIMARY)

        if not self.myemsl_search_disabled and not assume_unpurged:
            paths.append((MYEMSL_PATH_FLAG, StorageTier.MYEMSL, False))

        if (self.aurora_available or self.myemsl_search_disabled) and not assume_unpurged:
            add(context.get_param('DatasetArchivePath', ''), StorageTier.ARCHIVE)

        transfer = context.get_param(JOB_PARAM_TRANSFER_DIRECTORY_PATH, '')
        start = len(paths)
        add(transfer, StorageTier.TRANSFER)
        # Transfer directory misses are expected; do not warn
        paths[start:] = [(p, tier, False) for p, tier, _ in paths[start:]]

        return paths

    def directory_exists_with_retry(self, directory_path: str, max_attempts: int, log_not_found: bool) -> bool:
        max_attempts = min(max(max_attempts, 1), 10)
        holdoff = self.retry_holdoff_seconds if self.retry_holdoff_seconds > 0 else DEFAULT_FOLDER_EXISTS_RETRY_HOLDOFF_SECONDS
        holdoff = min(holdoff, 600)

        retry_count = max_attempts
        while retry_count > 0:
            if os.path.isdir(directory_path):
                return True

            if log_not_found and (self.debug_level >= 2 or (self.debug_level >= 1 and retry_count == 1)):
                logger.warning(f"Directory {directory_path} not found. Retry count = {retry_count}")

            retry_count -= 1
            if retry_count <= 0:
                return False

            time.sleep(holdoff)

        return False

    def _file_exists_with_retry(self, file_path: str, max_attempts: int) -> bool:
        for attempt in range(max(max_attempts, 1)):
            if os.path.isfile(file_path):
                return True
            if attempt + 1 < max_attempts:
                time.sleep(self.retry_holdoff_seconds)
        logger.warning(f"File not found: {file_path}")
        return False

    def _valid_local_directory(self, path: str, file_name_to_find: str, directory_name_to_find: str,
                               max_attempts: int, log_not_found: bool) -> bool:
        if not self.directory_exists_with_retry(path, max_attempts, log_not_found):
            return False

        if file_name_to_find:
            if '*' in file_name_to_find:
                # Not recursive; the caller retries with directory_name_to_find appended
                if not glob.glob(os.path.join(glob.escape(path), file_name_to_find)):
                    return False
            elif not self._file_exists_with_retry(os.path.join(path, file_name_to_find), max_attempts):
                return False

        if directory_name_to_find:
            if '*' in directory_name_to_find:
                matches = [p for p in glob.glob(os.path.join(glob.escape(path), directory_name_to_find)) if os.path.isdir(p)]
                if not matches:
                    return False
            elif not self.directory_exists_with_retry(os.path.join(path, directory_name_to_find), max_attempts, log_not_found):
                return False

        return True

    def _valid_myemsl(self, dataset_name: str, file_name_to_find: str,
                      directory_name_to_find: str) -> Tuple[bool, List[int]]:
        recurse = directory_name_to_find == '*.d'
        matches = self.catalog.find_files(file_name_to_find or '*', directory_name_to_find, dataset_name, recurse)
        return bool(matches), [getattr(item, 'file_id', 0) for item in matches]

    @logit(logger)
    def find_valid_directory(self,
                             dataset_name: str,
                             file_name_to_find: str = '',
                             directory_name_to_find: str = '',
                             max_attempts: int = DEFAULT_MAX_RETRY_COUNT,
                             log_not_found: bool = True,
                             retrieving_instrument_data: bool = False,
                             assume_unpurged: bool = False) -> DirectorySearchResult:
        """
        Determine the best storage location for a dataset.

        Parameters
        ----------
        dataset_name : str
            Dataset to look for
        file_name_to_find : str, optional
            A file (wildcards allowed) that must be present in the directory
        directory_name_to_find : str, optional
            A subdirectory (wildcards allowed) that must be present
        max_attempts : int
            Existence checks per location (1-10)
        log_not_found : bool
            Warn about missing locations
        retrieving_instrument_data : bool
            Skip the storage path when the instrument data has been purged
        assume_unpurged : bool
            Only check the storage path, and return it even if it is not valid

        Returns
        -------
        DirectorySearchResult
            found is False when no location qualified; path is then the first candidate
        """
        file_name_to_find = file_name_to_find or ''
        directory_name_to_find = directory_name_to_find or ''

        if assume_unpurged:
            max_attempts = 1
            log_not_found = False

        candidates = self._candidate_paths(dataset_name, retrieving_instrument_data, assume_unpurged)
        if not candidates:
            message = "Could not find a valid dataset directory; no storage paths are defined"
            self.context.update_status_message(message)
            return DirectorySearchResult('', False, StorageTier.NOT_FOUND, message)

        best_path = candidates[0][0]
        missing_encountered = False

        for path, tier, warn_if_missing in candidates:
            if self.debug_level > 3:
                logger.debug(f"Looking for directory {path}")
            try:
                if tier == StorageTier.MYEMSL:
                    valid, file_ids = self._valid_myemsl(dataset_name, file_name_to_find, directory_name_to_find)
                    if valid:
                        return self._found(path, tier, file_name_to_find, directory_name_to_find,
                                           missing_encountered, file_ids)
                else:
                    log_missing = log_not_found and warn_if_missing
                    if self._valid_local_directory(path, file_name_to_find, directory_name_to_find,
                                                   max_attempts, log_missing):
                        return self._found(path, tier, file_name_to_find, directory_name_to_find, missing_encountered)

                    if file_name_to_find and directory_name_to_find:
                        # The file may be inside the requested subdirectory
                        alt_path = os.path.join(path, directory_name_to_find)
                        if self._valid_local_directory(alt_path, file_name_to_find, '', max_attempts, log_missing):
                            return self._found(alt_path, tier, file_name_to_find, directory_name_to_find, missing_encountered)

                missing_encountered = True
            except OSError as e:
                logger.error(f"Exception looking for directory {path}: {e}")

        message = "Could not find a valid dataset directory"
        if file_name_to_find:
            message += f" containing file {file_name_to_find}"

        if log_not_found and self.debug_level >= 1:
            logger.warning(f"{message}, Job {self.context.job}, Dataset {dataset_name}")

        if assume_unpurged:
            logger.info(f"{message}; assuming the data is at {best_path}")
        else:
            self.context.update_status_message(message)

        return DirectorySearchResult(best_path, False, StorageTier.NOT_FOUND, message)

    def _found(self, path: str, tier: StorageTier, file_name_to_find: str, directory_name_to_find: str,
               missing_encountered: bool, file_ids: Optional[List[int]] = None) -> DirectorySearchResult:
        if self.debug_level >= 4 or (self.debug_level >= 1 and missing_encountered):
            message = f"Valid dataset directory has been found: {path}"
            if file_name_to_find:
                message += f" (matched file {file_name_to_find})"
            if directory_name_to_find:
                message += f" (matched directory {directory_name_to_find})"
            logger.debug(message)
        return DirectorySearchResult(path, True, tier, '', file_ids or [])

    def find_dataset_file(self, file_name: str, assume_unpurged: bool = False) -> str:
        """
        Return the full path to a dataset file, following _StoragePathInfo.txt pointers.

        Returns an empty string if no storage tier holds the file.
        """
        dataset = self.context.dataset
        result = self.find_valid_directory(dataset, file_name_to_find=file_name, assume_unpurged=assume_unpurged)

        if result.found and result.tier == StorageTier.MYEMSL:
            return os.path.join(result.path, file_name)

        # A relocated file leaves only its pointer file behind
        search_dir = result.path
        if not result.found:
            result = self.find_valid_directory(dataset, file_name_to_find=file_name + STORAGE_PATH_INFO_FILE_SUFFIX,
                                               assume_unpurged=assume_unpurged)
            if not result.found:
                return ''
            search_dir = result.path

        return resolve_storage_path(search_dir, file_name)
