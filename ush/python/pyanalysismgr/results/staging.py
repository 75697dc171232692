import os
from collections import Counter
from logging import getLogger
from typing import Iterable, Optional

from wxflow import cp, logit

from pyanalysismgr.core.file_tools import (copy_file_with_retry, create_directory_with_retry,
                                           directory_exists_with_retry, is_vim_swap_file)
from pyanalysismgr.core.job_context import CaseInsensitiveSet, JobContext, check_plural
from pyanalysismgr.results.failed_results import FailedResultsArchiver, write_work_dir_file_info
from pyanalysismgr.status.status_codes import MgrStatus, TaskStatus, TaskStatusDetail

logger = getLogger(__name__.split('.')[-1])

DEFAULT_COPY_RETRY_COUNT = 10
DEFAULT_COPY_RETRY_HOLDOFF_SEC = 15

ACCEPTED_FILES_TO_LOG = 50
REJECTED_FILES_TO_LOG = 10


def file_needs_overwrite(source_file_path: str, target_file_path: str) -> bool:
    """
    True when an existing target should be replaced by the source.

    An identical length with a source that is not newer than the target leaves
    the target alone; any length difference forces an overwrite.
    """
    if not os.path.exists(target_file_path):
        return False
    source = os.stat(source_file_path)
    target = os.stat(target_file_path)
    return not (source.st_size == target.st_size and source.st_mtime <= target.st_mtime)


def has_invalid_characters(file_name: str) -> bool:
    return any(ord(c) <= 31 or ord(c) >= 128 for c in file_name)


class ResultsStagingPipeline:
    """
    Package a finished job step and deliver it to the transfer directory.

    make_results_directory -> move_result_files -> copy_results_folder_to_server;
    a failure in the last two stages copies whatever was assembled into the
    manager's failed results directory.

    Parameters
    ----------
    context : JobContext
        Job step parameters; its result file skip/keep sets drive move_result_files
    status : StatusFile, optional
        Defaults to context.status
    archiver : FailedResultsArchiver, optional
        Destination for results of failed steps
    retry_count, retry_holdoff_seconds : int, float
        Per-file retry settings when copying to the transfer directory (holdoff increases after each failure)
    """

    def __init__(self, context: JobContext, status=None, archiver: Optional[FailedResultsArchiver] = None,
                 retry_count: int = DEFAULT_COPY_RETRY_COUNT,
                 retry_holdoff_seconds: float = DEFAULT_COPY_RETRY_HOLDOFF_SEC) -> None:
        self.context = context
        self.status = status if status is not None else context.status
        self.archiver = archiver or FailedResultsArchiver(context)
        self.retry_count = retry_count
        self.retry_holdoff_seconds = retry_holdoff_seconds

    @property
    def results_directory_path(self) -> str:
        return os.path.join(self.context.work_dir, self.context.results_directory_name)

    def _update_status(self, detail: TaskStatusDetail) -> None:
        if self.status is not None:
            self.status.update_and_write(0, MgrStatus.RUNNING, TaskStatus.RUNNING, detail)

    def _fail(self, message: str) -> None:
        logger.error(message)
        self.context.update_status_message(message)

    def _archive_failed_results(self, directory_path: str = '') -> None:
        self.archiver.archive(directory_path or self.results_directory_path)

    def make_results_directory(self) -> bool:
        self._update_status(TaskStatusDetail.PACKAGING_RESULTS)

        if not self.context.results_directory_name:
            self._fail("Results directory name is not defined")
            return False

        results_directory_path = self.results_directory_path
        try:
            create_directory_with_retry(results_directory_path, 1, 1)
        except OSError as e:
            self._fail(f"Error making results directory {results_directory_path}: {e}")
            return False

        return True

    def is_result_file(self, file_name: str) -> bool:
        """Apply the skip, skip-extension and keep lists plus the file name sanity checks."""
        context = self.context
        keep = file_name in context.result_files_to_keep

        if not keep:
            if file_name in context.result_files_to_skip:
                return False
            lower_name = file_name.lower()
            if any(lower_name.endswith(ext.lower()) for ext in context.result_file_extensions_to_skip):
                return False

        if is_vim_swap_file(file_name):
            return False

        if has_invalid_characters(file_name):
            logger.warning(f"Not moving file with invalid characters to the results directory: {file_name!r}")
            return False

        return True

    def _move_file(self, source_file_path: str, target_file_path: str) -> bool:
        try:
            os.replace(source_file_path, target_file_path)
            return True
        except OSError as e:
            logger.debug(f"Move failed for {source_file_path} ({e}); copying instead")

        try:
            cp(source_file_path, target_file_path)
            return True
        except OSError as e:
            logger.error(f"Error copying file {source_file_path} to {target_file_path}: {e}")
            return False

    def _move_directory_files(self, source_dir_path: str, target_dir_path: str,
                              accepted: Counter, rejected: Counter) -> int:
        """Move the accepted files of source_dir_path; returns the number of failures."""
        failure_count = 0
        verbose = self.context.debug_level >= 5

        with os.scandir(source_dir_path) as it:
            files = sorted((entry for entry in it if entry.is_file()), key=lambda e: e.name)

        for entry in files:
            extension = os.path.splitext(entry.name)[1].lower() or '(none)'

            if not self.is_result_file(entry.name):
                rejected[extension] += 1
                if verbose and sum(rejected.values()) <= REJECTED_FILES_TO_LOG:
                    logger.debug(f"Rejected file: {entry.name}")
                continue

            accepted[extension] += 1
            if verbose and sum(accepted.values()) <= ACCEPTED_FILES_TO_LOG:
                logger.debug(f"Accepted file: {entry.name}")

            if not self._move_file(entry.path, os.path.join(target_dir_path, entry.name)):
                failure_count += 1

        return failure_count

    def _move_subdirectory(self, source_dir_path: str, target_dir_path: str,
                           accepted: Counter, rejected: Counter) -> int:
        try:
            create_directory_with_retry(target_dir_path, 1, 1)
        except OSError as e:
            logger.error(f"Error creating results subdirectory {target_dir_path}: {e}")
            return 1

        failure_count = self._move_directory_files(source_dir_path, target_dir_path, accepted, rejected)

        with os.scandir(source_dir_path) as it:
            subdirectories = sorted((entry for entry in it if entry.is_dir()), key=lambda e: e.name)

        for entry in subdirectories:
            failure_count += self._move_subdirectory(entry.path, os.path.join(target_dir_path, entry.name),
                                                     accepted, rejected)
        return failure_count

    def move_result_files(self, include_subdirectories: bool = False,
                          subdirectories_to_skip: Iterable[str] = ()) -> bool:
        """
        Move the keepers from the working directory into the results directory.

        Every file is attempted; a single failure makes the overall result False
        and sends the partial results directory to the failed results archive.
        Subdirectories (when included) keep their structure below the results directory.
        """
        self._update_status(TaskStatusDetail.PACKAGING_RESULTS)

        work_dir = self.context.work_dir
        results_directory_path = self.results_directory_path
        accepted = Counter()
        rejected = Counter()

        failure_count = 0
        try:
            failure_count += self._move_directory_files(work_dir, results_directory_path, accepted, rejected)

            if include_subdirectories:
                skip = CaseInsensitiveSet(subdirectories_to_skip)
                skip.add(self.context.results_directory_name)

                with os.scandir(work_dir) as it:
                    subdirectories = sorted((entry for entry in it if entry.is_dir()), key=lambda e: e.name)

                for entry in subdirectories:
                    if entry.name in skip:
                        continue
                    if not os.listdir(entry.path):
                        continue
                    failure_count += self._move_subdirectory(entry.path,
                                                             os.path.join(results_directory_path, entry.name),
                                                             accepted, rejected)
        except OSError as e:
            logger.error(f"Error moving files into the results directory: {e}")
            failure_count += 1

        if self.context.debug_level >= 5:
            for extension, count in sorted(accepted.items()):
                logger.debug(f"Accepted {count} {check_plural(count, 'file', 'files')} with extension {extension}")
            for extension, count in sorted(rejected.items()):
                logger.debug(f"Rejected {count} {check_plural(count, 'file', 'files')} with extension {extension}")

        if failure_count > 0:
            logger.error(f"Unable to move {failure_count} {check_plural(failure_count, 'file', 'files')} "
                         "into the results directory")
            self._archive_failed_results()
            return False

        return True

    def create_remote_transfer_directory(self, transfer_directory_path: str) -> str:
        """
        Create <transfer>/<dataset directory>/<results name>; returns that path or '' on error.

        Aggregation and data package jobs skip the dataset directory. An
        existing directory is not an error.
        """
        context = self.context
        results_name = context.results_directory_name
        if not results_name:
            self._fail("Results directory job parameter not defined (OutputFolderName)")
            return ''

        is_aggregation = context.is_aggregation_dataset()

        if not is_aggregation and not directory_exists_with_retry(transfer_directory_path, 1, 1):
            self._fail(f"Transfer directory not found: {transfer_directory_path}")
            return ''

        if not context.dataset:
            self._fail("Dataset name is undefined; unable to create the remote transfer directory")
            return ''

        if is_aggregation:
            remote_transfer_directory = transfer_directory_path
        else:
            remote_transfer_directory = os.path.join(transfer_directory_path, context.dataset_directory_name)

        try:
            create_directory_with_retry(remote_transfer_directory, 5, 20, True)
        except OSError as e:
            self._fail(f"Error creating dataset directory in transfer directory {remote_transfer_directory}: {e}")
            return ''

        return os.path.join(remote_transfer_directory, results_name)

    def _copy_results_folder_recursive(self, source_dir_path: str, target_dir_path: str) -> int:
        """
        Copy a results directory tree; returns the number of files that could not be copied.

        :raises OSError: if a target directory cannot be created
        """
        files_to_overwrite = CaseInsensitiveSet()

        with os.scandir(source_dir_path) as it:
            entries = sorted(it, key=lambda e: e.name)
        files = [entry for entry in entries if entry.is_file()]
        subdirectories = [entry for entry in entries if entry.is_dir()]

        if os.path.isdir(target_dir_path):
            job_parameters_file = self.context.job_parameters_filename()
            for entry in files:
                target_file_path = os.path.join(target_dir_path, entry.name)
                if not file_needs_overwrite(entry.path, target_file_path):
                    continue
                files_to_overwrite.add(entry.name)
                if entry.name.lower() != job_parameters_file.lower():
                    logger.warning(f"File will be overwritten in the transfer directory: {target_file_path}")
        else:
            create_directory_with_retry(target_dir_path, self.retry_count, self.retry_holdoff_seconds, True)

        failure_count = 0
        for entry in files:
            target_file_path = os.path.join(target_dir_path, entry.name)
            if os.path.exists(target_file_path) and entry.name not in files_to_overwrite:
                continue
            try:
                copy_file_with_retry(entry.path, target_file_path, True,
                                     self.retry_count, self.retry_holdoff_seconds, True)
            except OSError as e:
                logger.error(f"Error copying {entry.path} to {target_file_path}: {e}")
                failure_count += 1

        for entry in subdirectories:
            failure_count += self._copy_results_folder_recursive(entry.path,
                                                                 os.path.join(target_dir_path, entry.name))

        return failure_count

    def copy_results_folder_to_server(self, transfer_directory_path: Optional[str] = None) -> bool:
        """Copy the results directory to the transfer directory; the results are archived locally on failure."""
        self._update_status(TaskStatusDetail.DELIVERING_RESULTS)

        if transfer_directory_path is None:
            transfer_directory_path = self.context.transfer_directory_path

        if not self.context.results_directory_name:
            self._fail("Results directory name is not defined")
            return False

        source_dir_path = self.results_directory_path
        if not os.path.isdir(source_dir_path):
            self._fail(f"Results directory not found: {source_dir_path}")
            return False

        target_dir_path = self.create_remote_transfer_directory(transfer_directory_path)
        if not target_dir_path:
            self._archive_failed_results()
            return False

        logger.info(f"Copying results to {target_dir_path}")

        try:
            failure_count = self._copy_results_folder_recursive(source_dir_path, target_dir_path)
        except OSError as e:
            self._fail(f"Error creating results directory in transfer directory {target_dir_path}: {e}")
            self._archive_failed_results()
            return False

        if failure_count > 0:
            self._fail(f"Error copying {failure_count} {check_plural(failure_count, 'file', 'files')} "
                       "to transfer directory")
            self._archive_failed_results()
            return False

        return True

    @logit(logger)
    def copy_results_to_transfer_directory(self, include_subdirectories: bool = False,
                                           subdirectories_to_skip: Iterable[str] = (),
                                           transfer_directory_override: str = '') -> bool:
        """Make the results directory, move the keepers into it and copy it to the transfer directory."""
        if self.context.offline_mode:
            logger.debug("Offline mode is enabled; leaving results in the working directory")
            return True

        if not self.make_results_directory():
            self.context.update_status_message("Error making results directory")
            return False

        if not self.move_result_files(include_subdirectories, subdirectories_to_skip):
            self.context.update_status_message("Error moving files into results directory")
            return False

        return self.copy_results_folder_to_server(transfer_directory_override or self.context.transfer_directory_path)

    @logit(logger)
    def copy_failed_results_to_archive_directory(self) -> None:
        """
        Record the working directory contents, package the results and keep them in
        the failed results directory. Used when a job step fails.
        """
        if self.context.offline_mode:
            return

        try:
            write_work_dir_file_info(self.context.work_dir)
        except OSError as e:
            logger.warning(f"Error creating the working directory file info file: {e}")

        move_succeeded = self.make_results_directory() and self.move_result_files()

        if move_succeeded:
            self._archive_failed_results(self.results_directory_path)
        else:
            self._archive_failed_results(self.context.work_dir)
