import glob
import os
import posixpath
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from logging import getLogger
from typing import Dict, Iterable, List, Optional

from wxflow import logit
from wxflow.executable import ProcessError

from pyanalysismgr.cache.eviction import FASTA_FILE_EXTENSION, HASHCHECK_SUFFIX
from pyanalysismgr.core.job_context import (JOB_PARAM_GENERATED_FASTA_NAME, PEPTIDE_SEARCH_SECTION,
                                            STEP_PARAMETERS_SECTION, CaseInsensitiveSet, JobContext)
from pyanalysismgr.transfer.transport import (REMOTE_COPY_RETRY_COUNT, REMOTE_COPY_RETRY_HOLDOFF_SEC,
                                              RemoteFileDescriptor, RemoteTransport, copy_files)

logger = getLogger(__name__.split('.')[-1])

STEP_PARAM_REMOTE_TIMESTAMP = 'RemoteTimestamp'
LOCALHASHCHECK_EXTENSION = '.localhashcheck'
REMOTE_COPY_WAIT_MINUTES = 15
REMOTE_COPY_POLL_SECONDS = 10
REMOTE_LOCK_MAX_WAIT_MINUTES = 30


@dataclass
class RemoteMatch:
    """
    Outcome of comparing a local FASTA file with the copy on the remote host.

    match: the remote copy can be used as-is
    abort_copy: the remote file grew larger than the local file; do not copy over it
    """
    match: bool
    abort_copy: bool = False


class RemoteTransferUtility:
    """
    Push job step resources to a remote processing host and pull results back.

    Parameters
    ----------
    context : JobContext
        Job and manager parameters for the step
    transport : RemoteTransport
        Channel to the remote host
    remote_work_dir_root : str
        Parent of the per-step working directories on the remote host
    remote_org_db_dir : str
        FASTA cache directory on the remote host
    remote_task_queue_dir : str
        Directory on the remote host holding the per-step status files
    copy_retry_count : int
        Retries for each file copied to the remote host
    copy_retry_holdoff_seconds : float
        Initial wait between copy attempts; grows by half after each failure
    """

    def __init__(self, context: JobContext, transport: RemoteTransport,
                 remote_work_dir_root: str, remote_org_db_dir: str = '',
                 remote_task_queue_dir: str = '',
                 copy_wait_minutes: float = REMOTE_COPY_WAIT_MINUTES,
                 copy_poll_seconds: float = REMOTE_COPY_POLL_SECONDS,
                 copy_retry_count: int = REMOTE_COPY_RETRY_COUNT,
                 copy_retry_holdoff_seconds: float = REMOTE_COPY_RETRY_HOLDOFF_SEC) -> None:
        self.context = context
        self.transport = transport
        self.remote_work_dir_root = remote_work_dir_root
        self.remote_org_db_dir = remote_org_db_dir
        self.remote_task_queue_dir = remote_task_queue_dir
        self.copy_wait_minutes = copy_wait_minutes
        self.copy_poll_seconds = copy_poll_seconds
        self.copy_retry_count = copy_retry_count
        self.copy_retry_holdoff_seconds = copy_retry_holdoff_seconds

    @property
    def remote_host(self) -> str:
        return self.transport.host

    @property
    def remote_work_dir_name(self) -> str:
        return f"Job{self.context.job}_Step{self.context.step}"

    @property
    def remote_job_step_work_dir(self) -> str:
        return posixpath.join(self.remote_work_dir_root, self.remote_work_dir_name)

    @property
    def remote_timestamp(self) -> str:
        return str(self.context.get_param(STEP_PARAM_REMOTE_TIMESTAMP, '', STEP_PARAMETERS_SECTION) or '')

    def update_remote_timestamp(self) -> str:
        """Store a new yyyyMMdd_HHmm timestamp (local time) as the RemoteTimestamp step parameter."""
        timestamp = datetime.now().strftime('%Y%m%d_%H%M')
        self.context.set_param(STEP_PARAMETERS_SECTION, STEP_PARAM_REMOTE_TIMESTAMP, timestamp)
        return timestamp

    @property
    def status_file_base_name(self) -> str:
        timestamp = self.remote_timestamp
        if not timestamp:
            logger.error("Job parameter RemoteTimestamp is empty; cannot properly construct the base tracking file name")
            return ''
        return f"{self.remote_work_dir_name}_{timestamp}"

    @property
    def job_status_file(self) -> str:
        return self.status_file_base_name + '.jobstatus'

    @property
    def processing_failure_file(self) -> str:
        return self.status_file_base_name + '.fail'

    @property
    def processing_success_file(self) -> str:
        return self.status_file_base_name + '.success'

    @property
    def status_info_file(self) -> str:
        return self.status_file_base_name + '.info'

    @property
    def status_lock_file(self) -> str:
        return self.status_file_base_name + '.lock'

    @property
    def status_file_names(self) -> List[str]:
        return [self.job_status_file, self.processing_failure_file, self.processing_success_file,
                self.status_info_file, self.status_lock_file]

    def create_remote_directory(self, remote_directory: str) -> bool:
        """Create the directory on the remote host; an existing directory is success."""
        try:
            return self.transport.create_remote_directory(remote_directory)
        except (OSError, ProcessError) as e:
            logger.error(f"Error creating directory {remote_directory} on {self.remote_host}: {e}")
            return False

    def delete_remote_work_dir(self, keep_empty_directory: bool = False) -> None:
        """Delete the job step's working directory on the remote host (or just its contents)."""
        if not self.remote_work_dir_root:
            logger.error("Remote work directory path is empty; cannot delete files")
            return
        try:
            self.transport.delete_remote_directory(self.remote_job_step_work_dir, keep_empty_directory)
        except (OSError, ProcessError) as e:
            logger.error(f"Error deleting remote work directory {self.remote_job_step_work_dir}: {e}")

    def get_remote_file_listing(self, remote_directory: str, file_match_spec: str = '*') -> Dict[str, RemoteFileDescriptor]:
        try:
            return self.transport.get_remote_file_listing(remote_directory, file_match_spec)
        except (OSError, ProcessError) as e:
            logger.error(f"Error listing files in {remote_directory} on {self.remote_host}: {e}")
            return {}

    @logit(logger)
    def copy_files_to_remote(self, source_files: Iterable[str], remote_directory: str,
                             use_lock_file: bool = False, warn_if_missing: bool = True) -> bool:
        """
        Copy local files to a directory on the remote host.

        Parameters
        ----------
        source_files : iterable of str
            Local file paths; each must exist
        remote_directory : str
            Target directory; created if missing
        use_lock_file : bool
            Hold a lock on the first file's remote path for the whole transfer
            (for directories shared by several managers)
        warn_if_missing : bool
            Log missing source files as warnings instead of debug messages

        Returns
        -------
        bool
            True only if every file was copied
        """
        source_files = list(source_files)
        if not source_files:
            logger.warning(f"No files to copy to {remote_directory} on {self.remote_host}")
            return False

        existing_files = []
        missing_count = 0
        for source_file in source_files:
            if os.path.isfile(source_file):
                existing_files.append(source_file)
                continue
            missing_count += 1
            if warn_if_missing:
                logger.warning(f"Cannot copy file to remote; source file not found: {source_file}")
            else:
                logger.debug(f"Cannot copy file to remote; source file not found: {source_file}")

        if not self.create_remote_directory(remote_directory):
            logger.error(f"Unable to create directory {remote_directory} on host {self.remote_host}")
            return False

        lock_target = ''
        if use_lock_file and existing_files:
            lock_target = posixpath.join(remote_directory, os.path.basename(existing_files[0]))
            description = f"{self.context.manager_name} copying files for {self.context.job_step_description()}"
            if not self.transport.acquire_lock(lock_target, description, REMOTE_LOCK_MAX_WAIT_MINUTES):
                logger.error(f"Unable to lock {lock_target} on host {self.remote_host}")
                return False

        try:
            failures = copy_files(self.transport, existing_files, remote_directory,
                                  self.copy_retry_count, self.copy_retry_holdoff_seconds)
        finally:
            if lock_target:
                self.transport.release_lock(lock_target)

        if failures:
            logger.error(f"Error copying {failures} of {len(existing_files)} files to {remote_directory} on {self.remote_host}")

        return failures == 0 and missing_count == 0

    def copy_file_to_remote(self, source_file_path: str, remote_directory: str, use_lock_file: bool = False) -> bool:
        if not os.path.isfile(source_file_path):
            logger.error(f"Cannot copy file to remote; source file not found: {source_file_path}")
            return False
        return self.copy_files_to_remote([source_file_path], remote_directory, use_lock_file)

    def retrieve_remote_files(self, remote_directory: str, file_names: Dict[str, bool],
                              local_directory: str, warn_if_missing: bool = True) -> bool:
        """
        Copy files from the remote host into local_directory.

        file_names maps each name to True when the file is required; a missing
        optional file is only logged. Returns False if any required file is
        missing or any copy fails.
        """
        listing = self.get_remote_file_listing(remote_directory)
        success = True

        for file_name, required in file_names.items():
            remote_file = listing.get(file_name)
            if remote_file is None:
                message = f"File not found on {self.remote_host}: {posixpath.join(remote_directory, file_name)}"
                if warn_if_missing and required:
                    logger.warning(message)
                else:
                    logger.debug(message)
                if required:
                    success = False
                continue

            try:
                self.transport.copy_file_from_remote(remote_file.full_path, local_directory)
            except (OSError, ProcessError) as e:
                logger.error(f"Error retrieving {remote_file.full_path} from {self.remote_host}: {e}")
                success = False

        return success

    def retrieve_status_file(self, status_file_name: str) -> str:
        """Copy a status file from the remote task queue into the working directory; returns the local path or ''."""
        if not self.retrieve_remote_files(self.remote_task_queue_dir, {status_file_name: True}, self.context.work_dir):
            return ''

        local_path = os.path.join(self.context.work_dir, status_file_name)
        if os.path.isfile(local_path):
            return local_path

        logger.warning(f"{os.path.splitext(status_file_name)[1]} file not found despite a successful copy: {local_path}")
        return ''

    def wait_for_remote_file_copy(self, source_file: str, remote_file: RemoteFileDescriptor) -> RemoteMatch:
        """
        Wait for another manager to finish copying source_file to the remote host.

        Polls while the remote file was modified within the last copy_wait_minutes.
        The remote file matches once its length equals the local length; the copy
        is aborted if the remote file grows larger than the local file.
        """
        source_length = os.path.getsize(source_file)
        source_name = os.path.basename(source_file)

        while (datetime.now(timezone.utc) - remote_file.modification_time).total_seconds() / 60.0 < self.copy_wait_minutes:
            logger.debug(f"Waiting for another manager to finish copying the file to the remote host; "
                         f"currently {remote_file.length} bytes for {remote_file.full_path}")

            time.sleep(self.copy_poll_seconds)

            matching_files = self.get_remote_file_listing(remote_file.directory, source_name)
            if not matching_files:
                logger.debug(f"File no longer exists on the remote host: {remote_file.full_path}")
                return RemoteMatch(False)

            remote_file = next(iter(matching_files.values()))
            if remote_file.length == source_length:
                return RemoteMatch(True)

            if remote_file.length > source_length:
                return RemoteMatch(False, abort_copy=True)

        return RemoteMatch(False)

    def remote_fasta_files_match(self, source_fasta: str, source_hashcheck: str,
                                 remote_fasta: Optional[RemoteFileDescriptor],
                                 remote_hashcheck: Optional[RemoteFileDescriptor]) -> RemoteMatch:
        """
        Decide whether the remote copy of a FASTA file can be used as-is.

        Equal lengths with the same .hashcheck file name is a match. A shorter
        remote file may still be arriving from another manager, so wait for it.
        Anything else needs a fresh copy.
        """
        source_name = os.path.basename(source_fasta)

        if remote_fasta is None:
            logger.debug(f"FASTA file not found on remote host; copying {source_name} to {self.remote_host}")
            return RemoteMatch(False)

        if remote_hashcheck is None:
            logger.debug(f"FASTA .hashcheck file not found on remote host; copying {source_name} to {self.remote_host}")
            return RemoteMatch(False)

        source_length = os.path.getsize(source_fasta)

        # The hashcheck contents change every few days; only compare its name
        if remote_fasta.length == source_length and remote_hashcheck.name == os.path.basename(source_hashcheck):
            return RemoteMatch(True)

        if remote_fasta.length < source_length:
            result = self.wait_for_remote_file_copy(source_fasta, remote_fasta)
            if result.abort_copy:
                logger.error(f"File size mismatch; the remote file grew larger than expected: {remote_fasta.full_path}")
                return result
            if result.match:
                logger.debug(f"Using existing FASTA file {remote_fasta.full_path} on {self.remote_host}")
                return result
            logger.debug(f"Copying {source_name} to {self.remote_host}")
        else:
            logger.debug(f"FASTA file size on remote host is different than local file "
                         f"({remote_fasta.length} bytes vs. {source_length} bytes locally); "
                         f"copying {source_name} to {self.remote_host}")

        return RemoteMatch(False)

    @logit(logger)
    def copy_generated_org_db_to_remote(self) -> bool:
        """
        Make sure the FASTA file generated for this job exists in the remote FASTA cache.

        The copy is skipped when the remote file already matches; otherwise the
        FASTA file and its companions (except .localhashcheck) are copied under a lock.
        """
        db_file_name = self.context.get_param(JOB_PARAM_GENERATED_FASTA_NAME, '', PEPTIDE_SEARCH_SECTION)
        if not db_file_name:
            logger.error(f"Cannot copy the generated FASTA remotely; parameter {JOB_PARAM_GENERATED_FASTA_NAME} is empty")
            return False

        org_db_dir = self.context.get_mgr_param('OrgDBDir', '')
        if not org_db_dir:
            logger.error("Cannot copy the generated FASTA remotely; manager parameter OrgDBDir is empty")
            return False

        source_fasta = os.path.join(org_db_dir, db_file_name)
        if not os.path.isfile(source_fasta):
            logger.error(f"Cannot copy the generated FASTA remotely; file not found: {source_fasta}")
            return False

        hashcheck_files = glob.glob(glob.escape(source_fasta) + '*' + HASHCHECK_SUFFIX)
        if not hashcheck_files:
            logger.error(f"Local hashcheck file not found for {source_fasta}; cannot copy remotely")
            return False

        source_hashcheck = max(hashcheck_files, key=os.path.getmtime)

        logger.debug("Verifying that the generated FASTA file exists on the remote host")

        file_match_spec = os.path.splitext(db_file_name)[0] + '*.*'
        matching_files = self.get_remote_file_listing(self.remote_org_db_dir, file_match_spec)

        if matching_files:
            remote_fasta = None
            remote_hashcheck = None
            for remote_file in matching_files.values():
                extension = os.path.splitext(remote_file.name)[1].lower()
                if extension == FASTA_FILE_EXTENSION:
                    remote_fasta = remote_file
                elif extension == HASHCHECK_SUFFIX:
                    remote_hashcheck = remote_file

            result = self.remote_fasta_files_match(source_fasta, source_hashcheck, remote_fasta, remote_hashcheck)
            if result.match and remote_fasta is not None:
                logger.debug(f"Using existing FASTA file {remote_fasta.full_path} on {self.remote_host}")
                return True
            if result.abort_copy:
                return False
        else:
            logger.debug(f"FASTA file not found on remote host; copying {db_file_name} to {self.remote_host}")

        source_files = [path for path in sorted(glob.glob(os.path.join(glob.escape(org_db_dir), file_match_spec)))
                        if os.path.splitext(path)[1] != LOCALHASHCHECK_EXTENSION]

        if self.copy_files_to_remote(source_files, self.remote_org_db_dir, use_lock_file=True):
            return True

        logger.error(f"Error copying {db_file_name} to {self.remote_org_db_dir} on {self.remote_host}")
        return False

    def get_work_dir_files(self, files_to_ignore: Iterable[str] = ()) -> List[str]:
        ignore = CaseInsensitiveSet(files_to_ignore)
        work_dir = self.context.work_dir
        return [os.path.join(work_dir, name) for name in sorted(os.listdir(work_dir))
                if os.path.isfile(os.path.join(work_dir, name)) and name not in ignore]

    @logit(logger)
    def copy_work_dir_files_to_remote(self, files_to_ignore: Iterable[str] = ()) -> bool:
        """Copy the working directory files (except files_to_ignore) into an emptied remote work directory."""
        logger.debug(f"Copying work dir files to remote host {self.remote_host}")

        files_to_copy = self.get_work_dir_files(files_to_ignore)
        if not files_to_copy:
            logger.error("Nothing to copy to the remote host; did not find any eligible files in the working directory")
            return False

        remote_directory = self.remote_job_step_work_dir
        if not self.create_remote_directory(remote_directory):
            logger.error(f"Unable to create working directory {remote_directory} on host {self.remote_host}")
            self.context.update_status_message(f"Unable to create working directory on remote host {self.remote_host}")
            return False

        self.delete_remote_work_dir(keep_empty_directory=True)

        if self.copy_files_to_remote(files_to_copy, remote_directory):
            logger.info(f"Copied {len(files_to_copy)} files to {remote_directory} on host {self.remote_host}")
            return True

        logger.error(f"Failure copying {len(files_to_copy)} files to {remote_directory} on host {self.remote_host}")
        self.context.update_status_message(f"Failure copying required files to remote host {self.remote_host}")
        return False
