import fnmatch
import os
import posixpath
import shutil
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from logging import getLogger
from typing import Dict, Iterable, Optional

from wxflow import Executable, cp, mkdir_p, rm_p, rmdir
from wxflow.executable import ProcessError

from pyanalysismgr.core.lock_file import LOCK_FILE_SUFFIX, create_lock_file, delete_lock_file, wait_or_reclaim

logger = getLogger(__name__.split('.')[-1])

__all__ = ['RemoteFileDescriptor', 'RemoteTransport', 'LocalTransport', 'SshTransport', 'copy_files']

REMOTE_COPY_RETRY_COUNT = 10
REMOTE_COPY_RETRY_HOLDOFF_SEC = 15


@dataclass
class RemoteFileDescriptor:
    """Name, size and UTC modification time of a file on the remote host."""
    name: str
    full_path: str
    length: int
    modification_time: datetime

    @property
    def directory(self) -> str:
        return posixpath.dirname(self.full_path)


class RemoteTransport:
    """
    The primitive operations the transfer utility needs from a remote host.

    Listing returns a dictionary keyed by file name. Creating a directory that
    already exists is success.
    """

    def __init__(self, host: str) -> None:
        self.host = host

    def get_remote_file_listing(self, remote_directory: str, file_match_spec: str = '*') -> Dict[str, RemoteFileDescriptor]:
        raise NotImplementedError("Subclasses must implement get_remote_file_listing method")

    def create_remote_directory(self, remote_directory: str) -> bool:
        raise NotImplementedError("Subclasses must implement create_remote_directory method")

    def delete_remote_directory(self, remote_directory: str, keep_empty_directory: bool = False) -> None:
        raise NotImplementedError("Subclasses must implement delete_remote_directory method")

    def copy_file_to_remote(self, source_file_path: str, remote_directory: str) -> None:
        raise NotImplementedError("Subclasses must implement copy_file_to_remote method")

    def copy_file_from_remote(self, remote_file_path: str, local_directory: str) -> None:
        raise NotImplementedError("Subclasses must implement copy_file_from_remote method")

    def acquire_lock(self, remote_file_path: str, description: str, max_wait_minutes: float) -> bool:
        raise NotImplementedError("Subclasses must implement acquire_lock method")

    def release_lock(self, remote_file_path: str) -> None:
        raise NotImplementedError("Subclasses must implement release_lock method")

    def __str__(self) -> str:
        return f"{type(self).__name__}({self.host})"


class LocalTransport(RemoteTransport):
    """Remote host reachable as a mounted file share."""

    def __init__(self, host: str = 'localhost') -> None:
        super().__init__(host)

    def get_remote_file_listing(self, remote_directory, file_match_spec='*'):
        listing = {}
        if not os.path.isdir(remote_directory):
            return listing

        with os.scandir(remote_directory) as entries:
            for entry in entries:
                if not entry.is_file() or not fnmatch.fnmatch(entry.name, file_match_spec):
                    continue
                st = entry.stat()
                listing[entry.name] = RemoteFileDescriptor(name=entry.name,
                                                           full_path=entry.path,
                                                           length=st.st_size,
                                                           modification_time=datetime.fromtimestamp(st.st_mtime, timezone.utc))
        return listing

    def create_remote_directory(self, remote_directory):
        try:
            mkdir_p(remote_directory)
        except OSError as e:
            logger.error(f"Error creating directory {remote_directory} on {self.host}: {e}")
            return False
        return os.path.isdir(remote_directory)

    def delete_remote_directory(self, remote_directory, keep_empty_directory=False):
        if not os.path.isdir(remote_directory):
            return

        if not keep_empty_directory:
            rmdir(remote_directory)
            return

        with os.scandir(remote_directory) as entries:
            for entry in entries:
                if entry.is_dir(follow_symlinks=False):
                    shutil.rmtree(entry.path)
                else:
                    rm_p(entry.path)

    def copy_file_to_remote(self, source_file_path, remote_directory):
        cp(source_file_path, os.path.join(remote_directory, os.path.basename(source_file_path)))

    def copy_file_from_remote(self, remote_file_path, local_directory):
        cp(remote_file_path, os.path.join(local_directory, os.path.basename(remote_file_path)))

    def acquire_lock(self, remote_file_path, description, max_wait_minutes):
        wait_or_reclaim(remote_file_path, description, max_wait_minutes=max_wait_minutes)
        return create_lock_file(remote_file_path, description).acquired

    def release_lock(self, remote_file_path):
        delete_lock_file(remote_file_path + LOCK_FILE_SUFFIX)


class SshTransport(RemoteTransport):
    """
    Remote host reached with ssh and scp.

    Each remote command is an ssh or scp invocation; a non-zero exit
    status surfaces as wxflow.ProcessError.
    """

    # name, size, epoch mtime
    LISTING_FORMAT = r'%f\t%s\t%T@\n'

    def __init__(self, host: str, user: Optional[str] = None, key_file: Optional[str] = None,
                 ssh_exe: str = 'ssh', scp_exe: str = 'scp', lock_poll_seconds: float = 5) -> None:
        super().__init__(host)
        self.user = user
        self.key_file = key_file
        self.ssh_exe = ssh_exe
        self.scp_exe = scp_exe
        self.lock_poll_seconds = lock_poll_seconds

    @property
    def target(self) -> str:
        return f"{self.user}@{self.host}" if self.user else self.host

    def _base_command(self, exe: str) -> Executable:
        cmd = Executable(exe)
        cmd.add_default_arg(['-o', 'BatchMode=yes'])
        if self.key_file:
            cmd.add_default_arg(['-i', self.key_file])
        return cmd

    def _ssh(self, remote_command: str) -> str:
        cmd = self._base_command(self.ssh_exe)
        cmd.add_default_arg(self.target)
        logger.debug(f"Executing {cmd} {remote_command}")
        return cmd(remote_command, output=str, error=str)

    def _scp(self, *args: str) -> None:
        cmd = self._base_command(self.scp_exe)
        cmd.add_default_arg('-p')
        logger.debug(f"Executing {cmd} {' '.join(args)}")
        cmd(*args)

    @staticmethod
    def _quote(path: str) -> str:
        return "'" + path.replace("'", "'\"'\"'") + "'"

    @staticmethod
    def parse_listing(remote_directory: str, output: str, file_match_spec: str = '*') -> Dict[str, RemoteFileDescriptor]:
        """Parse the tab-delimited output of find -printf into descriptors."""
        listing = {}
        for line in output.splitlines():
            parts = line.split('\t')
            if len(parts) != 3:
                continue
            name, size, mtime = parts
            if not fnmatch.fnmatch(name, file_match_spec):
                continue
            listing[name] = RemoteFileDescriptor(name=name,
                                                 full_path=posixpath.join(remote_directory, name),
                                                 length=int(size),
                                                 modification_time=datetime.fromtimestamp(float(mtime), timezone.utc))
        return listing

    def get_remote_file_listing(self, remote_directory, file_match_spec='*'):
        # A missing directory is an empty listing; any other failure raises ProcessError
        target = self._quote(remote_directory)
        command = (f"[ ! -d {target} ] || find {target} -maxdepth 1 -type f "
                   f"-printf {self._quote(self.LISTING_FORMAT)}")
        output = self._ssh(command)
        return self.parse_listing(remote_directory, output or '', file_match_spec)

    def create_remote_directory(self, remote_directory):
        try:
            self._ssh(f"mkdir -p {self._quote(remote_directory)}")
        except ProcessError as e:
            logger.error(f"Error creating directory {remote_directory} on {self.host}: {e}")
            return False
        return True

    def delete_remote_directory(self, remote_directory, keep_empty_directory=False):
        target = self._quote(remote_directory)
        if keep_empty_directory:
            self._ssh(f"find {target} -mindepth 1 -delete")
        else:
            self._ssh(f"rm -rf {target}")

    def copy_file_to_remote(self, source_file_path, remote_directory):
        self._scp(source_file_path, f"{self.target}:{posixpath.join(remote_directory, '')}")

    def copy_file_from_remote(self, remote_file_path, local_directory):
        self._scp(f"{self.target}:{remote_file_path}", local_directory)

    def remote_lock_age_minutes(self, lock_path: str) -> Optional[float]:
        """Age of the remote lock file in minutes, or None if there is no lock file."""
        target = self._quote(lock_path)
        output = self._ssh(f"if [ -e {target} ]; then echo $(( $(date +%s) - $(stat -c %Y {target}) )); fi")
        output = (output or '').strip()
        if not output:
            return None
        return int(output) / 60.0

    def acquire_lock(self, remote_file_path, description, max_wait_minutes):
        """
        Create the remote lock file, first waiting for another holder to release it.

        A lock older than max_wait_minutes is reclaimed right away; otherwise we
        poll until it disappears, ages past max_wait_minutes, or we have waited
        max_wait_minutes ourselves, then delete whatever lock remains.
        """
        lock_path = remote_file_path + LOCK_FILE_SUFFIX
        start = time.time()
        try:
            while True:
                age = self.remote_lock_age_minutes(lock_path)
                if age is None:
                    break

                if age >= max_wait_minutes:
                    logger.info(f"Deleting aged lock file {lock_path} on {self.host}")
                    self._ssh(f"rm -f {self._quote(lock_path)}")
                    break

                if (time.time() - start) / 60.0 >= max_wait_minutes:
                    logger.warning(f"Lock file {lock_path} on {self.host} exceeded {max_wait_minutes} minutes; deleting it")
                    self._ssh(f"rm -f {self._quote(lock_path)}")
                    break

                logger.debug(f"Waiting for lock file {lock_path} on {self.host}")
                time.sleep(self.lock_poll_seconds)

            self._ssh(f"set -o noclobber; echo {self._quote(description)} > {self._quote(lock_path)}")
        except ProcessError as e:
            logger.warning(f"Unable to create lock file {lock_path} on {self.host}: {e}")
            return False
        return True

    def release_lock(self, remote_file_path):
        try:
            self._ssh(f"rm -f {self._quote(remote_file_path + LOCK_FILE_SUFFIX)}")
        except ProcessError as e:
            logger.warning(f"Unable to delete lock file {remote_file_path}{LOCK_FILE_SUFFIX} on {self.host}: {e}")


def copy_file_with_retry(transport: RemoteTransport, source_path: str, remote_directory: str,
                         max_retry_count: int = REMOTE_COPY_RETRY_COUNT,
                         retry_holdoff_seconds: float = REMOTE_COPY_RETRY_HOLDOFF_SEC) -> bool:
    """
    Copy one file to remote_directory, retrying with a holdoff that grows by 1.5x per failure.

    Returns False once the first attempt and max_retry_count retries have all failed.
    """
    holdoff = max(retry_holdoff_seconds, 0)
    attempt_count = 0
    while True:
        attempt_count += 1
        try:
            transport.copy_file_to_remote(source_path, remote_directory)
            return True
        except (OSError, ProcessError) as e:
            logger.error(f"Error copying {source_path} to {remote_directory} on {transport.host} "
                         f"(attempt {attempt_count}): {e}")

        if attempt_count > max_retry_count:
            return False

        time.sleep(holdoff)
        holdoff *= 1.5


def copy_files(transport: RemoteTransport, source_paths: Iterable[str], remote_directory: str,
               max_retry_count: int = REMOTE_COPY_RETRY_COUNT,
               retry_holdoff_seconds: float = REMOTE_COPY_RETRY_HOLDOFF_SEC) -> int:
    """Copy each file to remote_directory, returning the number of files that could not be copied."""
    failures = 0
    for source_path in source_paths:
        if not copy_file_with_retry(transport, source_path, remote_directory, max_retry_count, retry_holdoff_seconds):
            failures += 1
    return failures
