import os
import re
import xml.etree.ElementTree as ET
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from logging import getLogger
from typing import Iterable, List, Optional, Tuple

import psutil
from wxflow import cp, rm_p

from pyanalysismgr.status.status_codes import IDLE_TASK_STATES, MgrStatus, TaskStatus, TaskStatusDetail

logger = getLogger(__name__.split('.')[-1])

ABORT_PROCESSING_NOW_FILENAME = 'AbortProcessingNow.txt'
MAX_ERROR_MESSAGE_COUNT_TO_CACHE = 10
MIN_FILE_WRITE_INTERVAL_SECONDS = 2
WRITE_FAILURE_LOG_THRESHOLD = 5
MINIMUM_LOG_FAILURE_INTERVAL_MINUTES = 10

LOCAL_TIME_FORMAT = '%Y-%m-%d %I:%M:%S %p'

_AMPERSAND = re.compile(r'[&]')
_LESS_OR_GREATER = re.compile(r'[<>]')


def validate_text_length(value: Optional[str], max_length: int, account_for_xml_escaping: bool = True) -> str:
    """
    Truncate value so that it fits in max_length characters once XML escaped.

    & becomes &amp; (4 extra characters), < and > become &lt; and &gt; (3 extra).
    """
    if not value:
        return ''

    text_length = len(value)
    if account_for_xml_escaping:
        text_to_check = value[:max_length]
        effective_length = (text_length + len(_AMPERSAND.findall(text_to_check)) * 4
                            + len(_LESS_OR_GREATER.findall(text_to_check)) * 3)
    else:
        effective_length = text_length

    if effective_length <= max_length:
        return value
    return value[:max_length - (effective_length - text_length)]


def iso_8601_utc(value: datetime) -> str:
    """Format as 2017-07-06T23:23:14.337Z (millisecond precision)."""
    value = value.astimezone(timezone.utc)
    return value.strftime('%Y-%m-%dT%H:%M:%S.') + f"{value.microsecond // 1000:03d}Z"


def local_time(value: datetime) -> str:
    return value.astimezone().strftime(LOCAL_TIME_FORMAT)


@dataclass
class StatusSnapshot:
    """Everything written to the status XML for a single update."""
    mgr_name: str = ''
    mgr_status: MgrStatus = MgrStatus.STOPPED
    remote_mgr_name: str = ''
    last_update: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    task_start_time: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    cpu_utilization: float = 0.0
    free_memory_mb: float = 0.0
    process_id: int = 0
    prog_runner_process_id: int = 0
    prog_runner_core_usage: float = 0.0
    recent_error_messages: List[str] = field(default_factory=list)
    tool: str = ''
    task_status: TaskStatus = TaskStatus.NO_TASK
    task_status_detail: TaskStatusDetail = TaskStatusDetail.NO_TASK
    run_time_hours: float = 0.0
    progress: float = 0.0
    current_operation: str = ''
    job: int = 0
    step: int = 0
    dataset: str = ''
    work_dir_path: str = ''
    most_recent_log_message: str = ''
    most_recent_job_info: str = ''
    spectrum_count: int = 0
    core_usage_history: List[Tuple[datetime, float]] = field(default_factory=list)

    @property
    def most_recent_error_message(self) -> str:
        """The newest error plus up to two older ones, newline separated."""
        return '\n'.join(self.recent_error_messages[:3])


def _sub(parent: ET.Element, tag: str, text: str = '') -> ET.Element:
    element = ET.SubElement(parent, tag)
    element.text = text
    return element


def generate_status_xml(snapshot: StatusSnapshot) -> str:
    """
    Render the status document.

    Root/Manager holds the manager state and recent errors, Root/Task the
    current task, and Root/ProgRunnerCoreUsage (only while an external
    program is running) the recent core usage samples.
    """
    root = ET.Element('Root')

    manager = _sub(root, 'Manager')
    _sub(manager, 'MgrName', validate_text_length(snapshot.mgr_name, 128))
    _sub(manager, 'RemoteMgrName', validate_text_length(snapshot.remote_mgr_name, 128))
    _sub(manager, 'MgrStatus', validate_text_length(str(snapshot.mgr_status), 50))

    last_update_local = local_time(snapshot.last_update)
    manager.append(ET.Comment(f"Local status log time: {last_update_local}"))
    manager.append(ET.Comment(f"Local last start time: {local_time(snapshot.task_start_time)}"))

    _sub(manager, 'LastUpdate', iso_8601_utc(snapshot.last_update))
    _sub(manager, 'LastStartTime', iso_8601_utc(snapshot.task_start_time))
    _sub(manager, 'LastUpdateLocal', last_update_local)
    _sub(manager, 'LastStartTimeLocal', local_time(snapshot.task_start_time))
    _sub(manager, 'CPUUtilization', f"{snapshot.cpu_utilization:.1f}")
    _sub(manager, 'FreeMemoryMB', f"{snapshot.free_memory_mb:.1f}")
    _sub(manager, 'ProcessID', str(snapshot.process_id))
    _sub(manager, 'ProgRunnerProcessID', str(snapshot.prog_runner_process_id))
    _sub(manager, 'ProgRunnerCoreUsage', f"{snapshot.prog_runner_core_usage:.2f}")

    errors = _sub(manager, 'RecentErrorMessages')
    if not snapshot.recent_error_messages:
        _sub(errors, 'ErrMsg')
    for message in snapshot.recent_error_messages:
        _sub(errors, 'ErrMsg', validate_text_length(message, 1950))

    task = _sub(root, 'Task')
    _sub(task, 'Tool', validate_text_length(snapshot.tool, 128))
    _sub(task, 'Status', validate_text_length(str(snapshot.task_status), 50))

    run_time_hours = 0.0 if snapshot.task_status in IDLE_TASK_STATES else snapshot.run_time_hours
    _sub(task, 'Duration', f"{run_time_hours:.2f}")
    _sub(task, 'DurationMinutes', f"{run_time_hours * 60:.1f}")
    _sub(task, 'Progress', f"{snapshot.progress:.2f}")
    _sub(task, 'CurrentOperation', validate_text_length(snapshot.current_operation, 255))

    details = _sub(task, 'TaskDetails')
    _sub(details, 'Status', validate_text_length(str(snapshot.task_status_detail), 50))
    _sub(details, 'Job', str(snapshot.job))
    _sub(details, 'Step', str(snapshot.step))
    _sub(details, 'Dataset', validate_text_length(snapshot.dataset, 255))
    _sub(details, 'WorkDirPath', snapshot.work_dir_path or '')
    _sub(details, 'MostRecentLogMessage', validate_text_length(snapshot.most_recent_log_message, 1950))
    _sub(details, 'MostRecentJobInfo', validate_text_length(snapshot.most_recent_job_info, 255))
    _sub(details, 'SpectrumCount', str(snapshot.spectrum_count))

    if snapshot.prog_runner_process_id != 0 and snapshot.core_usage_history:
        core_usage = _sub(root, 'ProgRunnerCoreUsage')
        core_usage.set('Count', str(len(snapshot.core_usage_history)))
        for sample_time, sample_value in snapshot.core_usage_history:
            sample = _sub(core_usage, 'CoreUsageSample', f"{sample_value:.1f}")
            sample.set('Date', local_time(sample_time))

    ET.indent(root, space='  ')
    body = ET.tostring(root, encoding='unicode')
    return "<!--Analysis manager job status-->\n" + body


class StatusFile:
    """
    Status reporter for one manager process.

    Parameters
    ----------
    file_path : str
        Status XML path; AbortProcessingNow.txt is looked for in the same directory
    manager_name : str
        Reported as MgrName
    debug_level : int
        Manager debug level
    message_queue : object, optional
        Anything with send(xml_text, manager_name); receives every update
    broker_logger : BrokerStatusLogger, optional
        Receives a snapshot on every update and stores it on its own interval
    offline_job_status_path : str, optional
        When running offline, the status file is also copied here
    """

    def __init__(self, file_path: str, manager_name: str = '', debug_level: int = 1,
                 message_queue=None, broker_logger=None, offline_job_status_path: str = '') -> None:
        self.file_path = file_path
        self.mgr_name = manager_name
        self.remote_mgr_name = ''
        self.debug_level = debug_level
        self.message_queue = message_queue
        self.broker_logger = broker_logger
        self.offline_job_status_path = offline_job_status_path

        self.mgr_status = MgrStatus.STOPPED
        self.task_status = TaskStatus.NO_TASK
        self.task_status_detail = TaskStatusDetail.NO_TASK
        self.task_start_time = datetime.now(timezone.utc)
        self.current_operation = ''
        self.most_recent_job_info = ''
        self.cpu_utilization = 0.0

        self.abort_processing_now = False

        self._recent_error_messages = deque(maxlen=MAX_ERROR_MESSAGE_COUNT_TO_CACHE)
        self._core_usage_history: Iterable[Tuple[datetime, float]] = ()
        self._last_file_write_time: Optional[datetime] = None
        self._writing_error_count = 0
        self._last_message_queue_error_time: Optional[datetime] = None

        self.clear_cached_info()

    @property
    def status_directory(self) -> str:
        return os.path.dirname(self.file_path) or '.'

    @property
    def recent_error_messages(self) -> List[str]:
        return list(self._recent_error_messages)

    @property
    def core_usage_history(self) -> List[Tuple[datetime, float]]:
        # Copy first; the sampling thread may append while we iterate
        return list(self._core_usage_history)

    def clear_cached_info(self) -> None:
        self.progress = 0.0
        self.spectrum_count = 0
        self.dataset = ''
        self.work_dir_path = ''
        self.job = 0
        self.step = 0
        self.tool = ''
        self.prog_runner_process_id = 0
        self.prog_runner_core_usage = 0.0
        self.most_recent_log_message = ''
        self._recent_error_messages.clear()

    def check_for_abort_processing_file(self) -> None:
        """Consume AbortProcessingNow.txt by renaming it to .done and set the abort flag."""
        path_to_check = os.path.join(self.status_directory, ABORT_PROCESSING_NOW_FILENAME)
        if not os.path.exists(path_to_check):
            return

        self.abort_processing_now = True
        try:
            os.replace(path_to_check, path_to_check + '.done')
        except OSError as e:
            logger.warning(f"Unable to rename {path_to_check}: {e}")

    def store_new_error_message(self, error_message: Optional[str], clear_existing_messages: bool = False) -> None:
        """Push a message onto the recent error list (newest first)."""
        if clear_existing_messages:
            self._recent_error_messages.clear()
            if error_message:
                self._recent_error_messages.append(error_message)
            return

        if error_message:
            self._recent_error_messages.appendleft(error_message)

    def store_recent_error_messages(self, recent_error_messages: Optional[Iterable[str]]) -> None:
        """Replace the recent errors with the given messages (newest first), skipping blanks."""
        self._recent_error_messages.clear()
        if recent_error_messages is None:
            return
        for message in recent_error_messages:
            if len(self._recent_error_messages) >= MAX_ERROR_MESSAGE_COUNT_TO_CACHE:
                break
            if message and message.strip():
                self._recent_error_messages.append(message)

    def store_core_usage_history(self, core_usage_history: Iterable[Tuple[datetime, float]]) -> None:
        self._core_usage_history = core_usage_history

    def _store_recent_job_info(self, job_info: Optional[str]) -> None:
        if job_info:
            self.most_recent_job_info = job_info

    def run_time_hours(self, now: Optional[datetime] = None) -> float:
        now = now or datetime.now(timezone.utc)
        return (now - self.task_start_time).total_seconds() / 3600.0

    def snapshot(self, last_update: Optional[datetime] = None, use_performance_counters: bool = True) -> StatusSnapshot:
        last_update = last_update or datetime.now(timezone.utc)
        cpu = 0.0
        free_memory_mb = 0.0
        try:
            if use_performance_counters:
                cpu = psutil.cpu_percent(interval=None)
            free_memory_mb = psutil.virtual_memory().available / 1024.0 / 1024.0
        except (OSError, RuntimeError) as e:
            logger.debug(f"Unable to determine CPU utilization or free memory: {e}")
        self.cpu_utilization = cpu

        return StatusSnapshot(mgr_name=self.mgr_name,
                              mgr_status=self.mgr_status,
                              remote_mgr_name=self.remote_mgr_name,
                              last_update=last_update,
                              task_start_time=self.task_start_time,
                              cpu_utilization=cpu,
                              free_memory_mb=free_memory_mb,
                              process_id=os.getpid(),
                              prog_runner_process_id=self.prog_runner_process_id,
                              prog_runner_core_usage=self.prog_runner_core_usage,
                              recent_error_messages=self.recent_error_messages,
                              tool=self.tool,
                              task_status=self.task_status,
                              task_status_detail=self.task_status_detail,
                              run_time_hours=self.run_time_hours(last_update),
                              progress=self.progress,
                              current_operation=self.current_operation,
                              job=self.job,
                              step=self.step,
                              dataset=self.dataset,
                              work_dir_path=self.work_dir_path,
                              most_recent_log_message=self.most_recent_log_message,
                              most_recent_job_info=self.most_recent_job_info,
                              spectrum_count=self.spectrum_count,
                              core_usage_history=self.core_usage_history)

    def generate_status_xml(self, last_update: Optional[datetime] = None) -> str:
        return generate_status_xml(self.snapshot(last_update))

    def update_and_write(self,
                         progress: float,
                         mgr_status: Optional[MgrStatus] = None,
                         task_status: Optional[TaskStatus] = None,
                         task_status_detail: Optional[TaskStatusDetail] = None,
                         spectrum_count: Optional[int] = None,
                         most_recent_log_message: Optional[str] = None,
                         most_recent_error_message: Optional[str] = None,
                         recent_job_info: Optional[str] = None,
                         force_log_to_broker_db: bool = False) -> None:
        """
        Update the progress (and any other supplied fields), then write the status.

        A supplied most_recent_error_message replaces the cached error list.
        """
        if mgr_status is not None:
            self.mgr_status = mgr_status
        if task_status is not None:
            self.task_status = task_status
        if task_status_detail is not None:
            self.task_status_detail = task_status_detail
        self.progress = progress
        if spectrum_count is not None:
            self.spectrum_count = spectrum_count
        if most_recent_log_message is not None:
            self.most_recent_log_message = most_recent_log_message
        if most_recent_error_message is not None:
            self.store_new_error_message(most_recent_error_message, clear_existing_messages=True)
        self._store_recent_job_info(recent_job_info)

        self.write_status_file(force_log_to_broker_db)

    def update_idle(self, manager_idle_message: str = 'Manager Idle',
                    recent_error_messages: Optional[Iterable[str]] = None,
                    recent_job_info: str = '', force_log_to_broker_db: bool = False) -> None:
        """Report that the manager is running but has no task."""
        if recent_error_messages is not None:
            recent_error_messages = list(recent_error_messages)
        self.clear_cached_info()
        if recent_error_messages is not None:
            self.store_recent_error_messages(recent_error_messages)
        self.mgr_status = MgrStatus.RUNNING
        self.task_status = TaskStatus.NO_TASK
        self.task_status_detail = TaskStatusDetail.NO_TASK
        self.most_recent_log_message = manager_idle_message
        self._store_recent_job_info(recent_job_info)
        self.offline_job_status_path = ''

        self.write_status_file(force_log_to_broker_db, use_performance_counters=False)

    def update_disabled(self, manager_status: MgrStatus = MgrStatus.DISABLED_LOCAL,
                        manager_disable_message: str = 'Manager Disabled',
                        recent_error_messages: Iterable[str] = (),
                        recent_job_info: Optional[str] = None) -> None:
        """Report a disabled manager; always forces a broker database update."""
        recent_error_messages = list(recent_error_messages)
        self.clear_cached_info()

        if manager_status not in (MgrStatus.DISABLED_LOCAL, MgrStatus.DISABLED_MC):
            manager_status = MgrStatus.DISABLED_LOCAL

        self.mgr_status = manager_status
        self.task_status = TaskStatus.NO_TASK
        self.task_status_detail = TaskStatusDetail.NO_TASK
        self.most_recent_log_message = manager_disable_message
        self._store_recent_job_info(recent_job_info)
        self.store_recent_error_messages(recent_error_messages)

        self.write_status_file(True, use_performance_counters=False)

    def update_flag_file_exists(self, recent_error_messages: Iterable[str] = (),
                                recent_job_info: Optional[str] = None) -> None:
        recent_error_messages = list(recent_error_messages)
        self.clear_cached_info()
        self.mgr_status = MgrStatus.STOPPED_ERROR
        self.most_recent_log_message = 'Flag file'
        self.store_recent_error_messages(recent_error_messages)
        self._store_recent_job_info(recent_job_info)

        self.write_status_file(True, use_performance_counters=False)

    def update_close(self, manager_idle_message: str, recent_error_messages: Iterable[str] = (),
                     job_info: Optional[str] = None, force_log_to_broker_db: bool = False) -> None:
        recent_error_messages = list(recent_error_messages)
        self.clear_cached_info()
        self.mgr_status = MgrStatus.STOPPED
        self.task_status = TaskStatus.NO_TASK
        self.task_status_detail = TaskStatusDetail.NO_TASK
        self.most_recent_log_message = manager_idle_message
        self.store_recent_error_messages(recent_error_messages)
        self._store_recent_job_info(job_info)

        self.write_status_file(force_log_to_broker_db, use_performance_counters=False)

    def write_status_file(self, force_log_to_broker_db: bool = False, use_performance_counters: bool = True) -> None:
        """
        Write the status XML to disk (at most every 2 seconds), then forward it
        to the message queue and the broker database, then look for the abort file.
        """
        snapshot = self.snapshot(use_performance_counters=use_performance_counters)

        try:
            xml_text = generate_status_xml(snapshot)
            self._write_status_file_to_disk(xml_text)
        except (OSError, ValueError) as e:
            logger.warning(f"Error generating status info: {e}")
            xml_text = ''

        if self.message_queue is not None:
            self._log_status_to_message_queue(xml_text)

        if self.broker_logger is not None:
            self.broker_logger.log_status(snapshot, force_log_to_broker_db)

        self.check_for_abort_processing_file()

    def _log_status_to_message_queue(self, xml_text: str) -> None:
        try:
            self.message_queue.send(xml_text, self.mgr_name)
        except Exception as e:
            # Connection problems surface as library-specific exceptions; throttle the log noise
            now = datetime.now(timezone.utc)
            last = self._last_message_queue_error_time
            if last is None or (now - last).total_seconds() / 60.0 >= MINIMUM_LOG_FAILURE_INTERVAL_MINUTES:
                self._last_message_queue_error_time = now
                logger.error(f"Error sending status to the message queue: {e}")

    def _write_status_file_to_disk(self, xml_text: str) -> None:
        now = datetime.now(timezone.utc)
        if self._last_file_write_time is not None and \
                (now - self._last_file_write_time).total_seconds() < MIN_FILE_WRITE_INTERVAL_SECONDS:
            return

        if not self.file_path:
            return

        stem = os.path.splitext(os.path.basename(self.file_path))[0]
        temp_path = os.path.join(self.status_directory, stem + '_Temp.xml')

        self._last_file_write_time = now

        if self._write_text(temp_path, xml_text):
            try:
                cp(temp_path, self.file_path)
            except OSError as e:
                logger.warning(f"Unable to copy temporary status file to the final status file "
                               f"({os.path.basename(temp_path)} to {os.path.basename(self.file_path)}): {e}")
            try:
                rm_p(temp_path)
            except OSError as e:
                logger.warning(f"Unable to delete temporary status file ({os.path.basename(temp_path)}): {e}")
        else:
            self._write_text(self.file_path, xml_text)

        if not self.offline_job_status_path:
            return

        try:
            cp(self.file_path, self.offline_job_status_path)
        except OSError as e:
            logger.debug(f"Error copying the status file to {self.offline_job_status_path}: {e}")

    def _write_text(self, path: str, xml_text: str) -> bool:
        try:
            with open(path, 'w', encoding='utf-8') as f:
                f.write(xml_text + '\n')
        except OSError as e:
            self._writing_error_count += 1
            # Log on the 5th consecutive failure, then every 10th
            if self._writing_error_count == WRITE_FAILURE_LOG_THRESHOLD or \
                    (self._writing_error_count > WRITE_FAILURE_LOG_THRESHOLD and self._writing_error_count % 10 == 0):
                logger.warning(f"Error writing status file {os.path.basename(path)}: {e}")
            return False

        self._writing_error_count = 0
        return True
