import os
import re
from datetime import datetime, timedelta, timezone
from logging import getLogger
from typing import Any, Callable, Dict, Iterable, Optional

import psutil
from wxflow import AttrDict

logger = getLogger(__name__.split('.')[-1])

JOB_PARAMETERS_SECTION = 'JobParameters'
STEP_PARAMETERS_SECTION = 'StepParameters'
PEPTIDE_SEARCH_SECTION = 'PeptideSearch'

# Search order used when a job parameter is requested without a section
SECTION_SEARCH_ORDER = [STEP_PARAMETERS_SECTION, JOB_PARAMETERS_SECTION, PEPTIDE_SEARCH_SECTION]

JOB_PARAM_DATASET_FOLDER_NAME = 'DatasetFolderName'
JOB_PARAM_DATASET_NAME = 'DatasetName'
JOB_PARAM_OUTPUT_FOLDER_NAME = 'OutputFolderName'
JOB_PARAM_TRANSFER_DIRECTORY_PATH = 'TransferDirectoryPath'
JOB_PARAM_GENERATED_FASTA_NAME = 'GeneratedFastaName'

AGGREGATION_JOB_DATASET = 'Aggregation'

ProgressCallback = Callable[[float, str], None]


class CaseInsensitiveSet:
    """Set of file names or suffixes compared without regard to case."""

    def __init__(self, items: Iterable[str] = ()):
        self._items = {}
        for item in items:
            self.add(item)

    def add(self, item: str) -> None:
        if item:
            self._items[item.lower()] = item

    def __contains__(self, item: str) -> bool:
        return item is not None and item.lower() in self._items

    def __iter__(self):
        return iter(self._items.values())

    def __len__(self) -> int:
        return len(self._items)


class RateLimiter:
    """
    Tracks when an action last ran and whether enough time has elapsed to run it again.

    Instances are owned by the caller so that independent managers (or tests)
    never share a hidden timer.
    """

    def __init__(self, interval_seconds: float, last_run: Optional[datetime] = None):
        self.interval = timedelta(seconds=interval_seconds)
        self.last_run = last_run

    def ready(self, now: Optional[datetime] = None) -> bool:
        if self.last_run is None:
            return True
        now = now or datetime.now(timezone.utc)
        return now - self.last_run >= self.interval

    def mark(self, now: Optional[datetime] = None) -> None:
        self.last_run = now or datetime.now(timezone.utc)

    def check_and_mark(self, now: Optional[datetime] = None) -> bool:
        """Return True and record the time if the interval has elapsed."""
        if not self.ready(now):
            return False
        self.mark(now)
        return True

    def reset(self) -> None:
        self.last_run = None


class JobContext:
    """
    Parameters and shared state for a single job step.

    Parameters
    ----------
    mgr_params : dict
        Manager parameters (OrgDBDir, FailedResultsFolderPath, DebugLevel, ...)
    job_params : dict
        Job parameters, keyed by section name (JobParameters, StepParameters, PeptideSearch)
    work_dir : str
        Local working directory for the job step
    status : StatusFile, optional
        Status reporter updated as the job step progresses
    on_progress : callable, optional
        Called as on_progress(percent, message) during long operations
    """

    def __init__(self, mgr_params: Dict[str, Any], job_params: Dict[str, Any], work_dir: str,
                 status=None, on_progress: Optional[ProgressCallback] = None) -> None:
        self.mgr_params = AttrDict(mgr_params or {})
        self.job_params = AttrDict(job_params or {})
        self.work_dir = work_dir
        self.status = status
        self.on_progress = on_progress
        self.status_message = ''
        self.offline_mode = bool(self.get_mgr_param('OfflineMode', False))

        self.result_files_to_skip = CaseInsensitiveSet()
        self.result_file_extensions_to_skip = CaseInsensitiveSet()
        self.result_files_to_keep = CaseInsensitiveSet()

    def get_param(self, name: str, default: Any = None, section: Optional[str] = None) -> Any:
        """Look up a job parameter, searching all sections when none is named."""
        sections = [section] if section else SECTION_SEARCH_ORDER
        for section_name in sections:
            values = self.job_params.get(section_name) or {}
            if name in values and values[name] is not None:
                return values[name]
        # Flat parameters are tolerated for jobs defined without sections
        if section is None and name in self.job_params and not isinstance(self.job_params[name], dict):
            return self.job_params[name]
        return default

    def set_param(self, section: str, name: str, value: Any) -> None:
        if section not in self.job_params:
            self.job_params[section] = AttrDict()
        self.job_params[section][name] = value

    def get_mgr_param(self, name: str, default: Any = None) -> Any:
        value = self.mgr_params.get(name)
        return default if value is None else value

    def has_mgr_param(self, name: str) -> bool:
        return name in self.mgr_params

    @property
    def manager_name(self) -> str:
        return str(self.get_mgr_param('MgrName', 'Unknown'))

    @property
    def debug_level(self) -> int:
        try:
            return int(self.get_mgr_param('DebugLevel', 1))
        except (TypeError, ValueError):
            return 1

    @property
    def job(self) -> int:
        return int(self.get_param('Job', 0, STEP_PARAMETERS_SECTION) or 0)

    @property
    def step(self) -> int:
        return int(self.get_param('Step', 0, STEP_PARAMETERS_SECTION) or 0)

    @property
    def dataset(self) -> str:
        return str(self.get_param(JOB_PARAM_DATASET_NAME, '') or '')

    @property
    def dataset_directory_name(self) -> str:
        name = self.get_param(JOB_PARAM_DATASET_FOLDER_NAME, '', STEP_PARAMETERS_SECTION)
        return str(name or self.dataset)

    @property
    def results_directory_name(self) -> str:
        return str(self.get_param(JOB_PARAM_OUTPUT_FOLDER_NAME, '') or '')

    @property
    def transfer_directory_path(self) -> str:
        return str(self.get_param(JOB_PARAM_TRANSFER_DIRECTORY_PATH, '') or '')

    def is_aggregation_dataset(self) -> bool:
        dataset = self.dataset
        return dataset.lower() == AGGREGATION_JOB_DATASET.lower() or is_data_package_dataset(dataset)

    def job_step_description(self) -> str:
        return f"job {self.job}, step {self.step}"

    def job_parameters_filename(self) -> str:
        return f"JobParameters_{self.job}.xml"

    def add_result_file_to_skip(self, file_name: str) -> None:
        self.result_files_to_skip.add(file_name)

    def add_result_file_extension_to_skip(self, extension: str) -> None:
        self.result_file_extensions_to_skip.add(extension)

    def add_result_file_to_keep(self, file_name: str) -> None:
        self.result_files_to_keep.add(file_name)

    def update_status_message(self, message: str) -> None:
        self.status_message = message
        if self.status is not None:
            self.status.current_operation = message

    def report_progress(self, percent: float, message: str = '') -> None:
        if self.on_progress is not None:
            self.on_progress(percent, message)


def is_data_package_dataset(dataset: str) -> bool:
    """Data package jobs use a pseudo dataset name like DataPackage_1234."""
    return bool(re.match(r'^DataPackage_\d+', dataset or '', re.IGNORECASE))


def check_plural(count: int, singular: str, plural: str) -> str:
    return singular if count == 1 else plural


def get_core_count() -> int:
    return psutil.cpu_count(logical=True) or os.cpu_count() or 1


def parse_thread_count(thread_count_text: str, max_threads_to_allow: int,
                       cores_on_machine: Optional[int] = None) -> int:
    """
    Convert a thread count setting into the number of cores to use.

    Parameters
    ----------
    thread_count_text : str
        'all', a percentage such as '90%', or an integer
    max_threads_to_allow : int
        Upper bound on the result; ignored when 0 or negative
    cores_on_machine : int, optional
        Override for the number of cores (defaults to the local core count)

    Returns
    -------
    int
        Core count, at least 1

    Notes
    -----
    A plain integer is treated as 0, meaning "use all cores", and is then
    capped by max_threads_to_allow.
    """
    thread_count_text = (thread_count_text or '').strip() or 'all'
    cores = cores_on_machine if cores_on_machine is not None else get_core_count()

    core_count = 0
    if thread_count_text.lower().startswith('all'):
        core_count = cores
    else:
        match = re.search(r'([0-9.]+)%', thread_count_text)
        if match:
            core_count = int(round(float(match.group(1)) / 100.0 * cores))
            if core_count < 1:
                core_count = 1
        else:
            # Integer values fall through to "all cores"
            core_count = 0

    if core_count == 0:
        core_count = cores

    if core_count > cores:
        core_count = cores

    if max_threads_to_allow > 0 and core_count > max_threads_to_allow:
        core_count = max_threads_to_allow

    return max(core_count, 1)
