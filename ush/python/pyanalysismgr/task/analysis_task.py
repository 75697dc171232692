import os
from logging import getLogger

from wxflow import AttrDict, WorkflowException

from pyanalysismgr.core.job_context import JobContext
from pyanalysismgr.status.broker_logger import enable_broker_logging
from pyanalysismgr.status.status_file import StatusFile

logger = getLogger(__name__.split('.')[-1])


class AnalysisTask:
    """
    Common setup for the analysis manager tasks.

    The task configuration is the environment merged with the analysismgr
    section of parm/analysismgr.yaml. It must name the working directory
    (DATA) and may carry 'manager', 'job', 'status' and 'results' sections.
    """

    def __init__(self, config):
        self.task_config = AttrDict(config)

        if 'DATA' not in self.task_config:
            raise WorkflowException("Working directory (DATA) is not defined in the task configuration")

        manager = AttrDict(self.task_config.get('manager') or {})
        job = AttrDict(self.task_config.get('job') or {})

        self.status = self._create_status_file(manager)
        self.context = JobContext(manager, job, self.task_config.DATA, status=self.status,
                                  on_progress=self._report_progress)

        logger.debug(f"{type(self).__name__} initialized for {self.context.job_step_description()}")

    def _create_status_file(self, manager):
        status_config = AttrDict(self.task_config.get('status') or {})
        status_file_path = status_config.get('status_file')
        if not status_file_path:
            return None

        status = StatusFile(status_file_path,
                            manager_name=str(manager.get('MgrName', '')),
                            debug_level=int(manager.get('DebugLevel', 1)))

        broker_db = status_config.get('broker_db')
        if broker_db:
            enable_broker_logging(status, broker_db, int(status_config.get('broker_interval_minutes', 15)))

        return status

    def _report_progress(self, percent: float, message: str) -> None:
        logger.info(f"{percent:5.1f}% {message}")
        if self.status is not None:
            self.status.current_operation = message
            self.status.update_and_write(percent)

    def check_work_dir(self) -> None:
        if not os.path.isdir(self.context.work_dir):
            raise WorkflowException(f"Working directory not found: {self.context.work_dir}")
