from logging import getLogger

from wxflow import AttrDict, WorkflowException, logit

from pyanalysismgr.results.staging import ResultsStagingPipeline
from pyanalysismgr.status.status_codes import MgrStatus, TaskStatus, TaskStatusDetail
from pyanalysismgr.task.analysis_task import AnalysisTask

logger = getLogger(__name__.split('.')[-1])


class PackageResults(AnalysisTask):
    """
    Task to package the results of a finished job step and deliver them to
    the transfer directory, keeping a local copy when delivery fails.
    """

    def __init__(self, config):
        super().__init__(config)

        results_config = AttrDict(self.task_config.get('results') or {})
        for extension in results_config.get('extensions_to_skip') or []:
            self.context.add_result_file_extension_to_skip(extension)
        for file_name in results_config.get('files_to_skip') or []:
            self.context.add_result_file_to_skip(file_name)
        for file_name in results_config.get('files_to_keep') or []:
            self.context.add_result_file_to_keep(file_name)

        self.include_subdirectories = bool(results_config.get('include_subdirectories', False))
        self.subdirectories_to_skip = list(results_config.get('subdirectories_to_skip') or [])
        self.transfer_directory_override = str(results_config.get('transfer_directory_override') or '')

        self.pipeline = ResultsStagingPipeline(self.context, self.status)
        self.succeeded = False

    @logit(logger)
    def initialize(self) -> None:
        self.check_work_dir()

        if not self.context.results_directory_name:
            raise WorkflowException("Results directory job parameter not defined (OutputFolderName)")

        # The job parameters file always travels with the results
        self.context.add_result_file_to_keep(self.context.job_parameters_filename())

        if self.status is not None:
            self.status.job = self.context.job
            self.status.step = self.context.step
            self.status.dataset = self.context.dataset
            self.status.tool = str(self.context.get_param('StepTool', ''))
            self.status.work_dir_path = self.context.work_dir

    @logit(logger)
    def execute(self) -> bool:
        self.succeeded = self.pipeline.copy_results_to_transfer_directory(
            self.include_subdirectories, self.subdirectories_to_skip, self.transfer_directory_override)

        if self.succeeded:
            logger.info(f"Results for {self.context.job_step_description()} delivered")
        else:
            logger.error(f"Results for {self.context.job_step_description()} were not delivered: "
                         f"{self.context.status_message}")

        return self.succeeded

    @logit(logger)
    def finalize(self) -> None:
        job_info = f"{self.context.job_step_description()}, dataset {self.context.dataset}"

        if self.succeeded:
            if self.status is not None:
                self.status.update_idle(recent_job_info=f"Job {self.context.job}; results delivered",
                                        force_log_to_broker_db=True)
            return

        message = self.context.status_message or "Error packaging results"
        if self.status is not None:
            self.status.update_and_write(100, MgrStatus.RUNNING, TaskStatus.FAILED, TaskStatusDetail.CLOSING,
                                         most_recent_error_message=message, recent_job_info=job_info,
                                         force_log_to_broker_db=True)

        raise WorkflowException(f"Unable to package results for {job_info}: {message}")
