from logging import getLogger

from wxflow import AttrDict, WorkflowException, logit

from pyanalysismgr.core.job_context import JOB_PARAM_GENERATED_FASTA_NAME, PEPTIDE_SEARCH_SECTION
from pyanalysismgr.status.status_codes import MgrStatus, TaskStatus, TaskStatusDetail
from pyanalysismgr.task.analysis_task import AnalysisTask
from pyanalysismgr.transfer.remote_transfer import RemoteTransferUtility
from pyanalysismgr.transfer.transport import LocalTransport, SshTransport

logger = getLogger(__name__.split('.')[-1])


class StageRemoteWorkDir(AnalysisTask):
    """
    Task to push a job step's working directory (and its generated FASTA file)
    to a remote processing host.

    The remote host is reached over ssh unless the 'remote' section sets
    transport: local, in which case the remote paths are a mounted share.
    """

    def __init__(self, config):
        super().__init__(config)

        remote = AttrDict(self.task_config.get('remote') or {})
        if not remote.get('host'):
            raise WorkflowException("Remote host is not defined in the 'remote' section")

        if str(remote.get('transport', 'ssh')).lower() == 'local':
            transport = LocalTransport(remote.host)
        else:
            transport = SshTransport(remote.host, user=remote.get('user'), key_file=remote.get('key_file'))

        self.files_to_ignore = list(remote.get('files_to_ignore') or [])
        self.transfer = RemoteTransferUtility(self.context, transport,
                                              remote_work_dir_root=str(remote.get('work_dir_root', '')),
                                              remote_org_db_dir=str(remote.get('org_db_dir', '')),
                                              remote_task_queue_dir=str(remote.get('task_queue_dir', '')))
        self.succeeded = False

    @logit(logger)
    def initialize(self) -> None:
        self.check_work_dir()

        if not self.transfer.remote_work_dir_root:
            raise WorkflowException("Remote working directory root (work_dir_root) is not defined")

        timestamp = self.transfer.update_remote_timestamp()
        logger.info(f"Remote tracking files will use base name {self.transfer.remote_work_dir_name}_{timestamp}")

        if self.status is not None:
            self.status.update_and_write(0, MgrStatus.RUNNING, TaskStatus.RUNNING, TaskStatusDetail.RETRIEVING_RESOURCES)

    @logit(logger)
    def execute(self) -> bool:
        if self.context.get_param(JOB_PARAM_GENERATED_FASTA_NAME, '', PEPTIDE_SEARCH_SECTION):
            self.context.report_progress(10, f"Copying FASTA file to {self.transfer.remote_host}")
            if not self.transfer.copy_generated_org_db_to_remote():
                self.context.update_status_message(f"Error copying FASTA file to {self.transfer.remote_host}")
                return False

        self.context.report_progress(50, f"Copying working directory files to {self.transfer.remote_host}")
        self.succeeded = self.transfer.copy_work_dir_files_to_remote(self.files_to_ignore)
        return self.succeeded

    @logit(logger)
    def finalize(self) -> None:
        if self.succeeded:
            logger.info(f"Staged {self.context.job_step_description()} in "
                        f"{self.transfer.remote_job_step_work_dir} on {self.transfer.remote_host}")
            return

        message = self.context.status_message or f"Error staging files on {self.transfer.remote_host}"
        if self.status is not None:
            self.status.update_and_write(0, MgrStatus.RUNNING, TaskStatus.FAILED, TaskStatusDetail.CLOSING,
                                         most_recent_error_message=message, force_log_to_broker_db=True)
        raise WorkflowException(message)
