import os
from logging import getLogger

from wxflow import AttrDict, WorkflowException, logit

from pyanalysismgr.cache.eviction import CacheEvictionPolicy, update_last_used_file
from pyanalysismgr.cache.server_cache import DEFAULT_SPACE_USAGE_THRESHOLD_GB, ServerCache
from pyanalysismgr.core.job_context import JOB_PARAM_GENERATED_FASTA_NAME, PEPTIDE_SEARCH_SECTION
from pyanalysismgr.task.analysis_task import AnalysisTask

logger = getLogger(__name__.split('.')[-1])

FREE_SPACE_THRESHOLD_PERCENT = 20
DEFAULT_ORG_DB_DIR_MAX_SIZE_GB = 200


class PurgeOrgDbCache(AnalysisTask):
    """
    Task to keep the local FASTA (organism database) cache within its space limits,
    and to purge the shared spectrum file cache when one is configured.

    The current job's FASTA file is marked as used and is never purged.
    """

    def __init__(self, config):
        super().__init__(config)

        purge_config = AttrDict(self.task_config.get('purge') or {})
        self.preview = bool(purge_config.get('preview', False))
        self.free_space_threshold_percent = float(purge_config.get('free_space_threshold_percent',
                                                                   FREE_SPACE_THRESHOLD_PERCENT))
        self.required_free_space_mb = float(purge_config.get('required_free_space_mb', 0))

        self.org_db_dir = str(self.context.get_mgr_param('OrgDBDir', '') or '')
        self.max_dir_size_gb = float(self.context.get_mgr_param('OrgDBDirMaxSizeGB', DEFAULT_ORG_DB_DIR_MAX_SIZE_GB))
        self.server_cache_dir = str(self.context.get_mgr_param('MSXMLCacheFolderPath', '') or '')
        self.server_cache_threshold_gb = float(self.context.get_mgr_param('ServerCacheMaxSizeGB',
                                                                          DEFAULT_SPACE_USAGE_THRESHOLD_GB))

        self.policy = CacheEvictionPolicy(debug_level=self.context.debug_level, preview=self.preview)

    @property
    def legacy_fasta_base_name(self) -> str:
        legacy_fasta_name = str(self.context.get_param('LegacyFastaFileName', '') or '')
        if not legacy_fasta_name or legacy_fasta_name.lower() == 'na':
            return ''
        return os.path.splitext(legacy_fasta_name)[0]

    @logit(logger)
    def initialize(self) -> None:
        if not self.org_db_dir:
            raise WorkflowException("Manager parameter OrgDBDir is not defined")

        if not os.path.isdir(self.org_db_dir):
            raise WorkflowException(f"Organism database directory not found: {self.org_db_dir}")

        fasta_name = self.context.get_param(JOB_PARAM_GENERATED_FASTA_NAME, '', PEPTIDE_SEARCH_SECTION)
        if fasta_name and not self.preview:
            fasta_path = os.path.join(self.org_db_dir, fasta_name)
            if os.path.isfile(fasta_path):
                update_last_used_file(fasta_path)
            else:
                logger.warning(f"FASTA file not found: {fasta_path}")

    @logit(logger)
    def execute(self) -> None:
        self.context.report_progress(0, f"Purging old FASTA files in {self.org_db_dir}")
        self.policy.purge_if_low_free_space(self.org_db_dir,
                                            self.free_space_threshold_percent,
                                            self.required_free_space_mb,
                                            self.max_dir_size_gb,
                                            self.legacy_fasta_base_name)

        if self.server_cache_dir:
            self.context.report_progress(50, f"Purging old files in {self.server_cache_dir}")
            ServerCache(self.server_cache_dir, self.context.manager_name).purge_old_files(self.server_cache_threshold_gb)

        self.context.report_progress(100, "Purge complete")

    @logit(logger)
    def finalize(self) -> None:
        count = len(self.policy.purged_files)
        action = 'would be deleted' if self.preview else 'deleted'
        logger.info(f"{count} cached {'file' if count == 1 else 'files'} {action} from {self.org_db_dir}")
        if self.policy.files_already_deleted:
            logger.info(f"{self.policy.files_already_deleted} files had already been deleted by another process")
        if self.policy.delete_errors:
            logger.warning(f"{self.policy.delete_errors} files could not be deleted")

        if self.status is not None:
            self.status.update_idle(recent_job_info=f"Purged {count} cached files from {self.org_db_dir}")
