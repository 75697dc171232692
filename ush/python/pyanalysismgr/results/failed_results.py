import glob
import os
import shutil
import time
from datetime import datetime
from logging import getLogger

from pyanalysismgr.core.file_tools import copy_directory, create_directory_with_retry
from pyanalysismgr.core.job_context import (JOB_PARAM_GENERATED_FASTA_NAME, JOB_PARAM_TRANSFER_DIRECTORY_PATH,
                                            PEPTIDE_SEARCH_SECTION, STEP_PARAMETERS_SECTION, JobContext)
from pyanalysismgr.core.lock_file import DATE_TIME_FORMAT

logger = getLogger(__name__.split('.')[-1])

FAILED_RESULTS_FOLDER_INFO_TEXT = 'FailedResultsFolderInfo_'
FAILED_RESULTS_FOLDER_RETAIN_DAYS = 31
DMS_FAILED_RESULTS_DIRECTORY_NAME = 'DMS_FailedResults'
WORK_DIR_FILE_INFO_FILE = '_DMS_WorkDir_File_Info_.tsv'


def failed_results_directory(context: JobContext) -> str:
    """
    FailedResultsDirectoryPath (or the older FailedResultsFolderPath) manager parameter.

    When neither is defined, DMS_FailedResults beside the working directory.
    """
    name = 'FailedResultsDirectoryPath' if context.has_mgr_param('FailedResultsDirectoryPath') else 'FailedResultsFolderPath'
    path = str(context.get_mgr_param(name, '') or '')
    if path:
        return path

    parent = os.path.dirname(os.path.normpath(os.path.abspath(context.work_dir)))
    return os.path.join(parent, DMS_FAILED_RESULTS_DIRECTORY_NAME)


def write_work_dir_file_info(work_dir: str) -> str:
    """
    List every file below the working directory in _DMS_WorkDir_File_Info_.tsv.

    Columns are Date, Size, File and Subdirectory (relative to work_dir).
    Returns the path to the new file.
    """
    info_file_path = os.path.join(work_dir, WORK_DIR_FILE_INFO_FILE)
    rows = []
    for root, _dirs, files in os.walk(work_dir):
        subdirectory = os.path.relpath(root, work_dir)
        subdirectory = '' if subdirectory == '.' else subdirectory
        for name in sorted(files):
            if name == WORK_DIR_FILE_INFO_FILE and not subdirectory:
                continue
            st = os.stat(os.path.join(root, name))
            rows.append((datetime.fromtimestamp(st.st_mtime).strftime(DATE_TIME_FORMAT), st.st_size, name, subdirectory))

    with open(info_file_path, 'w') as f:
        f.write('\t'.join(['Date', 'Size', 'File', 'Subdirectory']) + '\n')
        for row in rows:
            f.write('\t'.join(str(value) for value in row) + '\n')

    return info_file_path


class FailedResultsArchiver:
    """
    Keep a copy of a failed job step's results on the local machine.

    Each archived results directory is accompanied by
    FailedResultsFolderInfo_<name>.txt; directories whose info file is older
    than 31 days are deleted and their info file renamed with an x_ prefix.
    """

    def __init__(self, context: JobContext, retain_days: float = FAILED_RESULTS_FOLDER_RETAIN_DAYS) -> None:
        self.context = context
        self.retain_days = retain_days

    def archive(self, source_directory_path: str, failed_results_directory_path: str = '') -> None:
        """Copy source_directory_path into the failed results directory; errors are logged."""
        if self.context.offline_mode:
            return

        if not failed_results_directory_path:
            failed_results_directory_path = failed_results_directory(self.context)

        try:
            create_directory_with_retry(failed_results_directory_path, 2, 5)
        except OSError as e:
            logger.error(f"Error copying results from {source_directory_path} to {failed_results_directory_path}: {e}")
            return

        results_name = os.path.basename(os.path.normpath(source_directory_path))
        info_file_path = os.path.join(failed_results_directory_path, f"{FAILED_RESULTS_FOLDER_INFO_TEXT}{results_name}.txt")
        try:
            self.write_info_file(info_file_path, results_name)
        except OSError as e:
            logger.error(f"Error creating the results folder info file at {info_file_path}: {e}")

        if not os.path.isdir(source_directory_path):
            logger.error(f"Results directory not found; cannot copy results: {source_directory_path}")
            return

        self.delete_old_failed_results_folders(failed_results_directory_path)

        target_directory_path = os.path.join(failed_results_directory_path, results_name)
        logger.info(f"Copying results directory to failed results archive: {target_directory_path}")

        try:
            copy_directory(source_directory_path, target_directory_path, True, 2, True)
        except OSError as e:
            logger.error(f"Error copying results from {source_directory_path} to {failed_results_directory_path}: {e}")
            return

        logger.info("Copy complete")

    def write_info_file(self, info_file_path: str, results_folder_name: str) -> None:
        context = self.context
        now = datetime.now().strftime(DATE_TIME_FORMAT)
        step_tool = context.get_param('StepTool', '')
        lines = [
            ('Date', now),
            ('ResultsFolderName', results_folder_name),
            ('Manager', context.manager_name),
            ('JobToolDescription', f"{step_tool}, {context.job_step_description()}"),
            ('Job', context.get_param('Job', '', STEP_PARAMETERS_SECTION)),
            ('Step', context.get_param('Step', '', STEP_PARAMETERS_SECTION)),
            ('Date', now),
            ('Tool', context.get_param('ToolName', '')),
            ('StepTool', step_tool),
            ('Dataset', context.dataset),
            ('XferFolder', context.get_param(JOB_PARAM_TRANSFER_DIRECTORY_PATH, '')),
            ('ParamFileName', context.get_param('ParamFileName', '')),
            ('SettingsFileName', context.get_param('SettingsFileName', '')),
            ('LegacyOrganismDBName', context.get_param('LegacyFastaFileName', '')),
            ('ProteinCollectionList', context.get_param('ProteinCollectionList', '')),
            ('ProteinOptionsList', context.get_param('ProteinOptions', '')),
            ('FastaFileName', context.get_param(JOB_PARAM_GENERATED_FASTA_NAME, '', PEPTIDE_SEARCH_SECTION)),
        ]
        with open(info_file_path, 'w') as f:
            for key, value in lines:
                f.write(f"{key}\t{'' if value is None else value}\n")

    def delete_old_failed_results_folders(self, failed_results_directory_path: str) -> None:
        pattern = os.path.join(glob.escape(failed_results_directory_path), FAILED_RESULTS_FOLDER_INFO_TEXT + '*')
        for info_file in glob.glob(pattern):
            age_days = (time.time() - os.path.getmtime(info_file)) / 86400.0
            if age_days < self.retain_days:
                continue

            info_name = os.path.basename(info_file)
            old_results_name = os.path.splitext(info_name)[0][len(FAILED_RESULTS_FOLDER_INFO_TEXT):]
            old_results_dir = os.path.join(failed_results_directory_path, old_results_name)

            try:
                if os.path.isdir(old_results_dir):
                    logger.info(f"Deleting old failed results directory: {old_results_dir}")
                    shutil.rmtree(old_results_dir)
            except OSError as e:
                logger.error(f"Error deleting old failed results directory {old_results_dir}: {e}")
                continue

            renamed_path = os.path.join(failed_results_directory_path, 'x_' + info_name)
            try:
                os.replace(info_file, renamed_path)
            except OSError as e:
                logger.error(f"Error renaming failed results info file to {renamed_path}: {e}")
