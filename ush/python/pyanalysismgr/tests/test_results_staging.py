import os
import shutil
import tempfile
import time

import pytest

from pyanalysismgr.core.job_context import JobContext
from pyanalysismgr.results.failed_results import (DMS_FAILED_RESULTS_DIRECTORY_NAME, FAILED_RESULTS_FOLDER_INFO_TEXT,
                                                  WORK_DIR_FILE_INFO_FILE, FailedResultsArchiver,
                                                  failed_results_directory, write_work_dir_file_info)
from pyanalysismgr.results.staging import ResultsStagingPipeline, file_needs_overwrite
from pyanalysismgr.status.status_codes import TaskStatusDetail

RESULTS_NAME = "SEQ202403051200_Auto1234"
DATASET = "QC_Shew_16_01_R1"


class RecordingStatus:
    def __init__(self):
        self.current_operation = ""
        self.details = []

    def update_and_write(self, progress, mgr_status=None, task_status=None, task_status_detail=None, **kwargs):
        self.details.append(task_status_detail)


@pytest.fixture
def dirs():
    base_dir = tempfile.mkdtemp()
    paths = {name: os.path.join(base_dir, name) for name in ("work", "transfer", "failed")}
    os.makedirs(paths["work"])
    os.makedirs(paths["transfer"])
    yield paths
    shutil.rmtree(base_dir)


def write_file(path, text="data", age_days=0):
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "w") as f:
        f.write(text)
    if age_days:
        stamp = time.time() - age_days * 86400
        os.utime(path, (stamp, stamp))
    return path


def make_pipeline(dirs, dataset=DATASET, results_name=RESULTS_NAME, offline=False, transfer=None):
    context = JobContext({"MgrName": "Pub-12-1", "FailedResultsFolderPath": dirs["failed"], "OfflineMode": offline},
                         {"StepParameters": {"Job": 1234, "Step": 5, "StepTool": "MSGFPlus"},
                          "JobParameters": {"DatasetName": dataset,
                                            "OutputFolderName": results_name,
                                            "TransferDirectoryPath": dirs["transfer"] if transfer is None else transfer}},
                         dirs["work"], status=RecordingStatus())
    context.add_result_file_extension_to_skip(".raw")
    context.add_result_file_to_skip("JobParameters_1234.xml.bak")
    return ResultsStagingPipeline(context, retry_count=1, retry_holdoff_seconds=1)


def test_results_are_delivered_and_skipped_files_stay(dirs):
    write_file(os.path.join(dirs["work"], "result.txt"))
    write_file(os.path.join(dirs["work"], "skip_me.raw"))
    write_file(os.path.join(dirs["work"], "JobParameters_1234.xml.bak"))
    write_file(os.path.join(dirs["work"], ".result.txt.swp"))

    pipeline = make_pipeline(dirs)
    assert pipeline.copy_results_to_transfer_directory()

    delivered = os.path.join(dirs["transfer"], DATASET, RESULTS_NAME)
    assert sorted(os.listdir(delivered)) == ["result.txt"]
    assert sorted(os.listdir(os.path.join(dirs["work"], RESULTS_NAME))) == ["result.txt"]
    assert os.path.exists(os.path.join(dirs["work"], "skip_me.raw"))
    assert not os.path.exists(os.path.join(dirs["work"], "result.txt"))

    status = pipeline.status
    assert status.details == [TaskStatusDetail.PACKAGING_RESULTS, TaskStatusDetail.PACKAGING_RESULTS,
                              TaskStatusDetail.DELIVERING_RESULTS]


def test_keep_list_overrides_skip_lists(dirs):
    write_file(os.path.join(dirs["work"], "keep_me.raw"))
    pipeline = make_pipeline(dirs)
    pipeline.context.add_result_file_to_keep("KEEP_ME.RAW")

    assert pipeline.is_result_file("keep_me.raw")
    assert not pipeline.is_result_file("other.RAW")
    assert not pipeline.is_result_file("bad\tname.txt")
    assert not pipeline.is_result_file("café.txt")


def test_file_needs_overwrite(dirs):
    source = write_file(os.path.join(dirs["work"], "source.txt"), "same", age_days=2)
    assert not file_needs_overwrite(source, os.path.join(dirs["transfer"], "missing.txt"))

    same_and_newer = write_file(os.path.join(dirs["transfer"], "same.txt"), "same", age_days=1)
    assert not file_needs_overwrite(source, same_and_newer)

    same_but_older = write_file(os.path.join(dirs["transfer"], "older.txt"), "same", age_days=3)
    assert file_needs_overwrite(source, same_but_older)

    different_length = write_file(os.path.join(dirs["transfer"], "longer.txt"), "much longer", age_days=1)
    assert file_needs_overwrite(source, different_length)


def test_existing_transfer_files_are_only_replaced_when_needed(dirs):
    delivered = os.path.join(dirs["transfer"], DATASET, RESULTS_NAME)
    write_file(os.path.join(delivered, "unchanged.txt"), "same")
    write_file(os.path.join(delivered, "changed.txt"), "old contents that are longer")

    write_file(os.path.join(dirs["work"], "unchanged.txt"), "same", age_days=1)
    write_file(os.path.join(dirs["work"], "changed.txt"), "new")

    assert make_pipeline(dirs).copy_results_to_transfer_directory()

    with open(os.path.join(delivered, "changed.txt")) as f:
        assert f.read() == "new"
    with open(os.path.join(delivered, "unchanged.txt")) as f:
        assert f.read() == "same"


def test_subdirectories_keep_their_structure(dirs):
    write_file(os.path.join(dirs["work"], "result.txt"))
    write_file(os.path.join(dirs["work"], "plots", "tic.png"))
    write_file(os.path.join(dirs["work"], "plots", "nested", "bpi.png"))
    write_file(os.path.join(dirs["work"], "scratch", "temp.txt"))
    os.makedirs(os.path.join(dirs["work"], "empty"))

    pipeline = make_pipeline(dirs)
    assert pipeline.copy_results_to_transfer_directory(include_subdirectories=True, subdirectories_to_skip=["Scratch"])

    delivered = os.path.join(dirs["transfer"], DATASET, RESULTS_NAME)
    assert os.path.exists(os.path.join(delivered, "plots", "tic.png"))
    assert os.path.exists(os.path.join(delivered, "plots", "nested", "bpi.png"))
    assert not os.path.exists(os.path.join(delivered, "scratch"))
    assert not os.path.exists(os.path.join(delivered, "empty"))
    assert os.path.exists(os.path.join(dirs["work"], "scratch", "temp.txt"))


def test_aggregation_jobs_skip_the_dataset_directory(dirs):
    write_file(os.path.join(dirs["work"], "result.txt"))
    transfer = os.path.join(dirs["transfer"], "DataPkg_1234")

    pipeline = make_pipeline(dirs, dataset="Aggregation", transfer=transfer)
    assert pipeline.copy_results_to_transfer_directory()
    assert os.path.exists(os.path.join(transfer, RESULTS_NAME, "result.txt"))


def test_transfer_directory_override(dirs):
    write_file(os.path.join(dirs["work"], "result.txt"))
    override = os.path.join(dirs["transfer"], "override")
    os.makedirs(override)

    assert make_pipeline(dirs).copy_results_to_transfer_directory(transfer_directory_override=override)
    assert os.path.exists(os.path.join(override, DATASET, RESULTS_NAME, "result.txt"))


def test_missing_results_name_fails(dirs):
    pipeline = make_pipeline(dirs, results_name="")
    assert not pipeline.make_results_directory()
    assert not pipeline.copy_results_to_transfer_directory()
    assert pipeline.context.status_message == "Error making results directory"


def test_missing_transfer_directory_archives_results(dirs):
    write_file(os.path.join(dirs["work"], "result.txt"))
    pipeline = make_pipeline(dirs, transfer=os.path.join(dirs["transfer"], "missing"))

    assert not pipeline.copy_results_to_transfer_directory()

    archived = os.path.join(dirs["failed"], RESULTS_NAME)
    assert os.path.exists(os.path.join(archived, "result.txt"))

    info_file = os.path.join(dirs["failed"], f"{FAILED_RESULTS_FOLDER_INFO_TEXT}{RESULTS_NAME}.txt")
    with open(info_file) as f:
        lines = dict(line.rstrip("\n").split("\t", 1) for line in f)
    assert lines["ResultsFolderName"] == RESULTS_NAME
    assert lines["Manager"] == "Pub-12-1"
    assert lines["Dataset"] == DATASET
    assert lines["JobToolDescription"] == "MSGFPlus, job 1234, step 5"
    assert pipeline.context.status_message.startswith("Transfer directory not found")


def test_old_failed_results_are_removed(dirs):
    old_results = os.path.join(dirs["failed"], "SEQ201901010000_Auto1")
    write_file(os.path.join(old_results, "result.txt"))
    write_file(os.path.join(dirs["failed"], f"{FAILED_RESULTS_FOLDER_INFO_TEXT}SEQ201901010000_Auto1.txt"), age_days=40)

    recent_results = os.path.join(dirs["failed"], "SEQ202403010000_Auto2")
    write_file(os.path.join(recent_results, "result.txt"))
    write_file(os.path.join(dirs["failed"], f"{FAILED_RESULTS_FOLDER_INFO_TEXT}SEQ202403010000_Auto2.txt"), age_days=3)

    source = os.path.join(dirs["work"], RESULTS_NAME)
    write_file(os.path.join(source, "result.txt"))

    archiver = FailedResultsArchiver(make_pipeline(dirs).context)
    archiver.archive(source)

    assert not os.path.exists(old_results)
    assert os.path.exists(os.path.join(dirs["failed"], f"x_{FAILED_RESULTS_FOLDER_INFO_TEXT}SEQ201901010000_Auto1.txt"))
    assert os.path.exists(recent_results)
    assert os.path.exists(os.path.join(dirs["failed"], RESULTS_NAME, "result.txt"))


def test_failed_results_default_to_dms_failed_results(dirs):
    source = os.path.join(dirs["work"], RESULTS_NAME)
    write_file(os.path.join(source, "r.txt"))
    context = JobContext({"MgrName": "Pub-12-1"},
                         {"StepParameters": {"Job": 1234, "Step": 5},
                          "JobParameters": {"DatasetName": DATASET, "OutputFolderName": RESULTS_NAME}},
                         dirs["work"])

    default_dir = os.path.join(os.path.dirname(dirs["work"]), DMS_FAILED_RESULTS_DIRECTORY_NAME)
    assert failed_results_directory(context) == default_dir

    FailedResultsArchiver(context).archive(source)

    assert os.path.exists(os.path.join(default_dir, RESULTS_NAME, "r.txt"))
    assert os.path.exists(os.path.join(default_dir, f"{FAILED_RESULTS_FOLDER_INFO_TEXT}{RESULTS_NAME}.txt"))


def test_failed_job_results_are_archived(dirs):
    write_file(os.path.join(dirs["work"], "result.txt"))
    write_file(os.path.join(dirs["work"], "logs", "console.txt"))

    pipeline = make_pipeline(dirs)
    pipeline.copy_failed_results_to_archive_directory()

    archived = os.path.join(dirs["failed"], RESULTS_NAME)
    assert os.path.exists(os.path.join(archived, "result.txt"))
    assert os.path.exists(os.path.join(archived, WORK_DIR_FILE_INFO_FILE))


def test_write_work_dir_file_info(dirs):
    write_file(os.path.join(dirs["work"], "result.txt"), "12345")
    write_file(os.path.join(dirs["work"], "logs", "console.txt"))

    info_file = write_work_dir_file_info(dirs["work"])
    with open(info_file) as f:
        rows = [line.rstrip("\n").split("\t") for line in f]

    assert rows[0] == ["Date", "Size", "File", "Subdirectory"]
    assert ["5", "result.txt", ""] in [row[1:] for row in rows[1:]]
    assert ["4", "console.txt", "logs"] in [row[1:] for row in rows[1:]]


def test_offline_mode_leaves_results_in_place(dirs):
    write_file(os.path.join(dirs["work"], "result.txt"))
    pipeline = make_pipeline(dirs, offline=True)

    assert pipeline.copy_results_to_transfer_directory()
    pipeline.copy_failed_results_to_archive_directory()

    assert os.path.exists(os.path.join(dirs["work"], "result.txt"))
    assert not os.path.exists(dirs["failed"])
