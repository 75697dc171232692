from datetime import datetime, timedelta, timezone

import pytest

from pyanalysismgr.core.job_context import (CaseInsensitiveSet, JobContext, RateLimiter, check_plural,
                                            is_data_package_dataset, parse_thread_count)


@pytest.fixture
def context():
    return JobContext({"MgrName": "Pub-12-1", "DebugLevel": "3"},
                      {"StepParameters": {"Job": "2112", "Step": 3, "DatasetFolderName": ""},
                       "JobParameters": {"DatasetName": "QC_Shew_16_01_R1", "Job": 9999,
                                         "OutputFolderName": "MSG202403051200_Auto2112"},
                       "PeptideSearch": {"GeneratedFastaName": "Human_2024.fasta"}},
                      "/tmp/work")


def test_parameter_lookup(context):
    assert context.job == 2112
    assert context.step == 3
    assert context.debug_level == 3
    assert context.dataset == "QC_Shew_16_01_R1"
    # An empty folder name falls back to the dataset name
    assert context.dataset_directory_name == "QC_Shew_16_01_R1"
    assert context.get_param("GeneratedFastaName") == "Human_2024.fasta"
    assert context.get_param("Job", section="JobParameters") == 9999
    assert context.get_param("Missing", "default") == "default"
    assert context.job_parameters_filename() == "JobParameters_2112.xml"
    assert context.job_step_description() == "job 2112, step 3"


def test_set_param_creates_section(context):
    context.set_param("RemoteParameters", "RemoteTimestamp", "20240305_1430")
    assert context.get_param("RemoteTimestamp", section="RemoteParameters") == "20240305_1430"


def test_status_message_updates_status(context):
    class Status:
        current_operation = ""

    context.status = Status()
    context.update_status_message("Copying results")
    assert context.status_message == "Copying results"
    assert context.status.current_operation == "Copying results"


def test_report_progress(context):
    calls = []
    context.on_progress = lambda percent, message: calls.append((percent, message))
    context.report_progress(50, "Halfway")
    assert calls == [(50, "Halfway")]


def test_aggregation_datasets():
    assert is_data_package_dataset("DataPackage_1234_Proteomics")
    assert not is_data_package_dataset("QC_Shew_16_01_R1")
    aggregation = JobContext({}, {"JobParameters": {"DatasetName": "aggregation"}}, "/tmp/work")
    assert aggregation.is_aggregation_dataset()


def test_case_insensitive_set():
    items = CaseInsensitiveSet([".RAW", "", "Keep.txt"])
    assert ".raw" in items
    assert "KEEP.TXT" in items
    assert None not in items
    assert len(items) == 2


def test_rate_limiter():
    start = datetime(2024, 3, 5, 12, 0, tzinfo=timezone.utc)
    limiter = RateLimiter(60)
    assert limiter.check_and_mark(start)
    assert not limiter.check_and_mark(start + timedelta(seconds=30))
    assert limiter.check_and_mark(start + timedelta(seconds=60))
    limiter.reset()
    assert limiter.ready(start)


def test_parse_thread_count():
    assert parse_thread_count("all", 0, cores_on_machine=8) == 8
    assert parse_thread_count("", 4, cores_on_machine=8) == 4
    assert parse_thread_count("50%", 0, cores_on_machine=8) == 4
    assert parse_thread_count("1%", 0, cores_on_machine=8) == 1
    assert parse_thread_count("6", 0, cores_on_machine=8) == 8
    # A plain integer still means all cores, capped by the maximum allowed
    assert parse_thread_count("6", 2, cores_on_machine=8) == 2


def test_check_plural():
    assert check_plural(1, "file", "files") == "file"
    assert check_plural(0, "file", "files") == "files"
