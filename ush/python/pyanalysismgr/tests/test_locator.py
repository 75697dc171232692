import os
import shutil
import tempfile
from dataclasses import dataclass
from types import SimpleNamespace

import pytest

from pyanalysismgr.core.job_context import JobContext
from pyanalysismgr.storage import locator
from pyanalysismgr.storage.locator import (MYEMSL_PATH_FLAG, ArchiveCatalog, StorageTier, TieredFileLocator,
                                           resolve_ser_storage_path, resolve_storage_path)

DATASET = "QC_Shew_16_01_R1"


@dataclass
class ArchiveFile:
    file_id: int
    name: str


class FakeCatalog(ArchiveCatalog):
    def __init__(self, files=()):
        self.files = list(files)
        self.requests = []

    def find_files(self, file_name, subdirectory, dataset, recurse):
        self.requests.append((file_name, subdirectory, dataset, recurse))
        return self.files


@pytest.fixture(autouse=True)
def no_sleep(monkeypatch):
    monkeypatch.setattr(locator, "time", SimpleNamespace(sleep=lambda seconds: None))


@pytest.fixture
def storage():
    base_dir = tempfile.mkdtemp()
    dirs = {name: os.path.join(base_dir, name) for name in ("storage", "archive", "transfer", "work")}
    for path in dirs.values():
        os.makedirs(path)
    yield dirs
    shutil.rmtree(base_dir)


def make_context(storage, **job_params):
    params = {
        "DatasetName": DATASET,
        "DatasetStoragePath": storage["storage"],
        "DatasetArchivePath": storage["archive"],
        "TransferDirectoryPath": storage["transfer"],
    }
    params.update(job_params)
    return JobContext({"MgrName": "Pub-12-1", "DebugLevel": 2},
                      {"StepParameters": {"Job": 1234, "Step": 2}, "JobParameters": params},
                      storage["work"])


def make_dataset(base, file_names=(), dataset=DATASET):
    path = os.path.join(base, dataset)
    os.makedirs(path, exist_ok=True)
    for name in file_names:
        with open(os.path.join(path, name), "w") as f:
            f.write("data")
    return path


def test_found_in_primary_storage(storage):
    expected = make_dataset(storage["storage"], ["QC_Shew_16_01_R1.raw"])
    make_dataset(storage["archive"], ["QC_Shew_16_01_R1.raw"])

    result = TieredFileLocator(make_context(storage)).find_valid_directory(DATASET, "QC_Shew_16_01_R1.raw")

    assert result.found
    assert result.tier == StorageTier.PRIMARY
    assert result.path == expected


def test_falls_back_to_archive_when_myemsl_is_disabled(storage):
    make_dataset(storage["storage"])
    expected = make_dataset(storage["archive"], ["QC_Shew_16_01_R1.raw"])

    result = TieredFileLocator(make_context(storage)).find_valid_directory(DATASET, "QC_Shew_16_01_R1.raw")

    assert result.found
    assert result.tier == StorageTier.ARCHIVE
    assert result.path == expected


def test_myemsl_is_checked_before_the_archive(storage):
    make_dataset(storage["archive"], ["QC_Shew_16_01_R1.raw"])
    catalog = FakeCatalog([ArchiveFile(101, "QC_Shew_16_01_R1.raw")])

    result = TieredFileLocator(make_context(storage), catalog=catalog,
                               aurora_available=True).find_valid_directory(DATASET, "QC_Shew_16_01_R1.raw")

    assert result.found
    assert result.tier == StorageTier.MYEMSL
    assert result.path == MYEMSL_PATH_FLAG
    assert result.myemsl_file_ids == [101]
    assert catalog.requests == [("QC_Shew_16_01_R1.raw", "", DATASET, False)]


def test_archive_skipped_without_aurora(storage):
    make_dataset(storage["archive"], ["QC_Shew_16_01_R1.raw"])
    expected = make_dataset(storage["transfer"], ["QC_Shew_16_01_R1.raw"])

    result = TieredFileLocator(make_context(storage), catalog=FakeCatalog()).find_valid_directory(
        DATASET, "QC_Shew_16_01_R1.raw")

    assert result.found
    assert result.tier == StorageTier.TRANSFER
    assert result.path == expected


def test_not_found(storage):
    context = make_context(storage)
    result = TieredFileLocator(context).find_valid_directory(DATASET, "QC_Shew_16_01_R1.raw")

    assert not result.found
    assert result.tier == StorageTier.NOT_FOUND
    assert result.path == os.path.join(storage["storage"], DATASET)
    assert result.message == "Could not find a valid dataset directory containing file QC_Shew_16_01_R1.raw"
    assert context.status_message == result.message


def test_assume_unpurged_returns_storage_path(storage):
    context = make_context(storage)
    make_dataset(storage["transfer"], ["QC_Shew_16_01_R1.raw"])
    catalog = FakeCatalog([ArchiveFile(7, "QC_Shew_16_01_R1.raw")])

    result = TieredFileLocator(context, catalog=catalog).find_valid_directory(
        DATASET, "QC_Shew_16_01_R1.mzML", assume_unpurged=True)

    assert not result.found
    assert result.path == os.path.join(storage["storage"], DATASET)
    assert catalog.requests == []
    assert context.status_message == ""


def test_purged_instrument_data_skips_storage(storage):
    make_dataset(storage["storage"], ["QC_Shew_16_01_R1.raw"])
    expected = make_dataset(storage["archive"], ["QC_Shew_16_01_R1.raw"])
    context = make_context(storage, InstrumentDataPurged=1)

    result = TieredFileLocator(context).find_valid_directory(DATASET, "QC_Shew_16_01_R1.raw",
                                                             retrieving_instrument_data=True)
    assert result.tier == StorageTier.ARCHIVE
    assert result.path == expected


def test_wildcards(storage):
    path = make_dataset(storage["storage"], ["QC_Shew_16_01_R1_dta.zip"])
    os.makedirs(os.path.join(path, "SIC201601011200_Auto123"))
    locator_ = TieredFileLocator(make_context(storage))

    assert locator_.find_valid_directory(DATASET, "*_dta.zip").found
    assert locator_.find_valid_directory(DATASET, directory_name_to_find="SIC*").found
    assert not locator_.find_valid_directory(DATASET, "*.mzML", max_attempts=1).found


def test_file_inside_requested_subdirectory(storage):
    path = make_dataset(storage["storage"])
    os.makedirs(os.path.join(path, "QC_Shew_16_01_R1.d"))
    with open(os.path.join(path, "QC_Shew_16_01_R1.d", "analysis.baf"), "w") as f:
        f.write("data")

    result = TieredFileLocator(make_context(storage)).find_valid_directory(
        DATASET, "analysis.baf", "QC_Shew_16_01_R1.d", max_attempts=1)

    assert result.found
    assert result.path == os.path.join(path, "QC_Shew_16_01_R1.d")


def test_dataset_folder_name_is_preferred(storage):
    expected = make_dataset(storage["storage"], ["QC_Shew_16_01_R1.raw"], dataset="QC_Shew_Folder")
    context = make_context(storage)
    context.set_param("StepParameters", "DatasetFolderName", "QC_Shew_Folder")

    result = TieredFileLocator(context).find_valid_directory(DATASET, "QC_Shew_16_01_R1.raw")
    assert result.path == expected


def test_resolve_storage_path(storage):
    directory = make_dataset(storage["storage"], ["present.raw"])
    assert resolve_storage_path(directory, "present.raw") == os.path.join(directory, "present.raw")
    assert resolve_storage_path(directory, "missing.raw") == ""

    with open(os.path.join(directory, "moved.raw_StoragePathInfo.txt"), "w") as f:
        f.write("/aurora/QC_Shew_16_01_R1/moved.raw\n")
    assert resolve_storage_path(directory, "moved.raw") == "/aurora/QC_Shew_16_01_R1/moved.raw"


def test_resolve_ser_storage_path(storage):
    directory = make_dataset(storage["storage"])
    assert resolve_ser_storage_path(directory) == ""

    os.makedirs(os.path.join(directory, "0.ser"))
    assert resolve_ser_storage_path(directory) == os.path.join(directory, "0.ser")

    with open(os.path.join(directory, "ser"), "w") as f:
        f.write("data")
    assert resolve_ser_storage_path(directory) == os.path.join(directory, "ser")


def test_find_dataset_file_follows_pointer(storage):
    directory = make_dataset(storage["storage"])
    with open(os.path.join(directory, "QC_Shew_16_01_R1.raw_StoragePathInfo.txt"), "w") as f:
        f.write("/aurora/QC_Shew_16_01_R1/QC_Shew_16_01_R1.raw\n")

    found = TieredFileLocator(make_context(storage)).find_dataset_file("QC_Shew_16_01_R1.raw")
    assert found == "/aurora/QC_Shew_16_01_R1/QC_Shew_16_01_R1.raw"


def test_find_dataset_file_missing(storage):
    assert TieredFileLocator(make_context(storage)).find_dataset_file("QC_Shew_16_01_R1.raw") == ""
