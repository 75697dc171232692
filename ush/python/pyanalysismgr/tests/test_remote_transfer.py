import os
import shutil
import tempfile
import time
from types import SimpleNamespace

import pytest
from wxflow.executable import ProcessError

from pyanalysismgr.core.job_context import JobContext
from pyanalysismgr.transfer import remote_transfer
from pyanalysismgr.transfer import transport as transport_module
from pyanalysismgr.transfer.remote_transfer import RemoteTransferUtility
from pyanalysismgr.transfer.transport import LocalTransport, SshTransport


@pytest.fixture
def dirs():
    base_dir = tempfile.mkdtemp()
    paths = {name: os.path.join(base_dir, name) for name in ("work", "org_db", "remote_work", "remote_org_db", "queue")}
    for name in ("work", "org_db"):
        os.makedirs(paths[name])
    yield paths
    shutil.rmtree(base_dir)


def write_file(path, size=16, age_minutes=0):
    with open(path, "wb") as f:
        f.write(b"x" * size)
    if age_minutes:
        stamp = time.time() - age_minutes * 60
        os.utime(path, (stamp, stamp))
    return path


def make_utility(dirs, generated_fasta="Human_2024.fasta"):
    context = JobContext({"MgrName": "Pub-12-1", "OrgDBDir": dirs["org_db"]},
                         {"StepParameters": {"Job": 2112, "Step": 3},
                          "PeptideSearch": {"GeneratedFastaName": generated_fasta}},
                         dirs["work"])
    return RemoteTransferUtility(context, LocalTransport("proto-9"), dirs["remote_work"],
                                 remote_org_db_dir=dirs["remote_org_db"], remote_task_queue_dir=dirs["queue"],
                                 copy_poll_seconds=0)


def test_status_file_names(dirs):
    utility = make_utility(dirs)
    assert utility.remote_work_dir_name == "Job2112_Step3"
    assert utility.status_file_base_name == ""

    timestamp = utility.update_remote_timestamp()
    assert len(timestamp) == len("20240305_1430")
    assert utility.job_status_file == f"Job2112_Step3_{timestamp}.jobstatus"
    assert utility.processing_success_file.endswith(".success")
    assert len(utility.status_file_names) == 5


def test_create_remote_directory_is_idempotent(dirs):
    utility = make_utility(dirs)
    target = os.path.join(dirs["remote_work"], "Job2112_Step3")
    assert utility.create_remote_directory(target)
    assert utility.create_remote_directory(target)
    assert os.path.isdir(target)


def test_copy_files_to_remote(dirs):
    utility = make_utility(dirs)
    present = write_file(os.path.join(dirs["work"], "params.txt"))
    missing = os.path.join(dirs["work"], "missing.txt")

    assert utility.copy_files_to_remote([present], dirs["remote_work"], use_lock_file=True)
    assert sorted(os.listdir(dirs["remote_work"])) == ["params.txt"]

    # The existing file is still copied, but the call reports the missing one
    assert not utility.copy_files_to_remote([present, missing], dirs["remote_work"])
    assert not utility.copy_files_to_remote([], dirs["remote_work"])


def test_retrieve_remote_files(dirs):
    utility = make_utility(dirs)
    os.makedirs(dirs["queue"])
    write_file(os.path.join(dirs["queue"], "Job2112_Step3.success"))

    assert utility.retrieve_remote_files(dirs["queue"], {"Job2112_Step3.success": True, "optional.info": False},
                                         dirs["work"])
    assert os.path.exists(os.path.join(dirs["work"], "Job2112_Step3.success"))

    assert not utility.retrieve_remote_files(dirs["queue"], {"required.fail": True}, dirs["work"])


def test_retrieve_status_file(dirs):
    utility = make_utility(dirs)
    os.makedirs(dirs["queue"])
    timestamp = utility.update_remote_timestamp()
    write_file(os.path.join(dirs["queue"], f"Job2112_Step3_{timestamp}.jobstatus"))

    local_path = utility.retrieve_status_file(utility.job_status_file)
    assert local_path == os.path.join(dirs["work"], utility.job_status_file)
    assert utility.retrieve_status_file(utility.processing_failure_file) == ""


def make_org_db(dirs, size=100):
    fasta = write_file(os.path.join(dirs["org_db"], "Human_2024.fasta"), size)
    hashcheck = write_file(os.path.join(dirs["org_db"], "Human_2024.fasta.hashcheck"))
    write_file(os.path.join(dirs["org_db"], "Human_2024.fasta.localhashcheck"))
    return fasta, hashcheck


def test_copy_generated_org_db_to_remote(dirs):
    utility = make_utility(dirs)
    make_org_db(dirs)

    assert utility.copy_generated_org_db_to_remote()
    assert sorted(os.listdir(dirs["remote_org_db"])) == ["Human_2024.fasta", "Human_2024.fasta.hashcheck"]

    # Second call finds a matching remote copy
    remote_fasta = os.path.join(dirs["remote_org_db"], "Human_2024.fasta")
    stamp = time.time() - 3600
    os.utime(remote_fasta, (stamp, stamp))
    assert utility.copy_generated_org_db_to_remote()
    assert os.path.getmtime(remote_fasta) == pytest.approx(stamp)


def test_copy_generated_org_db_requires_hashcheck(dirs):
    utility = make_utility(dirs)
    write_file(os.path.join(dirs["org_db"], "Human_2024.fasta"))
    assert not utility.copy_generated_org_db_to_remote()

    assert not make_utility(dirs, generated_fasta="").copy_generated_org_db_to_remote()


def test_remote_fasta_files_match(dirs):
    utility = make_utility(dirs)
    fasta, hashcheck = make_org_db(dirs, size=100)
    os.makedirs(dirs["remote_org_db"])
    transport = utility.transport

    assert not utility.remote_fasta_files_match(fasta, hashcheck, None, None).match

    write_file(os.path.join(dirs["remote_org_db"], "Human_2024.fasta"), 100)
    write_file(os.path.join(dirs["remote_org_db"], "Human_2024.fasta.hashcheck"))
    listing = transport.get_remote_file_listing(dirs["remote_org_db"])
    remote_fasta = listing["Human_2024.fasta"]
    remote_hashcheck = listing["Human_2024.fasta.hashcheck"]

    assert not utility.remote_fasta_files_match(fasta, hashcheck, remote_fasta, None).match
    assert utility.remote_fasta_files_match(fasta, hashcheck, remote_fasta, remote_hashcheck).match

    # A larger remote file is replaced
    write_file(os.path.join(dirs["remote_org_db"], "Human_2024.fasta"), 150)
    remote_fasta = transport.get_remote_file_listing(dirs["remote_org_db"])["Human_2024.fasta"]
    result = utility.remote_fasta_files_match(fasta, hashcheck, remote_fasta, remote_hashcheck)
    assert not result.match
    assert not result.abort_copy


def test_wait_for_copy_in_progress(dirs, monkeypatch):
    utility = make_utility(dirs)
    fasta, hashcheck = make_org_db(dirs, size=100)
    os.makedirs(dirs["remote_org_db"])
    remote_path = write_file(os.path.join(dirs["remote_org_db"], "Human_2024.fasta"), 40)
    write_file(os.path.join(dirs["remote_org_db"], "Human_2024.fasta.hashcheck"))

    # Another manager finishes the copy while we wait
    monkeypatch.setattr(remote_transfer, "time", SimpleNamespace(sleep=lambda seconds: write_file(remote_path, 100)))

    listing = utility.transport.get_remote_file_listing(dirs["remote_org_db"])
    result = utility.remote_fasta_files_match(fasta, hashcheck, listing["Human_2024.fasta"],
                                              listing["Human_2024.fasta.hashcheck"])
    assert result.match


def test_wait_for_copy_aborts_when_remote_grows_too_large(dirs, monkeypatch):
    utility = make_utility(dirs)
    fasta, _ = make_org_db(dirs, size=100)
    os.makedirs(dirs["remote_org_db"])
    remote_path = write_file(os.path.join(dirs["remote_org_db"], "Human_2024.fasta"), 40)

    monkeypatch.setattr(remote_transfer, "time", SimpleNamespace(sleep=lambda seconds: write_file(remote_path, 500)))

    remote_file = utility.transport.get_remote_file_listing(dirs["remote_org_db"])["Human_2024.fasta"]
    result = utility.wait_for_remote_file_copy(fasta, remote_file)
    assert not result.match
    assert result.abort_copy


def test_stale_partial_copy_is_not_waited_on(dirs, monkeypatch):
    utility = make_utility(dirs)
    fasta, _ = make_org_db(dirs, size=100)
    os.makedirs(dirs["remote_org_db"])
    write_file(os.path.join(dirs["remote_org_db"], "Human_2024.fasta"), 40, age_minutes=60)

    def fail_sleep(seconds):
        raise AssertionError("should not wait on a stale remote file")

    monkeypatch.setattr(remote_transfer, "time", SimpleNamespace(sleep=fail_sleep))

    remote_file = utility.transport.get_remote_file_listing(dirs["remote_org_db"])["Human_2024.fasta"]
    result = utility.wait_for_remote_file_copy(fasta, remote_file)
    assert not result.match
    assert not result.abort_copy


def test_copy_work_dir_files_to_remote(dirs):
    utility = make_utility(dirs)
    write_file(os.path.join(dirs["work"], "JobParameters_2112.xml"))
    write_file(os.path.join(dirs["work"], "Human_2024.fasta"))
    write_file(os.path.join(dirs["work"], "params.txt"))

    remote_dir = utility.remote_job_step_work_dir
    os.makedirs(remote_dir)
    write_file(os.path.join(remote_dir, "stale.txt"))

    assert utility.copy_work_dir_files_to_remote(files_to_ignore=["human_2024.FASTA"])
    assert sorted(os.listdir(remote_dir)) == ["JobParameters_2112.xml", "params.txt"]


def test_copy_work_dir_files_requires_files(dirs):
    utility = make_utility(dirs)
    assert not utility.copy_work_dir_files_to_remote()


def test_delete_remote_work_dir(dirs):
    utility = make_utility(dirs)
    remote_dir = utility.remote_job_step_work_dir
    os.makedirs(os.path.join(remote_dir, "sub"))
    write_file(os.path.join(remote_dir, "result.txt"))

    utility.delete_remote_work_dir(keep_empty_directory=True)
    assert os.listdir(remote_dir) == []

    utility.delete_remote_work_dir()
    assert not os.path.exists(remote_dir)


def test_ssh_listing_parser():
    output = "Human_2024.fasta\t1024\t1709649000.5\nHuman_2024.fasta.hashcheck\t80\t1709649001\nbad line\n"
    listing = SshTransport.parse_listing("/remote/org_db", output, "*.fasta")

    assert list(listing) == ["Human_2024.fasta"]
    assert listing["Human_2024.fasta"].length == 1024
    assert listing["Human_2024.fasta"].full_path == "/remote/org_db/Human_2024.fasta"
    assert listing["Human_2024.fasta"].directory == "/remote/org_db"


class FlakyTransport(LocalTransport):
    """Local transport whose copies fail for the named files a set number of times."""

    def __init__(self, failures):
        super().__init__("proto-9")
        self.failures = dict(failures)
        self.calls = []

    def copy_file_to_remote(self, source_file_path, remote_directory):
        name = os.path.basename(source_file_path)
        self.calls.append(name)
        if self.failures.get(name, 0) != 0:
            self.failures[name] -= 1
            raise OSError(f"Network hiccup copying {name}")
        super().copy_file_to_remote(source_file_path, remote_directory)


def make_flaky_utility(dirs, transport, **kwargs):
    context = JobContext({"MgrName": "Pub-12-1"}, {"StepParameters": {"Job": 2112, "Step": 3}}, dirs["work"])
    return RemoteTransferUtility(context, transport, dirs["remote_work"], **kwargs)


def test_remote_copy_is_retried(dirs, monkeypatch):
    sleeps = []
    monkeypatch.setattr(transport_module, "time", SimpleNamespace(sleep=sleeps.append, time=time.time))
    transport = FlakyTransport({"params.txt": 1})
    utility = make_flaky_utility(dirs, transport)
    source = write_file(os.path.join(dirs["work"], "params.txt"))

    assert utility.copy_files_to_remote([source], dirs["remote_work"])
    assert transport.calls == ["params.txt", "params.txt"]
    assert sleeps == [15]
    assert os.path.exists(os.path.join(dirs["remote_work"], "params.txt"))


def test_remote_copy_failure_does_not_stop_other_files(dirs, monkeypatch):
    sleeps = []
    monkeypatch.setattr(transport_module, "time", SimpleNamespace(sleep=sleeps.append, time=time.time))
    transport = FlakyTransport({"broken.txt": -1})
    utility = make_flaky_utility(dirs, transport, copy_retry_count=2, copy_retry_holdoff_seconds=10)
    broken = write_file(os.path.join(dirs["work"], "broken.txt"))
    params = write_file(os.path.join(dirs["work"], "params.txt"))

    assert not utility.copy_files_to_remote([broken, params], dirs["remote_work"])
    assert transport.calls == ["broken.txt", "broken.txt", "broken.txt", "params.txt"]
    # Holdoff grows by half after each failure
    assert sleeps == [10, 15]
    assert os.listdir(dirs["remote_work"]) == ["params.txt"]


@pytest.fixture
def fake_ssh(dirs):
    """An ssh stand-in that runs the remote command with the local shell."""
    script = os.path.join(os.path.dirname(dirs["work"]), "fake_ssh")
    with open(script, "w") as f:
        f.write('#!/bin/sh\n# Arguments: -o BatchMode=yes <host> <command>\nexec sh -c "$4"\n')
    os.chmod(script, 0o755)
    return script


def test_ssh_lock_waits_for_release(dirs, fake_ssh, monkeypatch):
    data_file = os.path.join(dirs["org_db"], "Human_2024.fasta")
    lock_path = write_file(data_file + ".lock")

    sleeps = []

    def other_manager_releases(seconds):
        sleeps.append(seconds)
        os.remove(lock_path)

    monkeypatch.setattr(transport_module, "time", SimpleNamespace(sleep=other_manager_releases, time=time.time))
    transport = SshTransport("proto-9", ssh_exe=fake_ssh, lock_poll_seconds=2)

    assert transport.acquire_lock(data_file, "Pub-12-2 copying FASTA", 30)
    assert sleeps == [2]
    with open(lock_path) as f:
        assert f.read().strip() == "Pub-12-2 copying FASTA"

    transport.release_lock(data_file)
    assert not os.path.exists(lock_path)


def test_ssh_lock_reclaims_an_aged_lock(dirs, fake_ssh, monkeypatch):
    data_file = os.path.join(dirs["org_db"], "Human_2024.fasta")
    lock_path = write_file(data_file + ".lock", age_minutes=45)

    sleeps = []
    monkeypatch.setattr(transport_module, "time", SimpleNamespace(sleep=sleeps.append, time=time.time))
    transport = SshTransport("proto-9", ssh_exe=fake_ssh)

    assert transport.remote_lock_age_minutes(lock_path) >= 44
    assert transport.acquire_lock(data_file, "Pub-12-2 copying FASTA", 30)
    assert sleeps == []
    with open(lock_path) as f:
        assert f.read().strip() == "Pub-12-2 copying FASTA"


def test_ssh_listing(dirs, fake_ssh):
    transport = SshTransport("proto-9", ssh_exe=fake_ssh)
    write_file(os.path.join(dirs["org_db"], "Human_2024.fasta"), 64)
    write_file(os.path.join(dirs["org_db"], "Human_2024.fasta.hashcheck"))

    listing = transport.get_remote_file_listing(dirs["org_db"], "*.fasta")
    assert list(listing) == ["Human_2024.fasta"]
    assert listing["Human_2024.fasta"].length == 64

    assert transport.get_remote_file_listing(os.path.join(dirs["org_db"], "missing")) == {}


def test_ssh_listing_failure_is_reported(dirs):
    script = os.path.join(os.path.dirname(dirs["work"]), "unreachable_ssh")
    with open(script, "w") as f:
        f.write('#!/bin/sh\necho "ssh: connect to host proto-9 port 22: Connection refused" >&2\nexit 255\n')
    os.chmod(script, 0o755)
    transport = SshTransport("proto-9", ssh_exe=script)

    with pytest.raises(ProcessError):
        transport.get_remote_file_listing("/remote/org_db")

    utility = make_flaky_utility(dirs, transport)
    assert utility.get_remote_file_listing("/remote/org_db") == {}
