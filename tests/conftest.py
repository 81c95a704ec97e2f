"""Shared fakes for the migration tests."""

import json
import threading

import pytest

from bitbucket import SourceFileNotFound
from migrator import MigratorArgs, MigrationService, MigrationTask
from storage import StorageError


def make_state(lineage="lineage-1", serial=3, terraform_version="0.11.7", **extra) -> bytes:
    document = {"version": 3, "lineage": lineage, "serial": serial, "terraform_version": terraform_version}
    document.update(extra)
    return json.dumps(document).encode("utf-8")


class FakeDownloader:
    def __init__(self, objects=None):
        self.objects = objects or {}
        self.calls = []

    def download(self, bucket, key):
        self.calls.append((bucket, key))
        value = self.objects.get((bucket, key))
        if value is None:
            raise StorageError(f"s3://{bucket}/{key}: NoSuchKey")
        if isinstance(value, Exception):
            raise value
        return value


class FakeTFE:
    def __init__(self, fail_create=None, fail_upload=None):
        self.fail_create = fail_create or {}
        self.fail_upload = fail_upload or {}
        self.workspaces = []
        self.state_versions = []
        self.calls = []
        self._lock = threading.Lock()

    def _record(self, *call):
        with self._lock:
            self.calls.append(call)

    def create_workspace(self, org_name, name, terraform_version):
        self._record("create_workspace", org_name, name, terraform_version)
        if name in self.fail_create:
            raise self.fail_create[name]
        with self._lock:
            self.workspaces.append(name)
        return {"data": {"id": f"ws-{name}", "type": "workspaces"}}

    def lock_workspace(self, workspace_id, reason):
        self._record("lock_workspace", workspace_id)
        return {}

    def unlock_workspace(self, workspace_id):
        self._record("unlock_workspace", workspace_id)
        return {}

    def create_state_version(self, workspace_id, attributes):
        self._record("create_state_version", workspace_id)
        if workspace_id in self.fail_upload:
            raise self.fail_upload[workspace_id]
        with self._lock:
            self.state_versions.append((workspace_id, attributes))
        return {"data": {"id": "sv-1"}}


class FakeBitbucket:
    def __init__(self, files=None):
        self.files = files or {}
        self.commits = []

    def read_file(self, project, repo, path, branch):
        try:
            return self.files[(project, repo, path, branch)]
        except KeyError:
            raise SourceFileNotFound(f"The path \"{path}\" does not exist at revision \"{branch}\"", 404)

    def latest_revision(self, project, repo, branch=None):
        return "abc123"

    def write_file(self, project, repo, path, branch, base_revision, message, content):
        self.commits.append((project, repo, path, branch, base_revision, message, content))
        self.files[(project, repo, path, branch)] = content


@pytest.fixture
def args():
    return MigratorArgs(
        input="input.csv",
        organization="acme",
        tfe_token="tfe-token",
        tfe_address="https://ptfe.example.com",
        bitbucket_token="bb-token",
        workers=4,
        timeout=5,
    )


@pytest.fixture
def downloader():
    return FakeDownloader()


@pytest.fixture
def tfe():
    return FakeTFE()


@pytest.fixture
def bitbucket():
    return FakeBitbucket()


@pytest.fixture
def service(args, tfe, downloader, bitbucket):
    return MigrationService(args, tfe=tfe, downloader=downloader, bitbucket=bitbucket)


def make_task(name, config_file="main.tf"):
    return MigrationTask(
        bucket="states",
        key=f"{name}/terraform.tfstate",
        workspace=name,
        project="INFRA",
        repo=name,
        branch="master",
        config_file=config_file,
    )
