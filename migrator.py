import binascii
import csv
import hashlib
import json
import queue
import signal
import sys
import threading
import traceback
import urllib.error
import urllib.request
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Any
from urllib.parse import urlparse

import click
import requests
from packaging import version

from backend_config import NoBlockFound, rewrite_backend_config
from bitbucket import BitbucketClient, COMMIT_MESSAGE, DEFAULT_BITBUCKET_ADDRESS, SourceControlError
from storage import S3Downloader, StorageError

# Check Python version
if sys.version_info < (3, 12):
    sys.exit("Python 3.12 or higher is required")

# Constants
DEFAULT_TFE_ADDRESS = "https://app.terraform.io"
DEFAULT_WORKERS = 10
DEFAULT_TIMEOUT = 60  # seconds
LOCK_REASON = "Locked by the migration tool while uploading state"

# Fields expected in each input record
BACKEND_FIELDS = ("bucket", "key", "project", "repo", "branch", "config_file", "workspace")
STATE_FIELDS = ("bucket", "key", "workspace")


class MigrationError(Exception):
    stage: Optional[str] = None


class ConfigError(MigrationError):
    pass


class InputFormatError(MigrationError):
    def __init__(self, message: str, line: Optional[int] = None) -> None:
        super().__init__(message)
        self.line = line

    def __str__(self) -> str:
        if self.line is None:
            return self.args[0]
        return f"Line {self.line}: {self.args[0]}"


class DownloadError(MigrationError):
    stage = "download"


class IncompleteStateMetadata(MigrationError):
    stage = "validate"

    def __init__(self, meta: 'StateMetadata') -> None:
        super().__init__(f"Unable to retrieve required fields from the state file: {meta}")
        self.meta = meta


class WorkspaceCreationFailed(MigrationError):
    stage = "create workspace"


class StateUploadFailed(MigrationError):
    stage = "upload state"


class BackendUpdateFailed(MigrationError):
    stage = "update backend"

    def __init__(self, message: str, cause: Exception) -> None:
        super().__init__(message)
        self.cause = cause


class MigrationCancelled(MigrationError):
    def __init__(self, stage: str) -> None:
        super().__init__(f"Migration cancelled before '{stage}'")
        self.stage = stage


class APIError(Exception):
    def __init__(self, error: urllib.error.HTTPError) -> None:
        self.code = error.code
        try:
            errors: dict = json.loads(error.read().decode('utf-8'))["errors"][0]
            self.api_error = errors.get("detail") or errors.get("title") or f"{error.code} {error.reason}"
        except (ValueError, KeyError, IndexError, TypeError, AttributeError):
            self.api_error = f"{error.code} {error.reason}"
        super().__init__(self.api_error)

    def __str__(self) -> str:
        return self.api_error


class ConsoleOutput:
    HEADER = '\033[95m'
    BLUE = '\033[94m'
    CYAN = '\033[96m'
    GREEN = '\033[92m'
    WARNING = '\033[93m'
    FAIL = '\033[91m'
    ENDC = '\033[0m'
    BOLD = '\033[1m'
    UNDERLINE = '\033[4m'

    # Workers report concurrently
    _lock = threading.Lock()

    @classmethod
    def _print(cls, message: str) -> None:
        with cls._lock:
            print(message, flush=True)

    @classmethod
    def info(cls, message: str) -> None:
        cls._print(f"{cls.CYAN}[INFO]{cls.ENDC} {message}")

    @classmethod
    def success(cls, message: str) -> None:
        cls._print(f"{cls.GREEN}[SUCCESS]{cls.ENDC} {message}")

    @classmethod
    def warning(cls, message: str) -> None:
        cls._print(f"{cls.WARNING}[WARNING]{cls.ENDC} {message}")

    @classmethod
    def error(cls, message: str) -> None:
        cls._print(f"{cls.FAIL}[ERROR]{cls.ENDC} {message}")

    @classmethod
    def debug(cls, message: str) -> None:
        cls._print(f"{cls.BLUE}[DEBUG]{cls.ENDC} {message}")

    @classmethod
    def section(cls, message: str) -> None:
        cls._print(f"\n{cls.HEADER}{cls.BOLD}{message}{cls.ENDC}\n{cls.HEADER}{'=' * len(message)}{cls.ENDC}\n")


def _parse_hostname(address: str) -> Optional[str]:
    if "://" not in address:
        address = f"https://{address}"
    return urlparse(address).hostname


@dataclass
class MigratorArgs:
    input: str
    organization: str
    tfe_token: str
    tfe_address: str = DEFAULT_TFE_ADDRESS
    bitbucket_address: str = DEFAULT_BITBUCKET_ADDRESS
    bitbucket_token: Optional[str] = None
    update_backend: bool = True
    workers: int = DEFAULT_WORKERS
    timeout: float = DEFAULT_TIMEOUT
    max_terraform_version: Optional[str] = None
    lock: bool = True
    debug_enabled: bool = False

    @property
    def tfe_hostname(self) -> Optional[str]:
        """Hostname used in the rendered backend configuration."""
        return _parse_hostname(self.tfe_address)

    @classmethod
    def from_options(
        cls,
        input_path: Optional[str],
        organization: Optional[str],
        tfe_address: Optional[str],
        tfe_token: Optional[str],
        bitbucket_address: Optional[str],
        bitbucket_token: Optional[str],
        skip_backend_update: bool = False,
        workers: int = DEFAULT_WORKERS,
        timeout: float = DEFAULT_TIMEOUT,
        max_terraform_version: Optional[str] = None,
        skip_workspace_lock: bool = False,
        debug: bool = False,
    ) -> 'MigratorArgs':
        args = cls(
            input=input_path,
            organization=organization,
            tfe_token=tfe_token,
            tfe_address=tfe_address or DEFAULT_TFE_ADDRESS,
            bitbucket_address=bitbucket_address or DEFAULT_BITBUCKET_ADDRESS,
            bitbucket_token=bitbucket_token,
            update_backend=not skip_backend_update,
            workers=workers,
            timeout=timeout,
            max_terraform_version=max_terraform_version,
            lock=not skip_workspace_lock,
            debug_enabled=debug,
        )
        args.validate()
        return args

    def validate(self) -> None:
        required = {
            "input": self.input,
            "organization": self.organization,
            "TFE token": self.tfe_token,
        }
        if self.update_backend:
            required["Bitbucket token"] = self.bitbucket_token

        missing = [name for name, value in required.items() if not value]
        if missing:
            raise ConfigError(f"Missing required configuration: {', '.join(missing)}")

        if not self.tfe_hostname:
            raise ConfigError(f"Unable to parse the TFE address '{self.tfe_address}'")

        if self.workers < 1:
            raise ConfigError("The number of workers must be at least 1")

        if self.max_terraform_version:
            try:
                version.parse(self.max_terraform_version)
            except version.InvalidVersion:
                raise ConfigError(f"Invalid maximum Terraform version '{self.max_terraform_version}'")


class APIClient:
    def __init__(self, address: str, token: str, api_version: str = "v2", timeout: Optional[float] = None):
        self.address = address.rstrip('/')
        self.token = token
        self.api_version = api_version
        self.timeout = timeout
        self.headers = {
            "Authorization": f"Bearer {token}",
            "Content-Type": "application/vnd.api+json",
        }

    def make_request(self, url: str, method: str = "GET", data: Dict = None) -> Dict:
        if data:
            data = json.dumps(data).encode('utf-8')

        req = urllib.request.Request(url, data=data, method=method, headers=self.headers)

        try:
            with urllib.request.urlopen(req, timeout=self.timeout) as response:
                if response.code != 204:
                    return json.loads(response.read().decode('utf-8'))
                return {}
        except urllib.error.HTTPError as e:
            raise APIError(e)

    def post(self, route: str, data: Optional[Dict] = None) -> Dict:
        url = f"{self.address}/api/{self.api_version}/{route}"
        return self.make_request(url, method="POST", data=data)


class TFEClient(APIClient):
    def __init__(self, address: str, token: str, timeout: Optional[float] = None):
        super().__init__(address, token, "v2", timeout)

    def create_workspace(self, org_name: str, name: str, terraform_version: str) -> Dict:
        data = {
            "data": {
                "type": "workspaces",
                "attributes": {
                    "name": name,
                    "terraform-version": terraform_version,
                }
            }
        }
        return self.post(f"organizations/{org_name}/workspaces", data)

    def lock_workspace(self, workspace_id: str, reason: str) -> Dict:
        return self.post(f"workspaces/{workspace_id}/actions/lock", {"reason": reason})

    def unlock_workspace(self, workspace_id: str) -> Dict:
        return self.post(f"workspaces/{workspace_id}/actions/unlock")

    def create_state_version(self, workspace_id: str, attributes: Dict) -> Dict:
        data = {
            "data": {
                "type": "state-versions",
                "attributes": attributes,
            }
        }
        return self.post(f"workspaces/{workspace_id}/state-versions", data)


def _enforce_max_version(tf_version: str, workspace_name: str, max_version: str) -> str:
    try:
        exceeds = version.parse(tf_version) > version.parse(max_version)
    except version.InvalidVersion:
        ConsoleOutput.warning(f"Warning: {workspace_name} uses an unrecognized Terraform version '{tf_version}'")
        return tf_version

    if exceeds:
        ConsoleOutput.warning(f"Warning: {workspace_name} uses Terraform {tf_version}. "
              f"Downgrading to {max_version}")
        tf_version = max_version
    return tf_version


class TaskStage(Enum):
    PENDING = "pending"
    DOWNLOADED = "downloaded"
    VALIDATED = "validated"
    WORKSPACE_CREATED = "workspace created"
    UPLOADED = "uploaded"
    BACKEND_UPDATED = "backend updated"
    DONE = "done"
    FAILED = "failed"


@dataclass
class StateMetadata:
    lineage: str = ""
    serial: int = 0
    terraform_version: str = ""


@dataclass
class MigrationTask:
    bucket: str
    key: str
    workspace: str
    project: Optional[str] = None
    repo: Optional[str] = None
    branch: Optional[str] = None
    config_file: Optional[str] = None

    state: Optional[bytes] = field(default=None, repr=False)
    meta: StateMetadata = field(default_factory=StateMetadata)
    stage: TaskStage = TaskStage.PENDING


def try_parse_metadata(state: bytes) -> StateMetadata:
    """
    Read lineage, serial and Terraform version from a raw state file.

    A state that is not a JSON object yields empty metadata rather than an
    error; validate_metadata rejects it afterwards.
    """
    try:
        document: Any = json.loads(state)
    except ValueError:
        return StateMetadata()

    if not isinstance(document, dict):
        return StateMetadata()

    try:
        serial = int(document.get("serial") or 0)
    except (TypeError, ValueError):
        serial = 0

    return StateMetadata(
        lineage=str(document.get("lineage") or ""),
        serial=serial,
        terraform_version=str(document.get("terraform_version") or ""),
    )


def validate_metadata(meta: StateMetadata) -> None:
    if not meta.lineage or not meta.terraform_version:
        raise IncompleteStateMetadata(meta)


@dataclass
class TaskOutcome:
    task: MigrationTask
    reached: TaskStage
    error: Optional[Exception] = None
    failed_stage: Optional[str] = None
    traceback: Optional[str] = field(default=None, repr=False)

    @property
    def succeeded(self) -> bool:
        return self.error is None

    @property
    def partial(self) -> bool:
        """Workspace and state exist, but the backend configuration was not updated."""
        return isinstance(self.error, BackendUpdateFailed)


class MigrationService:

    def __init__(
        self,
        args: MigratorArgs,
        tfe: Optional[TFEClient] = None,
        downloader: Optional[S3Downloader] = None,
        bitbucket: Optional[BitbucketClient] = None,
        cancel_event: Optional[threading.Event] = None,
    ):
        self.args: MigratorArgs = args
        self.tfe: TFEClient = tfe or TFEClient(args.tfe_address, args.tfe_token, args.timeout)
        self.downloader: S3Downloader = downloader or S3Downloader(args.timeout)
        self.bitbucket: Optional[BitbucketClient] = bitbucket
        if self.bitbucket is None and args.update_backend:
            self.bitbucket = BitbucketClient(args.bitbucket_address, args.bitbucket_token, args.timeout)
        self.cancel_event: threading.Event = cancel_event or threading.Event()

    def download_state(self, task: MigrationTask) -> None:
        try:
            task.state = self.downloader.download(task.bucket, task.key)
        except StorageError as e:
            raise DownloadError(f"Failed to download the state file: {e}") from e
        except Exception as e:
            raise DownloadError(f"Unexpected error while downloading the state file: {e!r}") from e

        task.meta = try_parse_metadata(task.state)
        task.stage = TaskStage.DOWNLOADED

    def validate_state(self, task: MigrationTask) -> None:
        validate_metadata(task.meta)
        task.stage = TaskStage.VALIDATED

    def create_workspace(self, task: MigrationTask) -> str:
        terraform_version = task.meta.terraform_version
        if self.args.max_terraform_version:
            terraform_version = _enforce_max_version(terraform_version, task.workspace, self.args.max_terraform_version)

        try:
            response = self.tfe.create_workspace(self.args.organization, task.workspace, terraform_version)
            workspace_id = response["data"]["id"]
        except (APIError, OSError) as e:
            raise WorkspaceCreationFailed(f"Failed to create workspace: {e}") from e
        except Exception as e:
            raise WorkspaceCreationFailed(f"Unexpected error while creating workspace: {e!r}") from e

        task.stage = TaskStage.WORKSPACE_CREATED
        return workspace_id

    def upload_state(self, task: MigrationTask, workspace_id: str) -> None:
        state_attrs = {
            "serial": task.meta.serial,
            "md5": hashlib.md5(task.state).hexdigest(),
            "lineage": task.meta.lineage,
            "state": binascii.b2a_base64(task.state, newline=False).decode("utf-8"),
        }

        locked = False
        try:
            if self.args.lock:
                self.tfe.lock_workspace(workspace_id, LOCK_REASON)
                locked = True
            self.tfe.create_state_version(workspace_id, state_attrs)
        except (APIError, OSError) as e:
            raise StateUploadFailed(f"Failed to upload the state: {e}") from e
        except Exception as e:
            raise StateUploadFailed(f"Unexpected error while uploading the state: {e!r}") from e
        finally:
            if locked:
                self._unlock_workspace(task, workspace_id)

        # The remote copy is authoritative from here on
        task.state = None
        task.stage = TaskStage.UPLOADED

    def _unlock_workspace(self, task: MigrationTask, workspace_id: str) -> None:
        try:
            self.tfe.unlock_workspace(workspace_id)
        except (APIError, OSError) as e:
            ConsoleOutput.warning(f"Unable to unlock workspace '{task.workspace}': {e}")

    def update_backend(self, task: MigrationTask) -> None:
        try:
            self._rewrite_backend(task)
        except BackendUpdateFailed:
            raise
        except Exception as e:
            raise BackendUpdateFailed(f"Unexpected error while updating '{task.config_file}': {e!r}", e) from e

        task.stage = TaskStage.BACKEND_UPDATED

    def _rewrite_backend(self, task: MigrationTask) -> None:
        try:
            content = self.bitbucket.read_file(task.project, task.repo, task.config_file, task.branch)
        except (SourceControlError, requests.RequestException) as e:
            raise BackendUpdateFailed(f"Failed to read config file '{task.config_file}' from Bitbucket: {e}", e) from e

        try:
            content = rewrite_backend_config(
                content, self.args.tfe_hostname, self.args.organization, task.workspace
            )
        except NoBlockFound as e:
            raise BackendUpdateFailed(f"No terraform configuration block found in '{task.config_file}'", e) from e

        try:
            revision = self.bitbucket.latest_revision(task.project, task.repo, task.branch)
            self.bitbucket.write_file(
                task.project,
                task.repo,
                task.config_file,
                task.branch,
                revision,
                COMMIT_MESSAGE,
                content,
            )
        except (SourceControlError, requests.RequestException) as e:
            raise BackendUpdateFailed(f"Failed to write config file '{task.config_file}' to Bitbucket: {e}", e) from e

    def _check_cancelled(self, next_stage: str) -> None:
        if self.cancel_event.is_set():
            raise MigrationCancelled(next_stage)

    def migrate_task(self, task: MigrationTask) -> None:
        """Run every stage for one task, stopping at the first failure."""
        self._check_cancelled(DownloadError.stage)
        self.download_state(task)
        self.validate_state(task)

        self._check_cancelled(WorkspaceCreationFailed.stage)
        workspace_id = self.create_workspace(task)

        self._check_cancelled(StateUploadFailed.stage)
        self.upload_state(task, workspace_id)

        if self.args.update_backend:
            self._check_cancelled(BackendUpdateFailed.stage)
            self.update_backend(task)

        task.stage = TaskStage.DONE

    def migrate(self, tasks: List[MigrationTask]) -> List[TaskOutcome]:
        ConsoleOutput.section("Migrating states")
        ConsoleOutput.info(
            f"Migrating {len(tasks)} state(s) into organization '{self.args.organization}' "
            f"using {self.args.workers} worker(s)"
        )

        outcomes = Pipeline(self, self.args.workers).run(tasks)

        ConsoleOutput.section("Migration Summary")
        successful = [o.task.workspace for o in outcomes if o.succeeded]
        partial = [o.task.workspace for o in outcomes if o.partial]
        failed = [o.task.workspace for o in outcomes if not o.succeeded and not o.partial]

        ConsoleOutput.success(f"Successfully migrated {len(successful)} state(s)")
        if partial:
            ConsoleOutput.warning(
                f"Migrated {len(partial)} state(s) without updating the backend: {', '.join(partial)}"
            )
        if failed:
            ConsoleOutput.warning(f"Failed to migrate {len(failed)} state(s): {', '.join(failed)}")

        ConsoleOutput.info("Finished migrating states.")
        return outcomes


class Pipeline:
    """
    Runs migration tasks on a fixed pool of worker threads.

    All tasks are queued up front and every worker takes one task at a time
    through all of its stages. `run` returns one outcome per task, in input
    order, once every task is processed and every worker has exited.
    """

    def __init__(self, service: MigrationService, workers: int = DEFAULT_WORKERS):
        self.service = service
        self.workers = max(1, workers)

    def run(self, tasks: List[MigrationTask]) -> List[TaskOutcome]:
        if not tasks:
            return []

        outcomes: List[Optional[TaskOutcome]] = [None] * len(tasks)
        worker_count = min(self.workers, len(tasks))
        # Room for the whole batch plus one stop marker per worker
        work: queue.Queue = queue.Queue(maxsize=len(tasks) + worker_count)

        threads = [
            threading.Thread(target=self._worker, args=(work, outcomes), name=f"migrator-worker-{i}")
            for i in range(worker_count)
        ]
        for thread in threads:
            thread.start()

        for index, task in enumerate(tasks):
            work.put((index, task))
        for _ in threads:
            work.put(None)

        work.join()
        for thread in threads:
            thread.join()

        return outcomes

    def _worker(self, work: queue.Queue, outcomes: List[Optional[TaskOutcome]]) -> None:
        while True:
            item = work.get()
            try:
                if item is None:
                    return
                index, task = item
                outcomes[index] = self.process(task)
            finally:
                work.task_done()

    def process(self, task: MigrationTask) -> TaskOutcome:
        try:
            self.service.migrate_task(task)
            outcome = TaskOutcome(task, task.stage)
        except MigrationError as e:
            outcome = TaskOutcome(task, task.stage, e, e.stage, traceback.format_exc())
            task.stage = TaskStage.FAILED
        except Exception as e:
            outcome = TaskOutcome(task, task.stage, e, "unexpected", traceback.format_exc())
            task.stage = TaskStage.FAILED

        self.report(outcome)
        return outcome

    def report(self, outcome: TaskOutcome) -> None:
        workspace = outcome.task.workspace
        if outcome.succeeded:
            ConsoleOutput.success(f"Successfully migrated state for workspace '{workspace}'")
            return

        if outcome.partial:
            ConsoleOutput.warning(
                f"Migrated state for workspace '{workspace}', but failed to update its backend: {outcome.error}"
            )
        else:
            ConsoleOutput.error(
                f"Error migrating state for workspace '{workspace}' ({outcome.failed_stage}): {outcome.error}"
            )

        if self.service.args.debug_enabled and outcome.traceback:
            ConsoleOutput.debug(f"Traceback: {outcome.traceback}")


def read_tasks(path: str, update_backend: bool = True) -> List[MigrationTask]:
    """
    Read every record of the input CSV into a task.

    The whole file is validated before anything is migrated, so a malformed
    record aborts the run without side effects.
    """
    fields = BACKEND_FIELDS if update_backend else STATE_FIELDS
    tasks = []

    try:
        with open(path, newline="", encoding="utf-8") as f:
            reader = csv.reader(f)
            for record in reader:
                if not record:
                    continue
                if len(record) != len(fields):
                    raise InputFormatError(
                        f"Unexpected number of fields ({len(record)}, expected {len(fields)}) in record: {record}",
                        reader.line_num,
                    )
                tasks.append(MigrationTask(**dict(zip(fields, record))))
    except OSError as e:
        raise InputFormatError(f"Error opening input file: {e}")
    except (csv.Error, UnicodeDecodeError) as e:
        raise InputFormatError(f"Error reading CSV file: {e}")

    return tasks


def _install_interrupt_handler(cancel_event: threading.Event):
    def handler(signum, frame):
        if cancel_event.is_set():
            raise KeyboardInterrupt
        ConsoleOutput.warning("Interrupted, finishing in-flight calls and skipping remaining stages...")
        cancel_event.set()

    return signal.signal(signal.SIGINT, handler)


@click.command(context_settings={"help_option_names": ["-h", "--help"]})
@click.option("--input", "input_path", type=str, help="The path to a CSV file containing the required input")
@click.option("--organization", type=str, help="The organization that will contain the new workspaces")
@click.option("--tfe-address", envvar="TFE_ADDRESS", default=DEFAULT_TFE_ADDRESS, show_default=True,
              help="TFE/PTFE address")
@click.option("--tfe-token", envvar="TFE_TOKEN", help="TFE/PTFE token")
@click.option("--bitbucket-address", envvar="BITBUCKET_ADDRESS", default=DEFAULT_BITBUCKET_ADDRESS,
              show_default=True, help="Bitbucket address")
@click.option("--bitbucket-token", envvar="BITBUCKET_TOKEN", help="Bitbucket personal access token")
@click.option("--skip-backend-update", is_flag=True,
              help="Only migrate states. Input records are then: bucket, key, workspace")
@click.option("--workers", type=int, default=DEFAULT_WORKERS, show_default=True,
              help="Number of states migrated concurrently")
@click.option("--timeout", type=float, default=DEFAULT_TIMEOUT, show_default=True,
              help="Timeout in seconds for each network call")
@click.option("--max-terraform-version", type=str, help="Lower newer Terraform versions of new workspaces to this one")
@click.option("--skip-workspace-lock", is_flag=True, help="Do not lock new workspaces while uploading their state")
@click.option("--debug", is_flag=True, help="Print tracebacks of failed migrations")
def main(
    input_path: Optional[str],
    organization: Optional[str],
    tfe_address: str,
    tfe_token: Optional[str],
    bitbucket_address: str,
    bitbucket_token: Optional[str],
    skip_backend_update: bool,
    workers: int,
    timeout: float,
    max_terraform_version: Optional[str],
    skip_workspace_lock: bool,
    debug: bool,
):
    """Migrate Terraform state files from S3 into TFE/PTFE workspaces."""
    try:
        args = MigratorArgs.from_options(
            input_path,
            organization,
            tfe_address,
            tfe_token,
            bitbucket_address,
            bitbucket_token,
            skip_backend_update=skip_backend_update,
            workers=workers,
            timeout=timeout,
            max_terraform_version=max_terraform_version,
            skip_workspace_lock=skip_workspace_lock,
            debug=debug,
        )
        tasks = read_tasks(args.input, args.update_backend)
    except (ConfigError, InputFormatError) as e:
        ConsoleOutput.error(str(e))
        sys.exit(1)

    cancel_event = threading.Event()
    migration_service = MigrationService(args, cancel_event=cancel_event)

    previous_handler = _install_interrupt_handler(cancel_event)
    try:
        migration_service.migrate(tasks)
    finally:
        signal.signal(signal.SIGINT, previous_handler)


if __name__ == "__main__":
    main()
