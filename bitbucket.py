from typing import Dict, Optional
from urllib.parse import quote

import requests

DEFAULT_BITBUCKET_ADDRESS = "https://bitbucket.org"
COMMIT_MESSAGE = "Backend configuration updated by migration tool"


class SourceControlError(Exception):
    def __init__(self, message: str, code: Optional[int] = None) -> None:
        super().__init__(message)
        self.message = message
        self.code = code

    def __str__(self) -> str:
        return self.message


class SourceFileNotFound(SourceControlError):
    pass


class WriteConflict(SourceControlError):
    pass


def check_response(response: requests.Response) -> None:
    """Raise a SourceControlError carrying Bitbucket's own error message."""
    if response.status_code == 200:
        return

    try:
        body = response.json()
    except ValueError as e:
        raise SourceControlError(f"error decoding response: {e}", response.status_code)

    errors = body.get("errors") if isinstance(body, dict) else None
    if errors and isinstance(errors, list) and isinstance(errors[0], dict):
        message = errors[0].get("message", response.reason)
    else:
        message = f"unexpected response: {response.status_code} {response.reason}"

    if response.status_code == 404:
        raise SourceFileNotFound(message, response.status_code)
    if response.status_code == 409:
        raise WriteConflict(message, response.status_code)
    raise SourceControlError(message, response.status_code)


class BitbucketClient:
    """Bitbucket Server REST API client."""

    def __init__(self, address: str, token: str, timeout: Optional[float] = None):
        self.address = (address or DEFAULT_BITBUCKET_ADDRESS).rstrip("/")
        self.timeout = timeout
        self.session = requests.Session()
        self.session.headers.update({"Authorization": f"Bearer {token}"})

    def _repo_url(self, project: str, repo: str) -> str:
        return f"{self.address}/rest/api/latest/projects/{quote(project)}/repos/{quote(repo)}"

    def _browse_url(self, project: str, repo: str, path: str) -> str:
        return f"{self._repo_url(project, repo)}/browse/{quote(path.lstrip('/'))}"

    def latest_revision(self, project: str, repo: str, branch: Optional[str] = None) -> str:
        params: Dict = {"limit": 1}
        if branch:
            params["until"] = f"refs/heads/{branch}"

        response = self.session.get(f"{self._repo_url(project, repo)}/commits", params=params, timeout=self.timeout)
        check_response(response)

        commits = response.json().get("values", [])
        if len(commits) != 1:
            raise SourceControlError("could not find latest commit")

        return commits[0]["id"]

    def read_file(self, project: str, repo: str, path: str, branch: str) -> str:
        """Read a file's content, following the browse API's line pagination."""
        url = self._browse_url(project, repo, path)
        lines = []
        start = 0

        while True:
            response = self.session.get(url, params={"at": branch, "start": start}, timeout=self.timeout)
            check_response(response)
            page = response.json()

            lines.extend(line["text"] + "\n" for line in page.get("lines", []))

            if page.get("isLastPage", True) or page.get("nextPageStart") is None:
                break
            start = page["nextPageStart"]

        return "".join(lines)

    def write_file(
        self,
        project: str,
        repo: str,
        path: str,
        branch: str,
        base_revision: str,
        message: str,
        content: str,
    ) -> None:
        """Commit new file content on top of `base_revision`."""
        fields = {
            "branch": f"refs/heads/{branch}",
            "sourceCommitId": base_revision,
            "message": message,
        }
        response = self.session.put(
            self._browse_url(project, repo, path),
            data=fields,
            files={"content": ("blob", content.encode("utf-8"))},
            timeout=self.timeout,
        )
        check_response(response)
