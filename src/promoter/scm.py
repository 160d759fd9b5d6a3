"""Source-control host access for promotion pull requests.

Pull requests are owned by the host. The workflow creates, reads, updates
and polls them through the ScmProvider interface and never keeps its own
copy of their state.

Key Features:
1. Repository identification from clone URLs (https and scp-style)
2. Open PR lookup by head branch, the basis of duplicate-PR avoidance
3. PR state polling (open / merged / closed)
4. Auto-merge requests, with a label fallback when the host refuses
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any

from github import Auth, Github, GithubException

from .errors import ScmError

logger = logging.getLogger(__name__)

GITHUB_HOST = "github.com"
DEFAULT_MERGE_METHOD = "SQUASH"
AUTOMERGE_LABEL = "promote/automerge"

_SCP_URL_PATTERN = re.compile(r"^[\w.-]+@(?P<host>[\w.-]+):(?P<path>.+)$")


class PRState(str, Enum):
    """Pull request state as reported by the host."""

    OPEN = "open"
    MERGED = "merged"
    CLOSED = "closed"


@dataclass(frozen=True)
class RepositoryRef:
    """A repository on a source-control host."""

    host: str
    owner: str
    name: str

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"

    def __str__(self) -> str:
        return self.full_name


def parse_repository(url: str) -> RepositoryRef:
    """Identify a repository from its clone URL.

    Accepts ``https://host/owner/name(.git)`` and ``git@host:owner/name(.git)``.

    Raises:
        ValueError: If the URL does not name an owner and repository.
    """
    match = _SCP_URL_PATTERN.match(url)
    if match:
        host, path = match.group("host"), match.group("path")
    else:
        without_scheme = url.split("://", 1)[-1]
        host, _, path = without_scheme.partition("/")
        host = host.rsplit("@", 1)[-1]

    path = path.strip("/")
    if path.endswith(".git"):
        path = path[: -len(".git")]

    owner, _, name = path.rpartition("/")
    if not host or not owner or not name:
        raise ValueError(f"Cannot determine owner and repository from URL: {url}")
    return RepositoryRef(host=host, owner=owner, name=name)


@dataclass
class PullRequestRecord:
    """A pull request as last read from the host."""

    number: int
    link: str
    title: str
    body: str
    head: str
    base: str
    repository: str  # full name, owner/name
    state: PRState = PRState.OPEN

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging/API."""
        return {
            "number": self.number,
            "link": self.link,
            "title": self.title,
            "head": self.head,
            "base": self.base,
            "repository": self.repository,
            "state": self.state.value,
        }


# =============================================================================
# SCM Provider Interface
# =============================================================================


class ScmProvider:
    """Abstract interface for pull-request operations on a source-control host.

    Implementations:
    - GitHubScmProvider: Uses the GitHub API via PyGithub
    """

    def get_default_branch(self, repo: RepositoryRef) -> str:
        """Get the default branch of a repository."""
        raise NotImplementedError

    def find_open_pr(
        self, repo: RepositoryRef, head: str, base: str | None = None
    ) -> PullRequestRecord | None:
        """Find the open PR for a head branch, None if there is none."""
        raise NotImplementedError

    def create_pr(
        self, repo: RepositoryRef, head: str, base: str, title: str, body: str
    ) -> PullRequestRecord:
        """Create a pull request."""
        raise NotImplementedError

    def update_pr(self, record: PullRequestRecord, title: str, body: str) -> PullRequestRecord:
        """Update title and body of a pull request."""
        raise NotImplementedError

    def get_pr_state(self, record: PullRequestRecord) -> PRState:
        """Read the current state of a pull request."""
        raise NotImplementedError

    def request_auto_merge(self, record: PullRequestRecord) -> None:
        """Ask the host to merge the pull request once its checks pass."""
        raise NotImplementedError


class GitHubScmProvider(ScmProvider):
    """ScmProvider for GitHub and GitHub Enterprise."""

    def __init__(
        self,
        token: str,
        base_url: str | None = None,
        merge_method: str = DEFAULT_MERGE_METHOD,
    ) -> None:
        kwargs: dict[str, Any] = {"auth": Auth.Token(token)}
        if base_url:
            kwargs["base_url"] = base_url
        self._client = Github(**kwargs)
        self._merge_method = merge_method

    def get_default_branch(self, repo: RepositoryRef) -> str:
        try:
            return self._client.get_repo(repo.full_name).default_branch
        except GithubException as e:
            raise ScmError(f"Failed to read repository {repo}: {_describe(e)}") from e

    def find_open_pr(
        self, repo: RepositoryRef, head: str, base: str | None = None
    ) -> PullRequestRecord | None:
        kwargs: dict[str, Any] = {"state": "open", "head": f"{repo.owner}:{head}"}
        if base:
            kwargs["base"] = base
        try:
            for pull in self._client.get_repo(repo.full_name).get_pulls(**kwargs):
                return self._to_record(repo, pull)
        except GithubException as e:
            raise ScmError(f"Failed to list pull requests of {repo}: {_describe(e)}") from e
        return None

    def create_pr(
        self, repo: RepositoryRef, head: str, base: str, title: str, body: str
    ) -> PullRequestRecord:
        try:
            pull = self._client.get_repo(repo.full_name).create_pull(
                title=title, body=body, head=head, base=base
            )
        except GithubException as e:
            raise ScmError(f"Failed to create pull request on {repo}: {_describe(e)}") from e
        return self._to_record(repo, pull)

    def update_pr(self, record: PullRequestRecord, title: str, body: str) -> PullRequestRecord:
        try:
            pull = self._client.get_repo(record.repository).get_pull(record.number)
            pull.edit(title=title, body=body)
        except GithubException as e:
            raise ScmError(f"Failed to update pull request {record.link}: {_describe(e)}") from e
        record.title = title
        record.body = body
        return record

    def get_pr_state(self, record: PullRequestRecord) -> PRState:
        try:
            pull = self._client.get_repo(record.repository).get_pull(record.number)
        except GithubException as e:
            raise ScmError(f"Failed to read pull request {record.link}: {_describe(e)}") from e
        return _pull_state(pull)

    def request_auto_merge(self, record: PullRequestRecord) -> None:
        try:
            pull = self._client.get_repo(record.repository).get_pull(record.number)
        except GithubException as e:
            raise ScmError(f"Failed to read pull request {record.link}: {_describe(e)}") from e

        try:
            pull.enable_automerge(merge_method=self._merge_method)
            return
        except GithubException as e:
            # Auto-merge disabled on the repository: leave it to a label-driven policy
            logger.warning(
                "Host refused auto-merge, labelling pull request instead",
                extra={"pr": record.link, "error": _describe(e)},
            )

        try:
            pull.add_to_labels(AUTOMERGE_LABEL)
        except GithubException as e:
            raise ScmError(f"Failed to label pull request {record.link}: {_describe(e)}") from e

    def _to_record(self, repo: RepositoryRef, pull: Any) -> PullRequestRecord:
        return PullRequestRecord(
            number=pull.number,
            link=pull.html_url,
            title=pull.title or "",
            body=pull.body or "",
            head=pull.head.ref,
            base=pull.base.ref,
            repository=repo.full_name,
            state=_pull_state(pull),
        )


def _pull_state(pull: Any) -> PRState:
    if pull.merged:
        return PRState.MERGED
    if pull.state == "closed":
        return PRState.CLOSED
    return PRState.OPEN


def _describe(e: GithubException) -> str:
    message = e.data.get("message") if isinstance(e.data, dict) else None
    return f"{e.status} {message or e}"
