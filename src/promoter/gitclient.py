"""Git capability used by the promotion workflow.

The workflow needs a handful of primitives: clone, branch checkout or
reset, commit and push. GitClient is the interface, GitPythonClient the
implementation used in production.

All methods are blocking; the workflow runs them in an executor.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any
from urllib.parse import urlsplit, urlunsplit

from git import Actor, Git, GitCommandError, PushInfo, RemoteReference, Repo
from git.exc import UnsafeProtocolError

from .config import (
    DEFAULT_GIT_AUTHOR_EMAIL,
    DEFAULT_GIT_AUTHOR_NAME,
    DEFAULT_GIT_TIMEOUT_SECONDS,
)
from .errors import (
    EnvironmentSourceMissingError,
    PushRejectedError,
    RepositoryUnavailableError,
)

logger = logging.getLogger(__name__)

REMOTE_NAME = "origin"

# Fragments of git stderr that mean the remote refused the update
_REJECTION_MARKERS = ("rejected", "non-fast-forward", "fetch first", "stale info")


@dataclass
class WorkingCopy:
    """A local clone of an environment repository.

    Exclusively owned by one workflow; ``handle`` is implementation specific.
    """

    path: Path
    url: str
    ref: str = ""
    branch: str | None = None
    handle: Any = None


class GitClient:
    """Abstract interface for git transport operations.

    Implementations:
    - GitPythonClient: Uses the git CLI through GitPython
    """

    def clone(self, url: str, ref: str, dest: Path) -> WorkingCopy:
        """Clone ``url`` at ``ref`` (default branch if empty) into ``dest``.

        Raises:
            RepositoryUnavailableError: On transport failure.
        """
        raise NotImplementedError

    def checkout_branch(
        self, working_copy: WorkingCopy, branch: str, create_if_absent: bool = True
    ) -> None:
        """Check out ``branch``, tracking the remote branch if it already exists.

        Tracking a remote branch discards uncommitted changes; a branch
        created from the current commit keeps them.
        """
        raise NotImplementedError

    def reset_branch(self, working_copy: WorkingCopy, branch: str) -> None:
        """Point ``branch`` at the current commit, keeping uncommitted changes.

        A remote branch of the same name is ignored and gets replaced by
        ``push(..., replace=True)``.
        """
        raise NotImplementedError

    def commit(self, working_copy: WorkingCopy, message: str) -> bool:
        """Stage all changes and commit.

        Returns:
            False if there was nothing to commit.
        """
        raise NotImplementedError

    def push(self, working_copy: WorkingCopy, branch: str, replace: bool = False) -> None:
        """Push ``branch`` to the remote.

        Without ``replace`` only fast-forward updates are pushed. With it, the
        remote branch is replaced provided it still points where it did when
        the working copy was cloned (force-with-lease).

        Raises:
            PushRejectedError: If the remote refuses the update.
            RepositoryUnavailableError: On transport failure.
        """
        raise NotImplementedError


class GitPythonClient(GitClient):
    """GitClient backed by GitPython.

    Network operations (clone, push) are killed after ``timeout_seconds`` so
    that a caller waiting on them is never blocked indefinitely.
    """

    def __init__(
        self,
        author_name: str = DEFAULT_GIT_AUTHOR_NAME,
        author_email: str = DEFAULT_GIT_AUTHOR_EMAIL,
        token: str | None = None,
        timeout_seconds: float = DEFAULT_GIT_TIMEOUT_SECONDS,
    ) -> None:
        self._actor = Actor(author_name, author_email)
        self._token = token
        self._timeout = timeout_seconds

    def clone(self, url: str, ref: str, dest: Path) -> WorkingCopy:
        kwargs: dict[str, Any] = {}
        if ref:
            kwargs["branch"] = ref

        try:
            Git.check_unsafe_protocols(url)
        except UnsafeProtocolError as e:
            raise EnvironmentSourceMissingError(f"Refusing to clone {url}: {e}") from e

        try:
            # GitPython only enforces kill_after_timeout on commands it waits on itself
            Git().clone(
                "--",
                self._authenticated_url(url),
                str(dest),
                kill_after_timeout=self._timeout,
                **kwargs,
            )
            repo = Repo(dest)
        except GitCommandError as e:
            # Never log the authenticated URL
            raise RepositoryUnavailableError(
                f"Failed to clone {url} at ref '{ref or 'default'}': exit code {e.status}"
            ) from e

        logger.debug("Cloned repository", extra={"url": url, "ref": ref, "path": str(dest)})
        branch = None if repo.head.is_detached else repo.active_branch.name
        return WorkingCopy(path=dest, url=url, ref=ref, branch=branch, handle=repo)

    def checkout_branch(
        self, working_copy: WorkingCopy, branch: str, create_if_absent: bool = True
    ) -> None:
        repo: Repo = working_copy.handle
        remote_ref = self._remote_ref(repo, branch)

        try:
            if branch in repo.heads:
                repo.git.checkout(branch)
            elif remote_ref is not None:
                repo.git.reset("--hard")
                repo.git.clean("-f", "-d")
                repo.git.checkout("-b", branch, "--track", remote_ref.name)
                logger.info(
                    "Reusing remote promotion branch",
                    extra={"url": working_copy.url, "branch": branch},
                )
            elif create_if_absent:
                repo.git.checkout("-b", branch)
            else:
                raise RepositoryUnavailableError(
                    f"Branch '{branch}' does not exist in {working_copy.url}"
                )
        except GitCommandError as e:
            raise RepositoryUnavailableError(
                f"Failed to check out branch '{branch}' in {working_copy.url}: {e.stderr}"
            ) from e

        working_copy.branch = branch

    def reset_branch(self, working_copy: WorkingCopy, branch: str) -> None:
        repo: Repo = working_copy.handle
        try:
            repo.git.checkout("-B", branch)
        except GitCommandError as e:
            raise RepositoryUnavailableError(
                f"Failed to reset branch '{branch}' in {working_copy.url}: {e.stderr}"
            ) from e
        working_copy.branch = branch

    def commit(self, working_copy: WorkingCopy, message: str) -> bool:
        repo: Repo = working_copy.handle
        try:
            repo.git.add(A=True)
            if not repo.is_dirty(index=True, working_tree=True, untracked_files=True):
                return False
            repo.index.commit(message, author=self._actor, committer=self._actor)
        except GitCommandError as e:
            raise RepositoryUnavailableError(
                f"Failed to commit in {working_copy.url}: {e.stderr}"
            ) from e
        return True

    def push(self, working_copy: WorkingCopy, branch: str, replace: bool = False) -> None:
        repo: Repo = working_copy.handle
        kwargs: dict[str, Any] = {}
        if replace:
            remote_ref = self._remote_ref(repo, branch)
            if remote_ref is not None:
                kwargs["force_with_lease"] = f"{branch}:{remote_ref.commit.hexsha}"

        try:
            results = repo.remote(REMOTE_NAME).push(
                refspec=f"{branch}:{branch}", kill_after_timeout=self._timeout, **kwargs
            )
        except GitCommandError as e:
            stderr = str(e.stderr or "")
            if any(marker in stderr for marker in _REJECTION_MARKERS):
                raise PushRejectedError(branch, stderr.strip()) from e
            raise RepositoryUnavailableError(
                f"Failed to push branch '{branch}' to {working_copy.url}: exit code {e.status}"
            ) from e

        for info in results:
            if info.flags & (PushInfo.REJECTED | PushInfo.REMOTE_REJECTED):
                raise PushRejectedError(branch, info.summary.strip())
            if info.flags & PushInfo.ERROR:
                raise RepositoryUnavailableError(
                    f"Failed to push branch '{branch}' to {working_copy.url}: {info.summary.strip()}"
                )

        logger.info(
            "Pushed promotion branch",
            extra={"url": working_copy.url, "branch": branch, "replaced": bool(kwargs)},
        )

    @staticmethod
    def _remote_ref(repo: Repo, branch: str) -> RemoteReference | None:
        name = f"{REMOTE_NAME}/{branch}"
        for ref in repo.remote(REMOTE_NAME).refs:
            if ref.name == name:
                return ref
        return None

    def _authenticated_url(self, url: str) -> str:
        if not self._token or not url.startswith("https://"):
            return url
        parts = urlsplit(url)
        netloc = f"x-access-token:{self._token}@{parts.hostname}"
        if parts.port:
            netloc = f"{netloc}:{parts.port}"
        return urlunsplit((parts.scheme, netloc, parts.path, parts.query, parts.fragment))
