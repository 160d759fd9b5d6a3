"""Pull-request workflow for a single (application, environment) promotion.

State machine:

    CLONING -> MUTATING -> DIFFING -> NO_CHANGE
                                   -> COMMITTING -> PUSHING -> PR_SEARCHING
                                      -> PR_CREATING | PR_REUSING
                                      -> AWAITING_MERGE | DONE

Every visited state is recorded on the PromotionResult so callers (and
tests) can see exactly how far a promotion got.

IDEMPOTENCE:
- The branch name is derived from (application, version) only.
- Whether a change is needed is decided on the base ref: if it already pins
  the version the run ends in NO_CHANGE.
- A branch pushed by an earlier run is built upon only while its PR is
  open. Otherwise it is stale; the branch is reset onto the base ref and
  the remote branch replaced (force-with-lease).
- The host is always asked for an open PR on the branch before creating one.

The local working copy lives in a temporary directory that is removed when
the workflow ends, whatever the outcome.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from tempfile import TemporaryDirectory
from typing import Any

from .cancellation import CancellationToken
from .config import PromoteConfig
from .errors import (
    EnvironmentSourceMissingError,
    PromotionError,
    PromotionRejectedError,
    PromotionTimeoutError,
    UnsupportedLayoutError,
)
from .gitclient import GitClient
from .layout import LAYOUT_MARKERS, LayoutKind, RepositoryLayoutDetector
from .models import Environment, EnvironmentSource
from .mutator import MutationResult, VersionMutator
from .scm import PRState, PullRequestRecord, RepositoryRef, ScmProvider, parse_repository
from .strategy import StrategyDecision
from .versions import ResolvedVersion

logger = logging.getLogger(__name__)

_BRANCH_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


class WorkflowState(str, Enum):
    """States of the pull-request workflow."""

    CLONING = "Cloning"
    MUTATING = "Mutating"
    DIFFING = "Diffing"
    NO_CHANGE = "NoChange"
    COMMITTING = "Committing"
    PUSHING = "Pushing"
    PR_SEARCHING = "PRSearching"
    PR_CREATING = "PRCreating"
    PR_REUSING = "PRReusing"
    AWAITING_MERGE = "AwaitingMerge"
    DONE = "Done"


class PromotionOutcome(str, Enum):
    """Per-environment outcome reported to the caller."""

    NO_CHANGE_NEEDED = "NoChangeNeeded"
    PR_CREATED = "PRCreated"
    PR_MERGED = "PRMerged"
    PR_REJECTED = "PRRejected"
    FAILED = "Failed"
    SKIPPED = "Skipped"


@dataclass
class PromotionResult:
    """Result of promoting one application into one environment."""

    environment: str
    application: str
    version: str
    outcome: PromotionOutcome = PromotionOutcome.FAILED
    namespace: str = ""
    repository: str | None = None
    branch: str | None = None
    pr_link: str | None = None
    pr_number: int | None = None
    pr_reused: bool = False
    auto_merge_requested: bool = False
    previous_version: str | None = None
    decision: StrategyDecision | None = None
    error: Exception | None = None
    states: list[WorkflowState] = field(default_factory=list)
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None

    @property
    def success(self) -> bool:
        """Check if the promotion ended without failure."""
        return self.outcome not in (PromotionOutcome.FAILED, PromotionOutcome.PR_REJECTED)

    @property
    def duration_seconds(self) -> float:
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging/CLI output."""
        error: dict[str, Any] | None = None
        if self.error is not None:
            error = {"type": type(self.error).__name__, "message": str(self.error)}
            if isinstance(self.error, PromotionError):
                error["category"] = self.error.category.value
                error["retryable"] = self.error.retryable
        return {
            "environment": self.environment,
            "application": self.application,
            "version": self.version,
            "outcome": self.outcome.value,
            "namespace": self.namespace,
            "repository": self.repository,
            "branch": self.branch,
            "pr_link": self.pr_link,
            "pr_number": self.pr_number,
            "pr_reused": self.pr_reused,
            "auto_merge_requested": self.auto_merge_requested,
            "previous_version": self.previous_version,
            "strategy": self.decision.to_dict() if self.decision else None,
            "error": error,
            "states": [s.value for s in self.states],
            "duration_seconds": round(self.duration_seconds, 3),
        }


@dataclass(frozen=True)
class WorkflowTarget:
    """Where a promotion lands: the environment and the repository to mutate."""

    environment: Environment
    source: EnvironmentSource
    used_dev_fallback: bool = False

    @property
    def namespace(self) -> str:
        return self.environment.target_namespace


def branch_name(prefix: str, application: str, version: str) -> str:
    """Deterministic branch for an (application, version) pair."""
    raw = f"{prefix}-{application}-{version}"
    return _BRANCH_UNSAFE_CHARS.sub("-", raw).strip("-.")


def pr_title(application: str, version: str, environment: str) -> str:
    return f"chore: promote {application} to {version} in {environment}"


def commit_message(application: str, version: str, environment: str, namespace: str) -> str:
    return (
        f"chore: promote {application} to version {version}\n\n"
        f"Environment: {environment}\n"
        f"Namespace: {namespace}\n"
    )


def pr_body(
    application: str,
    resolved: ResolvedVersion,
    target: WorkflowTarget,
    mutation: MutationResult,
) -> str:
    """Markdown summary of the version change."""
    previous = mutation.previous_version or "_not declared_"
    lines = [
        f"Promote **{application}** to version **{resolved.version}** "
        f"in environment **{target.environment.name}**.",
        "",
        "| | |",
        "| --- | --- |",
        f"| Application | `{application}` |",
        f"| Namespace | `{target.namespace}` |",
        f"| Previous version | {previous} |",
        f"| New version | `{resolved.version}` |",
        f"| File | `{mutation.path}` |",
        f"| Version source | {resolved.provenance.value} |",
    ]
    if target.used_dev_fallback:
        lines.extend(
            [
                "",
                "The environment has no repository of its own; this change targets the "
                "development environment repository.",
            ]
        )
    return "\n".join(lines) + "\n"


# =============================================================================
# Merge Polling
# =============================================================================


class MergePoller:
    """Bounded, cancellable polling for a terminal PR state.

    Each attempt reads the PR state once; between attempts the poller sleeps
    on the cancellation token. Transitions:

        open -> (attempts left) sleep -> poll again
        open -> (no attempts left) PromotionTimeoutError
        merged | closed -> return
    """

    def __init__(self, scm: ScmProvider, interval_seconds: float, max_attempts: int) -> None:
        self._scm = scm
        self._interval = interval_seconds
        self._max_attempts = max_attempts

    async def wait(self, record: PullRequestRecord, token: CancellationToken) -> PRState:
        """Wait until the PR is merged or closed.

        Raises:
            PromotionTimeoutError: If the PR is still open after the last attempt.
            PromotionCancelledError: If the token is cancelled; the PR stays open.
        """
        for attempt in range(1, self._max_attempts + 1):
            state = await token.run(self._scm.get_pr_state, record)
            record.state = state
            if state != PRState.OPEN:
                logger.info(
                    "Pull request reached terminal state",
                    extra={"pr": record.link, "state": state.value, "attempt": attempt},
                )
                return state

            logger.debug(
                "Pull request still open",
                extra={"pr": record.link, "attempt": attempt, "max_attempts": self._max_attempts},
            )
            if attempt < self._max_attempts:
                await token.sleep(self._interval)

        raise PromotionTimeoutError(record.link, self._max_attempts)


# =============================================================================
# Workflow
# =============================================================================


class PullRequestWorkflow:
    """Drives one promotion from clone to pull request (and optionally merge)."""

    def __init__(
        self,
        git: GitClient,
        scm: ScmProvider,
        config: PromoteConfig,
        detector: RepositoryLayoutDetector | None = None,
        mutator: VersionMutator | None = None,
    ) -> None:
        self._git = git
        self._scm = scm
        self._config = config
        self._detector = detector or RepositoryLayoutDetector(strict=config.strict_layout_detection)
        self._mutator = mutator or VersionMutator(
            chart_repo_prefix=config.chart_repo_prefix,
            chart_repository=config.chart_repository,
        )
        self._poller = MergePoller(scm, config.poll_interval_seconds, config.max_poll_attempts)

    async def run(
        self,
        target: WorkflowTarget,
        application: str,
        resolved: ResolvedVersion,
        decision: StrategyDecision,
        token: CancellationToken,
        *,
        alias: str | None = None,
        poll: bool = True,
    ) -> PromotionResult:
        """Run the workflow.

        Failures are captured on the result rather than raised so that one
        environment never aborts another.
        """
        env_name = target.environment.name
        result = PromotionResult(
            environment=env_name,
            application=application,
            version=resolved.version,
            namespace=target.namespace,
            branch=branch_name(self._config.branch_prefix, application, resolved.version),
            decision=decision,
        )

        try:
            await self._run(target, application, resolved, decision, token, alias, poll, result)
        except PromotionRejectedError as e:
            result.outcome = PromotionOutcome.PR_REJECTED
            result.error = e
        except PromotionError as e:
            result.outcome = PromotionOutcome.FAILED
            result.error = e

        result.end_time = datetime.now(UTC)
        log_level = logging.INFO if result.success else logging.WARNING
        logger.log(
            log_level,
            "Promotion workflow finished",
            extra={
                "environment": env_name,
                "application": application,
                "version": resolved.version,
                "outcome": result.outcome.value,
                "pr_link": result.pr_link,
                "error": str(result.error) if result.error else None,
                "states": [s.value for s in result.states],
                "duration_seconds": result.duration_seconds,
            },
        )
        return result

    async def _run(
        self,
        target: WorkflowTarget,
        application: str,
        resolved: ResolvedVersion,
        decision: StrategyDecision,
        token: CancellationToken,
        alias: str | None,
        poll: bool,
        result: PromotionResult,
    ) -> None:
        branch = result.branch or ""
        env_name = target.environment.name
        version = resolved.version

        try:
            repo = parse_repository(target.source.url)
        except ValueError as e:
            raise EnvironmentSourceMissingError(
                f"Environment '{env_name}' has an unusable git source: {e}"
            ) from e
        result.repository = repo.full_name

        with TemporaryDirectory(prefix="promote-", ignore_cleanup_errors=True) as tmpdir:
            result.states.append(WorkflowState.CLONING)
            working_copy = await token.run_to_completion(
                self._git.clone, target.source.url, target.source.ref, Path(tmpdir) / "repo"
            )
            base = target.source.ref or working_copy.branch or ""

            # The base ref alone decides whether the environment needs a change
            result.states.append(WorkflowState.MUTATING)
            mutation = self._pin(working_copy.path, repo, application, version, target, alias)
            result.previous_version = mutation.previous_version

            result.states.append(WorkflowState.DIFFING)
            if not mutation.changed:
                await self._finish_unchanged(repo, branch, token, result)
                return

            if not base:
                base = await token.run(self._scm.get_default_branch, repo)

            # A pushed promotion branch is built upon only while its PR is open;
            # otherwise it is stale (PR closed, or merged and since superseded)
            open_pr = await token.run(self._scm.find_open_pr, repo, branch, base)
            if open_pr is not None:
                await token.run_to_completion(
                    self._git.checkout_branch, working_copy, branch, True
                )
                self._pin(working_copy.path, repo, application, version, target, alias)
            else:
                await token.run_to_completion(self._git.reset_branch, working_copy, branch)

            result.states.append(WorkflowState.COMMITTING)
            message = commit_message(application, version, env_name, target.namespace)
            committed = await token.run_to_completion(self._git.commit, working_copy, message)

            if committed:
                result.states.append(WorkflowState.PUSHING)
                await token.run_to_completion(
                    self._git.push, working_copy, branch, open_pr is None
                )

        pr = await self._create_or_reuse_pr(
            repo, branch, base, application, resolved, target, mutation, token, result
        )

        if decision.auto_merge:
            await token.run(self._scm.request_auto_merge, pr)
            result.auto_merge_requested = True

        if poll and decision.proceed:
            result.states.append(WorkflowState.AWAITING_MERGE)
            state = await self._poller.wait(pr, token)
            if state == PRState.CLOSED:
                raise PromotionRejectedError(pr.link)
            result.outcome = PromotionOutcome.PR_MERGED
            return

        result.states.append(WorkflowState.DONE)
        result.outcome = PromotionOutcome.PR_CREATED

    def _pin(
        self,
        root: Path,
        repo: RepositoryRef,
        application: str,
        version: str,
        target: WorkflowTarget,
        alias: str | None,
    ) -> MutationResult:
        layout = self._detector.detect(root)
        if layout == LayoutKind.UNKNOWN:
            markers = ", ".join(marker for marker, _ in LAYOUT_MARKERS)
            raise UnsupportedLayoutError(
                f"Repository {repo} has no recognizable layout (looked for {markers}, "
                f"strict={self._config.strict_layout_detection}); refusing to modify it"
            )
        return self._mutator.mutate(
            root, layout, application, version, target.namespace, alias=alias
        )

    async def _finish_unchanged(
        self,
        repo: RepositoryRef,
        branch: str,
        token: CancellationToken,
        result: PromotionResult,
    ) -> None:
        result.states.append(WorkflowState.NO_CHANGE)
        result.outcome = PromotionOutcome.NO_CHANGE_NEEDED

        # A PR still open for the branch has nothing left to change
        existing = await token.run(self._scm.find_open_pr, repo, branch)
        if existing is not None:
            result.pr_link = existing.link
            result.pr_number = existing.number

        logger.info(
            "Environment already at desired version",
            extra={
                "environment": result.environment,
                "application": result.application,
                "version": result.version,
                "pr_link": result.pr_link,
            },
        )

    async def _create_or_reuse_pr(
        self,
        repo: RepositoryRef,
        branch: str,
        base: str,
        application: str,
        resolved: ResolvedVersion,
        target: WorkflowTarget,
        mutation: MutationResult,
        token: CancellationToken,
        result: PromotionResult,
    ) -> PullRequestRecord:
        title = pr_title(application, resolved.version, target.environment.name)
        body = pr_body(application, resolved, target, mutation)

        result.states.append(WorkflowState.PR_SEARCHING)
        existing = await token.run(self._scm.find_open_pr, repo, branch, base)

        if existing is not None:
            result.states.append(WorkflowState.PR_REUSING)
            pr = existing
            if existing.title != title or existing.body != body:
                pr = await token.run(self._scm.update_pr, existing, title, body)
            result.pr_reused = True
            logger.info(
                "Reusing open pull request",
                extra={"pull_request": pr.to_dict(), "repository": repo.full_name},
            )
        else:
            result.states.append(WorkflowState.PR_CREATING)
            pr = await token.run(self._scm.create_pr, repo, branch, base, title, body)
            logger.info(
                "Created pull request",
                extra={"pull_request": pr.to_dict(), "repository": repo.full_name, "base": base},
            )

        result.pr_link = pr.link
        result.pr_number = pr.number
        return pr
