"""Tests for the pull-request workflow state machine."""

from __future__ import annotations

import asyncio
import threading
import time

import pytest
from scm_fakes import FakeGitClient, FakeScmProvider

from promoter.cancellation import CancellationToken
from promoter.config import PromoteConfig
from promoter.errors import (
    EnvironmentSourceMissingError,
    PromotionCancelledError,
    PromotionRejectedError,
    PromotionTimeoutError,
    PushRejectedError,
    RepositoryUnavailableError,
    UnsupportedLayoutError,
)
from promoter.models import Environment, EnvironmentSource
from promoter.scm import PRState, RepositoryRef
from promoter.strategy import PromotionStrategyEvaluator
from promoter.versions import ResolvedVersion, VersionProvenance
from promoter.workflow import (
    PromotionOutcome,
    PullRequestWorkflow,
    WorkflowState,
    WorkflowTarget,
    branch_name,
    pr_title,
)

JX_APPS = """\
defaultNamespace: jx-staging
apps:
- name: jenkins-x/chartmuseum
  version: 1.0.0
- name: dev/myapp
  version: 1.2.2
"""

REPO = "acme/environment-staging"
BRANCH = "promote-myapp-1.2.3"
VERSION = ResolvedVersion("1.2.3", VersionProvenance.EXPLICIT)


@pytest.fixture
def git(staging_env: Environment) -> FakeGitClient:
    git = FakeGitClient()
    git.add_repository(staging_env.source.url, {"jx-apps.yml": JX_APPS})
    return git


@pytest.fixture
def scm() -> FakeScmProvider:
    return FakeScmProvider()


def make_workflow(
    git: FakeGitClient, scm: FakeScmProvider, config: PromoteConfig
) -> PullRequestWorkflow:
    return PullRequestWorkflow(git, scm, config)


def decide(env: Environment, *, no_poll: bool = False):
    return PromotionStrategyEvaluator().evaluate(env, disable_auto_merge=no_poll)


class TestBranchNaming:
    """Tests for deterministic branch names."""

    def test_plain(self) -> None:
        assert branch_name("promote", "myapp", "1.2.3") == "promote-myapp-1.2.3"

    def test_unsafe_characters_replaced(self) -> None:
        assert (
            branch_name("promote", "jenkins-x/myapp", "1.2.3+build.5")
            == "promote-jenkins-x-myapp-1.2.3-build.5"
        )

    def test_title(self) -> None:
        assert pr_title("myapp", "1.2.3", "staging") == "chore: promote myapp to 1.2.3 in staging"


class TestPullRequestCreation:
    """Tests for the path from clone to pull request."""

    @pytest.mark.asyncio
    async def test_creates_pr_without_polling(
        self,
        git: FakeGitClient,
        scm: FakeScmProvider,
        fast_config: PromoteConfig,
        staging_env: Environment,
    ) -> None:
        """Test the full state sequence when polling is disabled."""
        workflow = make_workflow(git, scm, fast_config)

        result = await workflow.run(
            WorkflowTarget(staging_env, staging_env.source),
            "myapp",
            VERSION,
            decide(staging_env, no_poll=True),
            CancellationToken(),
            poll=False,
        )

        assert result.outcome == PromotionOutcome.PR_CREATED
        assert result.states == [
            WorkflowState.CLONING,
            WorkflowState.MUTATING,
            WorkflowState.DIFFING,
            WorkflowState.COMMITTING,
            WorkflowState.PUSHING,
            WorkflowState.PR_SEARCHING,
            WorkflowState.PR_CREATING,
            WorkflowState.DONE,
        ]
        assert result.pr_number == 1
        assert result.pr_link == f"https://github.com/{REPO}/pull/1"
        assert result.previous_version == "1.2.2"
        assert result.auto_merge_requested is False
        assert result.to_dict()["strategy"]["auto_merge"] is False

        pr = scm.get_pr(REPO, 1)
        assert pr is not None
        assert pr.head == BRANCH
        assert pr.base == "master"
        assert pr.title == "chore: promote myapp to 1.2.3 in staging"
        assert "1.2.2" in pr.body
        assert "jx-apps.yml" in pr.body

        assert git.pushes == [(staging_env.source.url, BRANCH)]
        assert git.commits[0].message.startswith("chore: promote myapp to version 1.2.3")
        assert "Environment: staging" in git.commits[0].message
        pushed = git.read_file(staging_env.source.url, BRANCH, "jx-apps.yml")
        assert pushed == JX_APPS.replace("1.2.2", "1.2.3")

    @pytest.mark.asyncio
    async def test_working_copy_removed(
        self,
        git: FakeGitClient,
        scm: FakeScmProvider,
        fast_config: PromoteConfig,
        staging_env: Environment,
    ) -> None:
        """Test that the local clone is deleted when the workflow ends."""
        workflow = make_workflow(git, scm, fast_config)

        await workflow.run(
            WorkflowTarget(staging_env, staging_env.source),
            "myapp",
            VERSION,
            decide(staging_env),
            CancellationToken(),
            poll=False,
        )

        assert len(git.working_copies) == 1
        assert not git.working_copies[0].exists()

    @pytest.mark.asyncio
    async def test_auto_merge_requested(
        self,
        git: FakeGitClient,
        scm: FakeScmProvider,
        fast_config: PromoteConfig,
        staging_env: Environment,
    ) -> None:
        """Test that an Automatic decision asks the host to auto-merge."""
        scm.poll_states = [PRState.MERGED]
        workflow = make_workflow(git, scm, fast_config)

        result = await workflow.run(
            WorkflowTarget(staging_env, staging_env.source),
            "myapp",
            VERSION,
            decide(staging_env),
            CancellationToken(),
        )

        assert result.auto_merge_requested is True
        assert scm.auto_merge_requests == [f"https://github.com/{REPO}/pull/1"]

    @pytest.mark.asyncio
    async def test_base_is_cloned_default_branch(
        self, scm: FakeScmProvider, fast_config: PromoteConfig, staging_env: Environment
    ) -> None:
        """Test that the PR targets the branch the clone started from."""
        git = FakeGitClient()
        git.add_repository(staging_env.source.url, {"jx-apps.yml": JX_APPS}, default_branch="main")
        workflow = make_workflow(git, scm, fast_config)

        await workflow.run(
            WorkflowTarget(staging_env, staging_env.source),
            "myapp",
            VERSION,
            decide(staging_env),
            CancellationToken(),
            poll=False,
        )

        pr = scm.get_pr(REPO, 1)
        assert pr is not None
        assert pr.base == "main"


class TestIdempotence:
    """Tests for re-running the same promotion."""

    @pytest.mark.asyncio
    async def test_rerun_after_merge_needs_no_change(
        self,
        git: FakeGitClient,
        scm: FakeScmProvider,
        fast_config: PromoteConfig,
        staging_env: Environment,
    ) -> None:
        """Test that once the promotion is merged a second run is a no-op."""
        scm.poll_states = [PRState.MERGED]
        workflow = make_workflow(git, scm, fast_config)
        target = WorkflowTarget(staging_env, staging_env.source)

        first = await workflow.run(
            target, "myapp", VERSION, decide(staging_env), CancellationToken()
        )
        remote = git.remotes[staging_env.source.url]
        remote.branches["master"] = dict(remote.branches[BRANCH])
        second = await workflow.run(
            target, "myapp", VERSION, decide(staging_env), CancellationToken()
        )

        assert first.outcome == PromotionOutcome.PR_MERGED
        assert second.outcome == PromotionOutcome.NO_CHANGE_NEEDED
        assert second.states[-1] == WorkflowState.NO_CHANGE
        assert second.pr_link is None
        assert len(scm.all_prs()) == 1
        assert len(git.pushes) == 1

    @pytest.mark.asyncio
    async def test_rerun_reuses_open_pr(
        self,
        git: FakeGitClient,
        scm: FakeScmProvider,
        fast_config: PromoteConfig,
        staging_env: Environment,
    ) -> None:
        """Test that a second run while the PR is open reuses it and asks to merge again."""
        workflow = make_workflow(git, scm, fast_config)
        target = WorkflowTarget(staging_env, staging_env.source)

        first = await workflow.run(
            target, "myapp", VERSION, decide(staging_env), CancellationToken(), poll=False
        )
        second = await workflow.run(
            target, "myapp", VERSION, decide(staging_env), CancellationToken(), poll=False
        )

        assert first.outcome == PromotionOutcome.PR_CREATED
        assert second.outcome == PromotionOutcome.PR_CREATED
        assert second.pr_reused is True
        assert second.pr_link == first.pr_link
        assert second.previous_version == "1.2.2"
        assert WorkflowState.PUSHING not in second.states
        assert second.states[-1] == WorkflowState.DONE
        assert second.auto_merge_requested is True
        assert scm.auto_merge_requests == [first.pr_link, first.pr_link]
        assert len(scm.all_prs()) == 1
        assert len(git.pushes) == 1

    @pytest.mark.asyncio
    async def test_rerun_reuses_open_pr_and_polls(
        self,
        git: FakeGitClient,
        scm: FakeScmProvider,
        fast_config: PromoteConfig,
        staging_env: Environment,
    ) -> None:
        """Test that a re-run waits on the reused PR like a fresh one."""
        workflow = make_workflow(git, scm, fast_config)
        target = WorkflowTarget(staging_env, staging_env.source)
        await workflow.run(
            target, "myapp", VERSION, decide(staging_env), CancellationToken(), poll=False
        )
        scm.poll_states = [PRState.MERGED]

        result = await workflow.run(
            target, "myapp", VERSION, decide(staging_env), CancellationToken()
        )

        assert result.outcome == PromotionOutcome.PR_MERGED
        assert result.states[-1] == WorkflowState.AWAITING_MERGE
        assert scm.poll_count == 1

    @pytest.mark.asyncio
    async def test_rerun_after_closed_pr(
        self,
        git: FakeGitClient,
        scm: FakeScmProvider,
        fast_config: PromoteConfig,
        staging_env: Environment,
    ) -> None:
        """Test that a closed PR's branch is replaced and a new PR opened."""
        workflow = make_workflow(git, scm, fast_config)
        target = WorkflowTarget(staging_env, staging_env.source)
        await workflow.run(
            target, "myapp", VERSION, decide(staging_env), CancellationToken(), poll=False
        )
        scm.set_state(REPO, 1, PRState.CLOSED)

        result = await workflow.run(
            target, "myapp", VERSION, decide(staging_env), CancellationToken(), poll=False
        )

        assert result.outcome == PromotionOutcome.PR_CREATED
        assert result.pr_reused is False
        assert result.pr_number == 2
        assert WorkflowState.PR_CREATING in result.states
        assert git.replaced == [(staging_env.source.url, BRANCH)]
        pushed = git.read_file(staging_env.source.url, BRANCH, "jx-apps.yml")
        assert pushed == JX_APPS.replace("1.2.2", "1.2.3")

    @pytest.mark.asyncio
    async def test_rollback_over_stale_branch(
        self, scm: FakeScmProvider, fast_config: PromoteConfig, staging_env: Environment
    ) -> None:
        """Test that returning to an older version rebuilds its branch from the base ref."""
        current = JX_APPS.replace("1.2.2", "1.2.4").replace("1.0.0", "1.0.1")
        git = FakeGitClient()
        remote = git.add_repository(staging_env.source.url, {"jx-apps.yml": current})
        # Left over from when 1.2.3 was promoted the first time
        remote.branches[BRANCH] = {"jx-apps.yml": JX_APPS.replace("1.2.2", "1.2.3")}
        workflow = make_workflow(git, scm, fast_config)

        result = await workflow.run(
            WorkflowTarget(staging_env, staging_env.source),
            "myapp",
            VERSION,
            decide(staging_env),
            CancellationToken(),
            poll=False,
        )

        assert result.outcome == PromotionOutcome.PR_CREATED
        assert result.previous_version == "1.2.4"
        assert git.replaced == [(staging_env.source.url, BRANCH)]
        pushed = git.read_file(staging_env.source.url, BRANCH, "jx-apps.yml")
        assert pushed == current.replace("1.2.4", "1.2.3")

    @pytest.mark.asyncio
    async def test_base_already_at_version_with_stale_branch(
        self, scm: FakeScmProvider, fast_config: PromoteConfig, staging_env: Environment
    ) -> None:
        """Test that a merged promotion's leftover branch does not trigger another PR."""
        pinned = JX_APPS.replace("1.2.2", "1.2.3")
        git = FakeGitClient()
        remote = git.add_repository(staging_env.source.url, {"jx-apps.yml": pinned})
        remote.branches[BRANCH] = {"jx-apps.yml": pinned}
        workflow = make_workflow(git, scm, fast_config)

        result = await workflow.run(
            WorkflowTarget(staging_env, staging_env.source),
            "myapp",
            VERSION,
            decide(staging_env),
            CancellationToken(),
        )

        assert result.outcome == PromotionOutcome.NO_CHANGE_NEEDED
        assert result.states[-1] == WorkflowState.NO_CHANGE
        assert git.pushes == []

    @pytest.mark.asyncio
    async def test_already_pinned(
        self, scm: FakeScmProvider, fast_config: PromoteConfig, staging_env: Environment
    ) -> None:
        """Test that a repository already at the version is left alone."""
        git = FakeGitClient()
        git.add_repository(staging_env.source.url, {"jx-apps.yml": JX_APPS.replace("1.2.2", "1.2.3")})
        workflow = make_workflow(git, scm, fast_config)

        result = await workflow.run(
            WorkflowTarget(staging_env, staging_env.source),
            "myapp",
            VERSION,
            decide(staging_env),
            CancellationToken(),
        )

        assert result.outcome == PromotionOutcome.NO_CHANGE_NEEDED
        assert result.pr_link is None
        assert git.pushes == []
        assert git.commits == []
        assert scm.all_prs() == []
        assert result.success is True

    @pytest.mark.asyncio
    async def test_open_pr_reused(
        self,
        git: FakeGitClient,
        scm: FakeScmProvider,
        fast_config: PromoteConfig,
        staging_env: Environment,
    ) -> None:
        """Test that an open PR for the branch is updated instead of duplicated."""
        repo = RepositoryRef("github.com", "acme", "environment-staging")
        scm.create_pr(repo, BRANCH, "master", "old title", "old body")
        workflow = make_workflow(git, scm, fast_config)

        result = await workflow.run(
            WorkflowTarget(staging_env, staging_env.source),
            "myapp",
            VERSION,
            decide(staging_env),
            CancellationToken(),
            poll=False,
        )

        assert result.outcome == PromotionOutcome.PR_CREATED
        assert WorkflowState.PR_REUSING in result.states
        assert WorkflowState.PR_CREATING not in result.states
        assert result.pr_reused is True
        assert result.pr_number == 1
        assert len(scm.all_prs()) == 1
        pr = scm.get_pr(REPO, 1)
        assert pr is not None
        assert pr.title == "chore: promote myapp to 1.2.3 in staging"
        assert scm.updates == [pr.link]


class TestMergePolling:
    """Tests for waiting on the merge."""

    @pytest.mark.asyncio
    async def test_merged(
        self,
        git: FakeGitClient,
        scm: FakeScmProvider,
        fast_config: PromoteConfig,
        staging_env: Environment,
    ) -> None:
        scm.poll_states = [PRState.OPEN, PRState.MERGED]
        workflow = make_workflow(git, scm, fast_config)

        result = await workflow.run(
            WorkflowTarget(staging_env, staging_env.source),
            "myapp",
            VERSION,
            decide(staging_env),
            CancellationToken(),
        )

        assert result.outcome == PromotionOutcome.PR_MERGED
        assert result.states[-1] == WorkflowState.AWAITING_MERGE
        assert scm.poll_count == 2

    @pytest.mark.asyncio
    async def test_closed_without_merge(
        self,
        git: FakeGitClient,
        scm: FakeScmProvider,
        fast_config: PromoteConfig,
        staging_env: Environment,
    ) -> None:
        scm.poll_states = [PRState.CLOSED]
        workflow = make_workflow(git, scm, fast_config)

        result = await workflow.run(
            WorkflowTarget(staging_env, staging_env.source),
            "myapp",
            VERSION,
            decide(staging_env),
            CancellationToken(),
        )

        assert result.outcome == PromotionOutcome.PR_REJECTED
        assert isinstance(result.error, PromotionRejectedError)
        assert result.success is False

    @pytest.mark.asyncio
    async def test_attempts_exhausted(
        self,
        git: FakeGitClient,
        scm: FakeScmProvider,
        fast_config: PromoteConfig,
        staging_env: Environment,
    ) -> None:
        """Test that polling is bounded and leaves the PR open."""
        workflow = make_workflow(git, scm, fast_config)

        result = await workflow.run(
            WorkflowTarget(staging_env, staging_env.source),
            "myapp",
            VERSION,
            decide(staging_env),
            CancellationToken(),
        )

        assert result.outcome == PromotionOutcome.FAILED
        assert isinstance(result.error, PromotionTimeoutError)
        assert scm.poll_count == fast_config.max_poll_attempts
        assert result.pr_link == f"https://github.com/{REPO}/pull/1"
        pr = scm.get_pr(REPO, 1)
        assert pr is not None
        assert pr.state == PRState.OPEN

    @pytest.mark.asyncio
    async def test_cancelled_while_polling(
        self, git: FakeGitClient, scm: FakeScmProvider, staging_env: Environment
    ) -> None:
        """Test that cancellation stops polling and keeps branch and PR."""
        config = PromoteConfig(poll_interval_seconds=30, max_poll_attempts=10)
        workflow = make_workflow(git, scm, config)
        token = CancellationToken()
        loop = asyncio.get_running_loop()
        poll = scm.get_pr_state

        # Cancel right after the first poll, while the workflow sleeps
        def poll_then_cancel(record):
            state = poll(record)
            loop.call_soon_threadsafe(token.cancel, "test shutdown")
            return state

        scm.get_pr_state = poll_then_cancel  # type: ignore[method-assign]

        result = await workflow.run(
            WorkflowTarget(staging_env, staging_env.source),
            "myapp",
            VERSION,
            decide(staging_env),
            token,
        )

        assert result.outcome == PromotionOutcome.FAILED
        assert isinstance(result.error, PromotionCancelledError)
        assert git.pushes == [(staging_env.source.url, BRANCH)]
        pr = scm.get_pr(REPO, 1)
        assert pr is not None
        assert pr.state == PRState.OPEN


class TestWorkflowFailures:
    """Tests for failures captured on the result."""

    @pytest.mark.asyncio
    async def test_unknown_layout(
        self, scm: FakeScmProvider, fast_config: PromoteConfig, staging_env: Environment
    ) -> None:
        git = FakeGitClient()
        git.add_repository(staging_env.source.url, {"README.md": "# staging\n"})
        workflow = make_workflow(git, scm, fast_config)

        result = await workflow.run(
            WorkflowTarget(staging_env, staging_env.source),
            "myapp",
            VERSION,
            decide(staging_env),
            CancellationToken(),
        )

        assert result.outcome == PromotionOutcome.FAILED
        assert isinstance(result.error, UnsupportedLayoutError)
        assert result.states == [WorkflowState.CLONING, WorkflowState.MUTATING]
        assert git.commits == []

    @pytest.mark.asyncio
    async def test_clone_unavailable(
        self,
        git: FakeGitClient,
        scm: FakeScmProvider,
        fast_config: PromoteConfig,
        staging_env: Environment,
    ) -> None:
        git.unavailable.add(staging_env.source.url)
        workflow = make_workflow(git, scm, fast_config)

        result = await workflow.run(
            WorkflowTarget(staging_env, staging_env.source),
            "myapp",
            VERSION,
            decide(staging_env),
            CancellationToken(),
        )

        assert isinstance(result.error, RepositoryUnavailableError)
        assert result.to_dict()["error"]["retryable"] is True

    @pytest.mark.asyncio
    async def test_push_rejected(
        self,
        git: FakeGitClient,
        scm: FakeScmProvider,
        fast_config: PromoteConfig,
        staging_env: Environment,
    ) -> None:
        git.reject_pushes = True
        workflow = make_workflow(git, scm, fast_config)

        result = await workflow.run(
            WorkflowTarget(staging_env, staging_env.source),
            "myapp",
            VERSION,
            decide(staging_env),
            CancellationToken(),
        )

        assert isinstance(result.error, PushRejectedError)
        assert result.to_dict()["error"]["category"] == "conflict"
        assert scm.all_prs() == []

    @pytest.mark.asyncio
    async def test_unusable_source_url(
        self, git: FakeGitClient, scm: FakeScmProvider, fast_config: PromoteConfig
    ) -> None:
        env = Environment(name="staging", source=EnvironmentSource(url="not-a-repository"))
        workflow = make_workflow(git, scm, fast_config)

        result = await workflow.run(
            WorkflowTarget(env, env.source),
            "myapp",
            VERSION,
            decide(env),
            CancellationToken(),
        )

        assert isinstance(result.error, EnvironmentSourceMissingError)
        assert result.states == []
        assert git.clones == []

    @pytest.mark.asyncio
    async def test_cancelled_during_clone(
        self,
        git: FakeGitClient,
        scm: FakeScmProvider,
        fast_config: PromoteConfig,
        staging_env: Environment,
    ) -> None:
        """Test that the working copy is removed only after an in-flight clone returns."""
        workflow = make_workflow(git, scm, fast_config)
        token = CancellationToken()
        loop = asyncio.get_running_loop()
        finished = threading.Event()
        clone = git.clone

        def slow_clone(url, ref, dest):
            loop.call_soon_threadsafe(token.cancel, "test shutdown")
            time.sleep(0.2)
            working_copy = clone(url, ref, dest)
            finished.set()
            return working_copy

        git.clone = slow_clone  # type: ignore[method-assign]

        result = await workflow.run(
            WorkflowTarget(staging_env, staging_env.source),
            "myapp",
            VERSION,
            decide(staging_env),
            token,
        )

        assert result.outcome == PromotionOutcome.FAILED
        assert isinstance(result.error, PromotionCancelledError)
        assert finished.is_set()
        assert result.states == [WorkflowState.CLONING]
        assert not git.working_copies[0].exists()
        assert not git.working_copies[0].parent.exists()
        assert git.pushes == []
