"""Promotion engine.

Composes version resolution, target selection, strategy evaluation and the
pull-request workflow for one promotion request.

FAILURE MODEL:
- Invalid input, unknown environments and version resolution failures are
  raised before any repository is touched
- Failures inside one environment's workflow are captured on that
  environment's result and never abort the others
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from .cancellation import CancellationToken
from .config import PromoteConfig
from .environments import EnvironmentRegistry, resolve_source
from .errors import InvalidPromotionRequestError, PromotionError
from .gitclient import GitClient
from .models import Environment, PromotionStrategy
from .scm import ScmProvider
from .strategy import PromotionStrategyEvaluator, StrategyDecision
from .versions import ResolvedVersion, VersionProvenance, VersionResolver
from .workflow import (
    PromotionOutcome,
    PromotionResult,
    PullRequestWorkflow,
    WorkflowTarget,
)

logger = logging.getLogger(__name__)

# Application names are DNS-label-like, optionally with a repository prefix
VALID_APPLICATION_PATTERN = r"^([a-z0-9][a-z0-9.-]{0,62}/)?[a-z0-9]([a-z0-9.-]{0,61}[a-z0-9])?$"
VALID_ENVIRONMENT_PATTERN = r"^[a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?$"
# Semantic-version-like: 1, 1.2, 1.2.3, v1.2.3, 1.2.3-rc.1+build.5
VALID_VERSION_PATTERN = r"^v?\d+(\.\d+){0,2}([-+][0-9A-Za-z.+-]+)?$"


@dataclass(frozen=True)
class PromotionRequest:
    """One promotion invocation. Validated at construction.

    Attributes:
        application: Application to promote.
        version: Version to pin; empty resolves the latest from the version stream.
        environment: Target environment name.
        all_automatic: Promote to every Automatic permanent environment instead.
        batch_mode: Non-interactive run; Manual environments are not waited on.
        no_poll: Do not wait for merge and do not request auto-merge.
        alias: Declaration key to use instead of the application name.
    """

    application: str
    version: str = ""
    environment: str = ""
    all_automatic: bool = False
    batch_mode: bool = False
    no_poll: bool = False
    alias: str | None = None

    def __post_init__(self) -> None:
        errors: list[str] = []

        if not self.application:
            errors.append("application must not be empty")
        elif not re.match(VALID_APPLICATION_PATTERN, self.application):
            errors.append(f"application '{self.application}' is not a valid application name")

        if self.version and not re.match(VALID_VERSION_PATTERN, self.version):
            errors.append(f"version '{self.version}' is not a valid version")

        if self.all_automatic and self.environment:
            errors.append("environment and all_automatic are mutually exclusive")
        elif not self.all_automatic and not self.environment:
            errors.append("either environment or all_automatic is required")
        elif self.environment and not re.match(VALID_ENVIRONMENT_PATTERN, self.environment):
            errors.append(f"environment '{self.environment}' is not a valid environment name")

        if self.alias is not None and not re.match(VALID_APPLICATION_PATTERN, self.alias):
            errors.append(f"alias '{self.alias}' is not a valid application name")

        if errors:
            raise InvalidPromotionRequestError(
                "Invalid promotion request:\n" + "\n".join(f"  - {e}" for e in errors)
            )


@dataclass
class EngineResult:
    """Per-environment results of one promotion request."""

    application: str
    version: str
    provenance: VersionProvenance
    results: list[PromotionResult] = field(default_factory=list)
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None

    @property
    def success(self) -> bool:
        """True if no environment failed or was rejected."""
        return all(r.success for r in self.results)

    @property
    def failed(self) -> list[PromotionResult]:
        return [r for r in self.results if not r.success]

    def result_for(self, environment: str) -> PromotionResult | None:
        for result in self.results:
            if result.environment == environment:
                return result
        return None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging/CLI output."""
        duration = 0.0
        if self.end_time is not None:
            duration = (self.end_time - self.start_time).total_seconds()
        return {
            "application": self.application,
            "version": self.version,
            "provenance": self.provenance.value,
            "success": self.success,
            "results": [r.to_dict() for r in self.results],
            "duration_seconds": round(duration, 3),
        }


class PromoteEngine:
    """Promotes an application version into one or more environments.

    Dependencies are injected so that the registry, version stream, git
    transport and source-control host can be replaced in tests.
    """

    def __init__(
        self,
        registry: EnvironmentRegistry,
        versions: VersionResolver,
        git: GitClient,
        scm: ScmProvider,
        config: PromoteConfig | None = None,
        evaluator: PromotionStrategyEvaluator | None = None,
    ) -> None:
        self._registry = registry
        self._versions = versions
        self._config = config or PromoteConfig()
        self._evaluator = evaluator or PromotionStrategyEvaluator()
        self._workflow = PullRequestWorkflow(git, scm, self._config)

    async def promote(
        self, request: PromotionRequest, token: CancellationToken | None = None
    ) -> EngineResult:
        """Run a promotion request.

        Args:
            request: Validated promotion request.
            token: Cancellation token shared by every workflow of this request.

        Returns:
            EngineResult with one entry per target environment.

        Raises:
            PromotionError: If the version or target environments cannot be
                resolved. No repository has been touched in that case.
        """
        token = token or CancellationToken()

        resolved = await token.run(
            self._versions.resolve, request.application, request.version
        )
        targets = await token.run(self._resolve_targets, request)

        engine_result = EngineResult(
            application=request.application,
            version=resolved.version,
            provenance=resolved.provenance,
        )

        logger.info(
            "Starting promotion",
            extra={
                "application": request.application,
                "version": resolved.version,
                "provenance": resolved.provenance.value,
                "environments": [env.name for env in targets],
                "no_poll": request.no_poll,
                "batch_mode": request.batch_mode,
            },
        )

        if not targets:
            logger.warning(
                "No environments to promote to",
                extra={"application": request.application, "all_automatic": request.all_automatic},
            )

        loop = asyncio.get_running_loop()
        timeout_handle = None
        if self._config.timeout_seconds is not None:
            timeout_handle = loop.call_later(
                self._config.timeout_seconds,
                token.cancel,
                f"timed out after {self._config.timeout_seconds}s",
            )

        semaphore = asyncio.Semaphore(self._config.max_workers)
        try:
            results = await asyncio.gather(
                *(
                    self._promote_environment(env, request, resolved, token, semaphore)
                    for env in targets
                )
            )
        finally:
            if timeout_handle is not None:
                timeout_handle.cancel()

        engine_result.results = list(results)
        engine_result.end_time = datetime.now(UTC)

        logger.info(
            "Promotion complete",
            extra={
                "application": request.application,
                "version": resolved.version,
                "success": engine_result.success,
                "outcomes": {r.environment: r.outcome.value for r in engine_result.results},
            },
        )
        return engine_result

    def promote_sync(
        self, request: PromotionRequest, token: CancellationToken | None = None
    ) -> EngineResult:
        """Synchronous wrapper around promote()."""
        return asyncio.run(self.promote(request, token))

    def _resolve_targets(self, request: PromotionRequest) -> list[Environment]:
        if not request.all_automatic:
            return [self._registry.get_environment(request.environment)]

        environments = self._registry.list_environments(self._config.registry_namespace)
        return self._evaluator.select_automatic(environments)

    async def _promote_environment(
        self,
        environment: Environment,
        request: PromotionRequest,
        resolved: ResolvedVersion,
        token: CancellationToken,
        semaphore: asyncio.Semaphore,
    ) -> PromotionResult:
        decision = self._evaluator.evaluate(environment, disable_auto_merge=request.no_poll)
        if not decision.proceed:
            logger.info(
                "Skipping environment",
                extra={"environment": environment.name, "reason": decision.reason},
            )
            return self._finished(
                environment, request, resolved, decision, PromotionOutcome.SKIPPED
            )

        try:
            source, used_fallback = resolve_source(environment, self._registry)
        except PromotionError as e:
            return self._finished(
                environment, request, resolved, decision, PromotionOutcome.FAILED, e
            )

        target = WorkflowTarget(
            environment=environment, source=source, used_dev_fallback=used_fallback
        )

        async with semaphore:
            try:
                return await self._workflow.run(
                    target,
                    request.application,
                    resolved,
                    decision,
                    token,
                    alias=request.alias,
                    poll=self._should_poll(request, decision),
                )
            except Exception as e:
                # Unexpected failure stays scoped to this environment
                logger.exception(
                    "Unexpected error promoting environment",
                    extra={"environment": environment.name, "application": request.application},
                )
                return self._finished(
                    environment, request, resolved, decision, PromotionOutcome.FAILED, e
                )

    @staticmethod
    def _should_poll(request: PromotionRequest, decision: StrategyDecision) -> bool:
        if request.no_poll:
            return False
        # A human merge has no upper bound; batch runs do not wait for it
        return not (request.batch_mode and decision.strategy == PromotionStrategy.MANUAL)

    @staticmethod
    def _finished(
        environment: Environment,
        request: PromotionRequest,
        resolved: ResolvedVersion,
        decision: StrategyDecision,
        outcome: PromotionOutcome,
        error: Exception | None = None,
    ) -> PromotionResult:
        result = PromotionResult(
            environment=environment.name,
            application=request.application,
            version=resolved.version,
            outcome=outcome,
            namespace=environment.target_namespace,
            error=error,
            decision=decision,
        )
        result.end_time = datetime.now(UTC)
        return result
