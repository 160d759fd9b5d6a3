"""Pydantic models for environment records and GitOps declarations.

These models provide:
1. Type-safe YAML parsing
2. Validation at the boundary (fail fast, fail loudly)
3. A uniform ApplicationDeclaration view over every repository layout
"""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Any

from pydantic import BaseModel, Field, field_validator

# =============================================================================
# Environment Records
# =============================================================================


class PromotionStrategy(str, Enum):
    """How releases reach an environment."""

    AUTOMATIC = "Automatic"
    MANUAL = "Manual"
    NEVER = "Never"


class EnvironmentKind(str, Enum):
    """Role of an environment in the promotion pipeline."""

    DEVELOPMENT = "Development"
    PERMANENT = "Permanent"
    PREVIEW = "Preview"
    TEST = "Test"
    EDIT = "Edit"


class SourceKind(str, Enum):
    """Kind of repository backing an environment."""

    GIT = "Git"
    OTHER = "Other"


def _match_enum(enum_cls: type[Enum], value: Any) -> Any:
    """Match enum values case-insensitively, records are hand written."""
    if isinstance(value, str):
        for member in enum_cls:
            if member.value.lower() == value.lower():
                return member
    return value


class EnvironmentSource(BaseModel):
    """Repository declaring the environment's desired state."""

    model_config = {"extra": "ignore", "frozen": True}

    kind: SourceKind = SourceKind.GIT
    url: str = ""
    ref: str = ""

    @field_validator("kind", mode="before")
    @classmethod
    def normalize_kind(cls, v: Any) -> Any:
        if v in (None, ""):
            return SourceKind.GIT
        return _match_enum(SourceKind, v)

    @property
    def is_git(self) -> bool:
        """Check if this source points at a git repository."""
        return self.kind == SourceKind.GIT and bool(self.url)


class Environment(BaseModel):
    """An environment record read from the registry.

    Owned by the registry. The promotion engine only ever reads it.
    """

    model_config = {"extra": "ignore", "frozen": True, "populate_by_name": True}

    name: Annotated[str, Field(min_length=1, max_length=63)]
    registry_namespace: str = Field("", alias="registryNamespace")
    namespace: str = ""
    label: str = ""
    kind: EnvironmentKind = EnvironmentKind.PERMANENT
    order: int = 0
    promotion_strategy: PromotionStrategy = Field(
        PromotionStrategy.MANUAL, alias="promotionStrategy"
    )
    source: EnvironmentSource = Field(default_factory=EnvironmentSource)
    remote_cluster: bool = Field(False, alias="remoteCluster")

    @field_validator("kind", mode="before")
    @classmethod
    def normalize_env_kind(cls, v: Any) -> Any:
        if v in (None, ""):
            return EnvironmentKind.PERMANENT
        return _match_enum(EnvironmentKind, v)

    @field_validator("promotion_strategy", mode="before")
    @classmethod
    def normalize_strategy(cls, v: Any) -> Any:
        if v in (None, ""):
            return PromotionStrategy.MANUAL
        # "Auto" is accepted as shorthand in hand-written records
        if isinstance(v, str) and v.lower() == "auto":
            return PromotionStrategy.AUTOMATIC
        return _match_enum(PromotionStrategy, v)

    @property
    def target_namespace(self) -> str:
        """Namespace applications are deployed into."""
        return self.namespace or f"jx-{self.name}"

    @property
    def is_development(self) -> bool:
        return self.kind == EnvironmentKind.DEVELOPMENT


# =============================================================================
# Declarations
# =============================================================================


class ApplicationDeclaration(BaseModel):
    """One application's pinned version inside a declaration file.

    ``key`` is what uniqueness is enforced on: the alias when one is set,
    otherwise the bare application name.
    """

    model_config = {"extra": "ignore", "frozen": True}

    name: Annotated[str, Field(min_length=1)]
    version: str = ""
    namespace: str = ""
    reference: str = ""  # chart reference or chart repository URL
    alias: str = ""
    overrides: dict[str, Any] = Field(default_factory=dict)

    @property
    def key(self) -> str:
        return self.alias or self.name


class ManifestApp(BaseModel):
    """Entry of the ``apps:`` list in ``jx-apps.yml``."""

    model_config = {"extra": "allow"}

    name: Annotated[str, Field(min_length=1)]
    version: str | None = None
    namespace: str | None = None

    @field_validator("version", mode="before")
    @classmethod
    def stringify_version(cls, v: Any) -> Any:
        return _stringify(v)


class HelmfileRelease(BaseModel):
    """Entry of the ``releases:`` list in a helmfile."""

    model_config = {"extra": "allow"}

    name: str | None = None
    chart: Annotated[str, Field(min_length=1)]
    version: str | None = None
    namespace: str | None = None

    @field_validator("version", mode="before")
    @classmethod
    def stringify_version(cls, v: Any) -> Any:
        return _stringify(v)

    @property
    def app_name(self) -> str:
        """Release name, or the chart name without its repository prefix."""
        return self.name or self.chart.rsplit("/", 1)[-1]


class RequirementDependency(BaseModel):
    """Entry of the ``dependencies:`` list in ``env/requirements.yaml``."""

    model_config = {"extra": "allow"}

    name: Annotated[str, Field(min_length=1)]
    version: str | None = None
    repository: str | None = None
    alias: str | None = None

    @field_validator("version", mode="before")
    @classmethod
    def stringify_version(cls, v: Any) -> Any:
        return _stringify(v)


def _stringify(v: Any) -> Any:
    # YAML reads unquoted 1.2 as a float
    if isinstance(v, int | float) and not isinstance(v, bool):
        return str(v)
    return v
