"""Version resolution against a version stream.

A version stream is a catalog of known application versions. When a
promotion request carries no explicit version the latest version from the
stream is used.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

import yaml

from .errors import VersionNotFoundError, VersionStreamUnavailableError

logger = logging.getLogger(__name__)

# Kinds of entries in a version stream checkout, searched in order
VERSION_STREAM_KINDS = ("charts", "apps", "packages")
VERSION_FILE_SUFFIXES = (".yml", ".yaml")


class VersionProvenance(str, Enum):
    """Where a resolved version came from."""

    EXPLICIT = "explicit"
    VERSION_STREAM = "version_stream"


@dataclass(frozen=True)
class ResolvedVersion:
    """A version ready to be pinned. Never persisted."""

    version: str
    provenance: VersionProvenance

    def __str__(self) -> str:
        return self.version


# =============================================================================
# Version Stream Interface
# =============================================================================


class VersionStream:
    """Abstract interface for looking up the latest version of an application.

    Implementations:
    - DirectoryVersionStream: A version stream checkout on disk
    """

    def resolve_latest(self, application: str) -> str | None:
        """Get the latest known version of an application.

        Returns:
            The version, or None if the application is not in the stream.

        Raises:
            VersionStreamUnavailableError: If the stream cannot be read.
        """
        raise NotImplementedError


class DirectoryVersionStream(VersionStream):
    """Version stream laid out as ``<kind>/[<prefix>/]<application>.yml``.

    Each file is a YAML mapping with at least a ``version`` key, e.g.
    ``charts/jenkins-x/myapp.yml`` containing ``version: 1.2.3``.
    """

    def __init__(self, root: Path) -> None:
        self._root = root

    @property
    def root(self) -> Path:
        return self._root

    def resolve_latest(self, application: str) -> str | None:
        if not self._root.is_dir():
            raise VersionStreamUnavailableError(f"Version stream not found: {self._root}")

        path = self._find_version_file(application)
        if path is None:
            return None

        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError) as e:
            raise VersionStreamUnavailableError(f"Failed to read {path}: {e}") from e
        except yaml.YAMLError as e:
            raise VersionStreamUnavailableError(f"Invalid YAML in {path}: {e}") from e

        if not isinstance(data, dict):
            raise VersionStreamUnavailableError(f"Version file must be a YAML mapping: {path}")

        version = data.get("version")
        if version in (None, ""):
            return None
        return str(version)

    def _find_version_file(self, application: str) -> Path | None:
        # Application may be given with a repository prefix, e.g. "jenkins-x/myapp"
        prefix, _, name = application.rpartition("/")

        for kind in VERSION_STREAM_KINDS:
            kind_dir = self._root / kind
            if not kind_dir.is_dir():
                continue
            for suffix in VERSION_FILE_SUFFIXES:
                if prefix:
                    candidate = kind_dir / prefix / f"{name}{suffix}"
                    if candidate.is_file():
                        return candidate
                    continue
                direct = kind_dir / f"{name}{suffix}"
                if direct.is_file():
                    return direct
                matches = sorted(kind_dir.glob(f"*/{name}{suffix}"))
                if matches:
                    if len(matches) > 1:
                        logger.warning(
                            "Application found under several prefixes, using first",
                            extra={"application": application, "path": str(matches[0])},
                        )
                    return matches[0]
        return None


# =============================================================================
# Resolver
# =============================================================================


class VersionResolver:
    """Resolves the version to promote."""

    def __init__(self, stream: VersionStream | None = None) -> None:
        self._stream = stream

    def resolve(self, application: str, explicit_version: str = "") -> ResolvedVersion:
        """Resolve the version of an application.

        An explicit version is returned verbatim without touching the stream.

        Raises:
            VersionNotFoundError: If the stream does not know the application.
            VersionStreamUnavailableError: If no stream is configured or it
                cannot be read.
        """
        if explicit_version:
            return ResolvedVersion(explicit_version, VersionProvenance.EXPLICIT)

        if self._stream is None:
            raise VersionStreamUnavailableError(
                f"No version given for '{application}' and no version stream configured"
            )

        version = self._stream.resolve_latest(application)
        if not version:
            raise VersionNotFoundError(application)

        logger.info(
            "Resolved version from version stream",
            extra={"application": application, "version": version},
        )
        return ResolvedVersion(version, VersionProvenance.VERSION_STREAM)
