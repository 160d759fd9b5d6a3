"""Repository layout detection.

GitOps repositories declare application versions in one of three shapes:

- TEMPLATED_VALUES: ``helmfile.yaml`` releases, optionally split into
  per-namespace helmfiles under ``helmfiles/<namespace>/``
- FLAT_MANIFEST_LIST: ``jx-apps.yml`` with an ``apps:`` list
- PINNED_VERSION_FILE: ``env/requirements.yaml`` dependencies rendered by a
  separate helm step

Detection checks marker files in a fixed priority order, most specific
first. No file is read, so an UNKNOWN repository is never touched.
"""

from __future__ import annotations

import logging
from enum import Enum
from pathlib import Path

logger = logging.getLogger(__name__)


class LayoutKind(str, Enum):
    """Supported declaration formats."""

    TEMPLATED_VALUES = "templated_values"
    FLAT_MANIFEST_LIST = "flat_manifest_list"
    PINNED_VERSION_FILE = "pinned_version_file"
    UNKNOWN = "unknown"


HELMFILE_PATH = "helmfile.yaml"
APPS_MANIFEST_PATH = "jx-apps.yml"
REQUIREMENTS_PATH = "env/requirements.yaml"

# Priority order: first marker found wins
LAYOUT_MARKERS: tuple[tuple[str, LayoutKind], ...] = (
    (HELMFILE_PATH, LayoutKind.TEMPLATED_VALUES),
    (APPS_MANIFEST_PATH, LayoutKind.FLAT_MANIFEST_LIST),
    (REQUIREMENTS_PATH, LayoutKind.PINNED_VERSION_FILE),
)


class RepositoryLayoutDetector:
    """Determines the declaration format of a working copy.

    With ``strict=True`` a repository carrying more than one marker is
    reported as UNKNOWN instead of picking the highest priority marker.
    """

    def __init__(self, strict: bool = False) -> None:
        self._strict = strict

    def detect(self, root: Path) -> LayoutKind:
        """Detect the layout of a checked-out repository.

        Args:
            root: Working copy root.

        Returns:
            Detected layout, UNKNOWN if no (or, in strict mode, several)
            markers are present.
        """
        found = [kind for marker, kind in LAYOUT_MARKERS if (root / marker).is_file()]

        if not found:
            logger.warning(
                "No layout marker found in repository",
                extra={"root": str(root), "markers": [m for m, _ in LAYOUT_MARKERS]},
            )
            return LayoutKind.UNKNOWN

        if len(found) > 1:
            if self._strict:
                logger.warning(
                    "Several layout markers found, refusing to guess",
                    extra={"root": str(root), "layouts": [k.value for k in found]},
                )
                return LayoutKind.UNKNOWN
            logger.info(
                "Several layout markers found, using highest priority",
                extra={"root": str(root), "layout": found[0].value},
            )

        return found[0]

