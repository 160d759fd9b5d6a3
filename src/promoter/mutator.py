"""Version mutation of GitOps declaration files.

Rewrites the declaration file of a detected layout so that an application is
pinned at a version:

- present entry: only its version field changes
- same version already pinned: nothing is written (changed=False)
- absent entry: a new entry ``<repo-prefix>/<application>`` is added in the
  target namespace, in sorted position when the list is sorted, appended
  otherwise

Files are edited round-trip with ruamel.yaml: comments, key order, scalar
quoting and indentation of untouched entries are written back as they were
read, so the diff of a promotion is the pinned line (or the new entry) alone.

Layout dispatch happens on the LayoutKind tag; there are no per-layout
subclasses.
"""

from __future__ import annotations

import bisect
import logging
from dataclasses import dataclass
from io import StringIO
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ValidationError
from ruamel.yaml import YAML
from ruamel.yaml.comments import CommentedMap, CommentedSeq
from ruamel.yaml.error import YAMLError
from ruamel.yaml.scalarstring import ScalarString
from ruamel.yaml.util import load_yaml_guess_indent

from .config import (
    DEFAULT_CHART_REPO_PREFIX,
    DEFAULT_CHART_REPOSITORY,
    MAX_DECLARATION_FILE_SIZE_BYTES,
)
from .errors import MalformedDeclarationError, UnsupportedLayoutError
from .layout import (
    APPS_MANIFEST_PATH,
    HELMFILE_PATH,
    REQUIREMENTS_PATH,
    LayoutKind,
)
from .models import (
    ApplicationDeclaration,
    HelmfileRelease,
    ManifestApp,
    RequirementDependency,
)

logger = logging.getLogger(__name__)

NESTED_HELMFILE_TEMPLATE = "helmfiles/{namespace}/helmfile.yaml"

# Keys of an entry that are mapped onto ApplicationDeclaration fields
_MANIFEST_KEYS = {"name", "version", "namespace", "alias"}
_RELEASE_KEYS = {"name", "chart", "version", "namespace"}
_DEPENDENCY_KEYS = {"name", "version", "repository", "alias"}


@dataclass(frozen=True)
class MutationResult:
    """Outcome of pinning a version."""

    changed: bool
    path: str  # declaration file, relative to the repository root
    previous_version: str | None = None
    created: bool = False  # True if a new entry was added


# =============================================================================
# YAML helpers
# =============================================================================


@dataclass
class DeclarationFile:
    """A parsed declaration file and the YAML instance that reproduces its style."""

    path: Path
    data: dict[str, Any]
    yaml: YAML


def _round_trip_yaml(
    mapping: int = 2, sequence: int = 2, offset: int = 0, explicit_start: bool = False
) -> YAML:
    yaml = YAML(typ="rt")
    yaml.preserve_quotes = True
    yaml.width = 4096
    yaml.explicit_start = explicit_start
    yaml.indent(mapping=mapping, sequence=sequence, offset=offset)
    return yaml


def _yaml_for(content: str) -> YAML:
    """Build a round-trip YAML instance matching the indentation of ``content``."""
    _, indent, offset = load_yaml_guess_indent(content)
    indent = indent or 2
    offset = offset or 0
    mapping = indent - offset if indent > offset else 2
    return _round_trip_yaml(
        mapping=mapping,
        sequence=indent,
        offset=offset,
        explicit_start=content.lstrip().startswith("---"),
    )


def load_declaration_file(path: Path) -> DeclarationFile:
    """Load a declaration file for round-trip editing.

    Comments, key order and scalar quoting survive a later write. An empty
    file is an empty mapping.

    Raises:
        MalformedDeclarationError: If the file cannot be read or parsed.
    """
    # SECURITY: Check file size before reading to prevent DoS
    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise MalformedDeclarationError(f"Failed to stat {path}: {e}") from e

    if file_size > MAX_DECLARATION_FILE_SIZE_BYTES:
        raise MalformedDeclarationError(
            f"Declaration file exceeds maximum size of "
            f"{MAX_DECLARATION_FILE_SIZE_BYTES} bytes: {path}"
        )

    try:
        content = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise MalformedDeclarationError(f"Failed to read {path}: {e}") from e

    try:
        yaml = _yaml_for(content)
        data = yaml.load(content)
    except YAMLError as e:
        raise MalformedDeclarationError(f"Invalid YAML in {path}: {e}") from e

    if data is None:
        data = CommentedMap()
    if not isinstance(data, dict):
        raise MalformedDeclarationError(f"Declaration file must contain a YAML mapping: {path}")
    return DeclarationFile(path=path, data=data, yaml=yaml)


def dump_declaration(data: dict[str, Any], yaml: YAML | None = None) -> str:
    """Serialize a declaration mapping, in the style of ``yaml`` if given."""
    if yaml is None:
        yaml = _round_trip_yaml()
    buf = StringIO()
    yaml.dump(data, buf)
    return buf.getvalue()


def _scalar_text(value: Any) -> str:
    """Text of a scalar as written in the file: 1.10 stays "1.10", not "1.1"."""
    if isinstance(value, str) or not isinstance(value, (int, float)):
        return str(value)
    buf = StringIO()
    _round_trip_yaml().dump(value, buf)
    return buf.getvalue().splitlines()[0]


def _with_version(value: str, previous: Any) -> Any:
    # Keep the quoting style of the value being replaced
    if isinstance(previous, ScalarString):
        return type(previous)(value)
    return value


def _model_input(entry: dict[str, Any]) -> dict[str, Any]:
    if entry.get("version") is None:
        return entry
    return {**entry, "version": _scalar_text(entry["version"])}


def _entry_list(data: dict[str, Any], key: str, path: Path) -> list[dict[str, Any]]:
    entries = data.get(key)
    if entries is None:
        entries = CommentedSeq()
        data[key] = entries
    if not isinstance(entries, list):
        raise MalformedDeclarationError(f"'{key}' must be a list in {path}")
    for index, entry in enumerate(entries):
        if not isinstance(entry, dict):
            raise MalformedDeclarationError(f"{key}[{index}] must be a mapping in {path}")
    return entries


def _validate_entries(
    entries: list[dict[str, Any]], model: type[BaseModel], key: str, path: Path
) -> list[Any]:
    validated = []
    for index, entry in enumerate(entries):
        try:
            validated.append(model.model_validate(_model_input(entry)))
        except ValidationError as e:
            problems = "; ".join(
                f"{'.'.join(str(x) for x in err['loc'])}: {err['msg']}" for err in e.errors()
            )
            raise MalformedDeclarationError(f"Invalid {key}[{index}] in {path}: {problems}") from e
    return validated


def _strip_prefix(reference: str) -> str:
    return reference.rsplit("/", 1)[-1]


def _release_sort_key(entry: dict[str, Any]) -> str:
    return str(entry.get("name") or _strip_prefix(str(entry.get("chart", ""))))


def _release_alias(release: HelmfileRelease) -> str:
    # A release named differently from its chart is an alias
    if release.name and release.name != _strip_prefix(release.chart):
        return release.name
    return ""


def _insert_entry(entries: list[dict[str, Any]], new_entry: dict[str, Any], sort_key: Any) -> None:
    """Insert keeping alphabetic order if the list is already sorted."""
    keys = [sort_key(e) for e in entries]
    if len(keys) >= 2 and keys == sorted(keys):
        entries.insert(bisect.bisect_right(keys, sort_key(new_entry)), new_entry)
    else:
        entries.append(new_entry)


def _namespace_matches(
    entry_namespace: str | None, default: str | None, target: str | None
) -> bool:
    if not target:
        return True
    effective = entry_namespace or default
    return not effective or effective == target


# =============================================================================
# Mutator
# =============================================================================


class VersionMutator:
    """Pins application versions in a working copy."""

    def __init__(
        self,
        chart_repo_prefix: str = DEFAULT_CHART_REPO_PREFIX,
        chart_repository: str = DEFAULT_CHART_REPOSITORY,
    ) -> None:
        self._prefix = chart_repo_prefix
        self._chart_repository = chart_repository

    def mutate(
        self,
        root: Path,
        layout: LayoutKind,
        application: str,
        version: str,
        namespace: str,
        *,
        alias: str | None = None,
    ) -> MutationResult:
        """Pin ``application`` at ``version`` in the declaration file.

        Args:
            root: Working copy root.
            layout: Layout reported by RepositoryLayoutDetector.
            application: Application name.
            version: Version to pin.
            namespace: Target namespace for new entries.
            alias: Declare the application under this alias.

        Returns:
            MutationResult; ``changed`` is False when nothing was written.

        Raises:
            UnsupportedLayoutError: If the layout is UNKNOWN.
            MalformedDeclarationError: If the existing file cannot be parsed.
        """
        # "jenkins-x/myapp" pins myapp from the jenkins-x chart repository
        prefix, _, name = application.rpartition("/")
        chart_prefix = prefix or self._prefix

        if layout == LayoutKind.TEMPLATED_VALUES:
            result = self._mutate_helmfile(root, name, version, namespace, alias, chart_prefix)
        elif layout == LayoutKind.FLAT_MANIFEST_LIST:
            result = self._mutate_manifest(root, name, version, namespace, alias, chart_prefix)
        elif layout == LayoutKind.PINNED_VERSION_FILE:
            result = self._mutate_requirements(root, name, version, alias)
        else:
            raise UnsupportedLayoutError(
                f"Cannot pin '{application}': repository layout at {root} is not supported"
            )

        logger.info(
            "Declaration mutation",
            extra={
                "application": application,
                "version": version,
                "layout": layout.value,
                "path": result.path,
                "changed": result.changed,
                "created": result.created,
                "previous_version": result.previous_version,
            },
        )
        return result

    def read_declarations(
        self, root: Path, layout: LayoutKind
    ) -> list[ApplicationDeclaration]:
        """Parse the declaration file(s) of a layout.

        Raises:
            UnsupportedLayoutError: If the layout is UNKNOWN.
            MalformedDeclarationError: If a file cannot be parsed.
        """
        if layout == LayoutKind.TEMPLATED_VALUES:
            return self._read_helmfile_declarations(root)
        if layout == LayoutKind.FLAT_MANIFEST_LIST:
            return self._read_manifest_declarations(root)
        if layout == LayoutKind.PINNED_VERSION_FILE:
            return self._read_requirements_declarations(root)
        raise UnsupportedLayoutError(f"Repository layout at {root} is not supported")

    def read_version(
        self,
        root: Path,
        layout: LayoutKind,
        application: str,
        *,
        alias: str | None = None,
        namespace: str | None = None,
    ) -> str | None:
        """Get the version pinned for an application, None if not declared."""
        key = alias or _strip_prefix(application)
        for declaration in self.read_declarations(root, layout):
            if declaration.key != key:
                continue
            if namespace and declaration.namespace and declaration.namespace != namespace:
                continue
            return declaration.version or None
        return None

    # -------------------------------------------------------------------------
    # Shared
    # -------------------------------------------------------------------------

    def _pin_existing(
        self, document: DeclarationFile, relative: str, entry: dict[str, Any], version: str
    ) -> MutationResult:
        current = entry.get("version")
        previous = None if current is None else _scalar_text(current)
        if previous == version:
            return MutationResult(changed=False, path=relative, previous_version=previous)
        entry["version"] = _with_version(version, current)
        self._write(document)
        return MutationResult(changed=True, path=relative, previous_version=previous)

    def _write(self, document: DeclarationFile) -> None:
        document.path.parent.mkdir(parents=True, exist_ok=True)
        document.path.write_text(
            dump_declaration(document.data, document.yaml), encoding="utf-8"
        )

    # -------------------------------------------------------------------------
    # Flat manifest list (jx-apps.yml)
    # -------------------------------------------------------------------------

    def _mutate_manifest(
        self,
        root: Path,
        application: str,
        version: str,
        namespace: str,
        alias: str | None,
        chart_prefix: str,
    ) -> MutationResult:
        path = root / APPS_MANIFEST_PATH
        document = load_declaration_file(path)
        data = document.data
        entries = _entry_list(data, "apps", path)
        _validate_entries(entries, ManifestApp, "apps", path)
        default_ns = data.get("defaultNamespace")

        for entry in entries:
            entry_name = _strip_prefix(str(entry["name"]))
            if not self._entry_matches(entry, entry_name, application, alias):
                continue
            if not _namespace_matches(entry.get("namespace"), default_ns, namespace):
                continue
            return self._pin_existing(document, APPS_MANIFEST_PATH, entry, version)

        new_entry = CommentedMap([("name", f"{chart_prefix}/{application}"), ("version", version)])
        if alias:
            new_entry["alias"] = alias
        if namespace and namespace != default_ns:
            new_entry["namespace"] = namespace
        _insert_entry(entries, new_entry, lambda e: _strip_prefix(str(e.get("name", ""))))
        self._write(document)
        return MutationResult(changed=True, path=APPS_MANIFEST_PATH, created=True)

    def _read_manifest_declarations(self, root: Path) -> list[ApplicationDeclaration]:
        path = root / APPS_MANIFEST_PATH
        data = load_declaration_file(path).data
        entries = _entry_list(data, "apps", path)
        apps = _validate_entries(entries, ManifestApp, "apps", path)
        default_ns = data.get("defaultNamespace") or ""
        return [
            ApplicationDeclaration(
                name=_strip_prefix(app.name),
                version=app.version or "",
                namespace=app.namespace or default_ns,
                reference=app.name,
                alias=str(entry.get("alias") or ""),
                overrides={k: v for k, v in entry.items() if k not in _MANIFEST_KEYS},
            )
            for app, entry in zip(apps, entries, strict=True)
        ]

    @staticmethod
    def _entry_matches(
        entry: dict[str, Any], entry_name: str, application: str, alias: str | None
    ) -> bool:
        if alias:
            return entry.get("alias") == alias or (
                not entry.get("alias") and entry_name == alias
            )
        return not entry.get("alias") and entry_name == application

    # -------------------------------------------------------------------------
    # Templated values (helmfile.yaml)
    # -------------------------------------------------------------------------

    def _helmfile_target(self, root: Path, namespace: str) -> tuple[Path, str, bool]:
        """Resolve which helmfile holds releases for a namespace.

        Returns:
            Tuple of (path, relative path, nested).
        """
        root_path = root / HELMFILE_PATH
        data = load_declaration_file(root_path).data
        if "helmfiles" in data and "releases" not in data:
            relative = NESTED_HELMFILE_TEMPLATE.format(namespace=namespace)
            return root / relative, relative, True
        return root_path, HELMFILE_PATH, False

    def _mutate_helmfile(
        self,
        root: Path,
        application: str,
        version: str,
        namespace: str,
        alias: str | None,
        chart_prefix: str,
    ) -> MutationResult:
        path, relative, nested = self._helmfile_target(root, namespace)

        if nested and not path.exists():
            document = DeclarationFile(
                path=path,
                data=CommentedMap([("namespace", namespace), ("releases", CommentedSeq())]),
                yaml=_round_trip_yaml(),
            )
        else:
            document = load_declaration_file(path)
        data = document.data

        entries = _entry_list(data, "releases", path)
        releases = _validate_entries(entries, HelmfileRelease, "releases", path)
        default_ns = data.get("namespace")

        for entry, release in zip(entries, releases, strict=True):
            if not self._entry_matches(entry, release.app_name, application, alias):
                continue
            if not _namespace_matches(release.namespace, default_ns, namespace):
                continue
            return self._pin_existing(document, relative, entry, version)

        new_entry = CommentedMap(
            [
                ("chart", f"{chart_prefix}/{application}"),
                ("version", version),
                ("name", alias or application),
            ]
        )
        if namespace and namespace != default_ns:
            new_entry["namespace"] = namespace
        _insert_entry(entries, new_entry, _release_sort_key)
        self._ensure_chart_repository(root, data, nested, chart_prefix)

        if nested:
            self._ensure_nested_reference(root, relative)
        self._write(document)
        return MutationResult(changed=True, path=relative, created=True)

    def _ensure_chart_repository(
        self, root: Path, data: dict[str, Any], nested: bool, chart_prefix: str
    ) -> None:
        """Declare the chart repository of new releases if a helmfile lists repositories."""
        # Only the configured prefix has a known repository URL
        if not self._chart_repository or chart_prefix != self._prefix:
            return

        known: list[Any] = list(data.get("repositories") or [])
        if nested:
            root_data = load_declaration_file(root / HELMFILE_PATH).data
            known.extend(root_data.get("repositories") or [])

        if any(isinstance(r, dict) and r.get("name") == self._prefix for r in known):
            return
        if "repositories" not in data:
            return

        repositories = data.get("repositories")
        if not isinstance(repositories, list):
            raise MalformedDeclarationError("'repositories' must be a list in helmfile")
        repositories.append(CommentedMap([("name", self._prefix), ("url", self._chart_repository)]))

    def _ensure_nested_reference(self, root: Path, relative: str) -> None:
        root_path = root / HELMFILE_PATH
        document = load_declaration_file(root_path)
        references = document.data.get("helmfiles")
        if not isinstance(references, list):
            raise MalformedDeclarationError(f"'helmfiles' must be a list in {root_path}")

        for reference in references:
            ref_path = reference.get("path") if isinstance(reference, dict) else reference
            if ref_path == relative:
                return

        _insert_entry(
            references,
            CommentedMap([("path", relative)]),
            lambda r: str(r.get("path", "")) if isinstance(r, dict) else str(r),
        )
        self._write(document)

    def _read_helmfile_declarations(self, root: Path) -> list[ApplicationDeclaration]:
        root_path = root / HELMFILE_PATH
        root_data = load_declaration_file(root_path).data
        files: list[tuple[Path, dict[str, Any]]] = [(root_path, root_data)]

        references = root_data.get("helmfiles") or []
        if not isinstance(references, list):
            raise MalformedDeclarationError(f"'helmfiles' must be a list in {root_path}")
        for reference in references:
            ref_path = reference.get("path") if isinstance(reference, dict) else reference
            if not isinstance(ref_path, str):
                continue
            nested = root / ref_path
            if nested.is_file():
                files.append((nested, load_declaration_file(nested).data))

        declarations = []
        for path, data in files:
            if "releases" not in data:
                continue
            entries = _entry_list(data, "releases", path)
            releases = _validate_entries(entries, HelmfileRelease, "releases", path)
            default_ns = data.get("namespace") or ""
            for release, entry in zip(releases, entries, strict=True):
                declarations.append(
                    ApplicationDeclaration(
                        name=_strip_prefix(release.chart),
                        version=release.version or "",
                        namespace=release.namespace or default_ns,
                        reference=release.chart,
                        alias=_release_alias(release),
                        overrides={k: v for k, v in entry.items() if k not in _RELEASE_KEYS},
                    )
                )
        return declarations

    # -------------------------------------------------------------------------
    # Pinned version file (env/requirements.yaml)
    # -------------------------------------------------------------------------

    def _mutate_requirements(
        self, root: Path, application: str, version: str, alias: str | None
    ) -> MutationResult:
        path = root / REQUIREMENTS_PATH
        document = load_declaration_file(path)
        entries = _entry_list(document.data, "dependencies", path)
        _validate_entries(entries, RequirementDependency, "dependencies", path)

        for entry in entries:
            if alias:
                if entry.get("alias") != alias:
                    continue
            elif entry.get("alias") or entry["name"] != application:
                continue
            return self._pin_existing(document, REQUIREMENTS_PATH, entry, version)

        new_entry = CommentedMap([("name", application), ("version", version)])
        if self._chart_repository:
            new_entry["repository"] = self._chart_repository
        if alias:
            new_entry["alias"] = alias
        _insert_entry(entries, new_entry, lambda e: str(e.get("alias") or e.get("name", "")))
        self._write(document)
        return MutationResult(changed=True, path=REQUIREMENTS_PATH, created=True)

    def _read_requirements_declarations(self, root: Path) -> list[ApplicationDeclaration]:
        path = root / REQUIREMENTS_PATH
        data = load_declaration_file(path).data
        entries = _entry_list(data, "dependencies", path)
        dependencies = _validate_entries(entries, RequirementDependency, "dependencies", path)
        return [
            ApplicationDeclaration(
                name=dep.name,
                version=dep.version or "",
                reference=dep.repository or "",
                alias=dep.alias or "",
                overrides={k: v for k, v in entry.items() if k not in _DEPENDENCY_KEYS},
            )
            for dep, entry in zip(dependencies, entries, strict=True)
        ]
