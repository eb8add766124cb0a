"""Representation of the declared releases, release targets and charts.

Releases and targets are usually declared in a YAML file, for example:

```yaml
charts:
  - name: myChart
    version: 1.2.0
targets:
  - name: prod
    kubeContext: prod-cluster
    selectTags: application
    atomic: true
releases:
  - name: postgres
    chart: bitnami/postgresql
    version: 12.1.0
    tags: [database]
  - name: myApp
    chart:
      chart: myChart
    tags: [application]
    mustInstallAfter: [postgres]
    valuesDir: helm-values/myApp
    forTarget:
      prod:
        values:
          replicas: 3
      "!prod":
        wait: false
```

Blocks under `forTarget` and `forAnyTarget` are not applied when the file is
parsed. They are stored as deferred mutations and only evaluated once the
active release target is known, see `helm_releases.resolver`.
A relative `valuesDir` is resolved against the directory of the manifest file.
"""

from collections.abc import Callable
import copy
from dataclasses import dataclass, field, fields, replace
from enum import StrEnum
import logging
from pathlib import Path
from typing import Any, Optional, TypeVar

import aiofiles
import yaml
from mashumaro import DataClassDictMixin, field_options
from mashumaro.config import BaseConfig

from .exceptions import InputException

__all__ = [
    "read_manifest",
    "ReleaseManifest",
    "Release",
    "ReleaseTarget",
    "ReleaseSettings",
    "TargetBlock",
    "ChartReference",
    "ChartKind",
    "ChartDefinition",
    "InstallOptions",
    "ReleaseTestConfig",
    "FileValue",
]

_LOGGER = logging.getLogger(__name__)


DEFAULT_TARGET_NAME = "default"
ANY_TARGET = "any"
MATCH_ALL_TAGS = "*"
DEFAULT_CHART_OUTPUT_DIR = "build/helm/charts"

_T = TypeVar("_T", bound="BaseManifest")


def capitalize(name: str) -> str:
    """Capitalize the first character of a name for use in a step name."""
    return name[:1].upper() + name[1:]


def _merge_fields(obj: _T, fallback: _T) -> _T:
    """Return a copy of obj with any unset field taken from the fallback."""
    return type(obj)(
        **{
            f.name: (
                value
                if (value := getattr(obj, f.name)) is not None
                else getattr(fallback, f.name)
            )
            for f in fields(obj)  # type: ignore[arg-type]
        }
    )


def _str_list(doc: dict[str, Any], key: str, owner: str) -> list[str]:
    """Return a list of strings from a document, accepting a single string."""
    value = doc.get(key)
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise InputException(f"Invalid {owner} expected list of strings for {key}")
    return list(value)


def _mapping(doc: dict[str, Any], key: str, owner: str) -> dict[str, Any]:
    value = doc.get(key)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise InputException(f"Invalid {owner} expected mapping for {key}")
    return dict(value)


@dataclass
class BaseManifest(DataClassDictMixin):
    """Base class for all manifest objects."""

    class Config(BaseConfig):
        omit_none = True
        serialize_by_alias = True


@dataclass
class InstallOptions(BaseManifest):
    """Scalar options passed to helm when installing or uninstalling a release.

    Every field is optional. An unset field falls back to the release target
    and then to the global defaults.
    """

    replace: Optional[bool] = None
    """Force replacing the release with `helm install --replace`."""

    atomic: Optional[bool] = None
    """Roll back the release on failure."""

    wait: Optional[bool] = None
    """Wait until all resources are ready."""

    wait_for_jobs: Optional[bool] = field(
        metadata=field_options(alias="waitForJobs"), default=None
    )
    """Wait until all jobs have completed."""

    timeout: Optional[str] = None
    """Time to wait for any individual Kubernetes operation e.g. `5m0s`."""

    namespace: Optional[str] = None
    """Namespace to install the release into."""

    create_namespace: Optional[bool] = field(
        metadata=field_options(alias="createNamespace"), default=None
    )
    """Create the namespace if it does not exist."""

    dry_run: Optional[bool] = field(
        metadata=field_options(alias="dryRun"), default=None
    )
    """Simulate the operation."""

    no_hooks: Optional[bool] = field(
        metadata=field_options(alias="noHooks"), default=None
    )
    """Prevent hooks from running."""

    skip_crds: Optional[bool] = field(
        metadata=field_options(alias="skipCrds"), default=None
    )
    """Do not install CRDs from the chart."""

    history_max: Optional[int] = field(
        metadata=field_options(alias="historyMax"), default=None
    )
    """Maximum number of revisions saved per release."""

    reset_values: Optional[bool] = field(
        metadata=field_options(alias="resetValues"), default=None
    )
    """On upgrade, reset the values to the ones built into the chart."""

    reuse_values: Optional[bool] = field(
        metadata=field_options(alias="reuseValues"), default=None
    )
    """On upgrade, reuse the last release's values."""

    keep_history: Optional[bool] = field(
        metadata=field_options(alias="keepHistory"), default=None
    )
    """On uninstall, keep the release history."""

    def merge(self, fallback: "InstallOptions") -> "InstallOptions":
        """Return options where unset values are taken from the fallback."""
        return _merge_fields(self, fallback)


@dataclass
class ReleaseTestConfig(BaseManifest):
    """Configuration for running `helm test` on a release."""

    enabled: Optional[bool] = None
    """If false, the release is not tested."""

    show_logs: Optional[bool] = field(
        metadata=field_options(alias="showLogs"), default=None
    )
    """Dump the logs from the test pods."""

    timeout: Optional[str] = None
    """Time to wait for the tests to complete."""

    def merge(self, fallback: "ReleaseTestConfig") -> "ReleaseTestConfig":
        """Return a test config where unset values are taken from the fallback."""
        return _merge_fields(self, fallback)


@dataclass(frozen=True)
class FileValue:
    """A value that is read from a file, passed to helm with `--set-file`."""

    path: str


class ChartKind(StrEnum):
    """The kind of chart reference for a release."""

    COORDINATE = "coordinate"
    """A chart in a repository e.g. `bitnami/postgresql`."""

    PATH = "path"
    """A chart directory or packaged archive on the local file system."""

    URI = "uri"
    """A chart archive or OCI reference addressed by URI."""

    BUILD = "build"
    """A chart built and packaged elsewhere in the same build."""


@dataclass
class ChartReference(BaseManifest):
    """Reference to the chart that a release installs."""

    kind: ChartKind
    """The kind of reference."""

    value: str
    """The coordinate, path, URI or name of the chart definition."""

    version: Optional[str] = None
    """The version of the chart, only used for repository coordinates."""

    @classmethod
    def parse_doc(
        cls, doc: str | dict[str, Any], version: str | None = None
    ) -> "ChartReference":
        """Parse a chart reference from a string or a single-key mapping."""
        if isinstance(doc, str):
            if not doc:
                raise InputException("Invalid chart reference: empty string")
            if "://" in doc:
                return cls(kind=ChartKind.URI, value=doc, version=version)
            if doc.startswith(("/", "./", "../")) or doc.endswith(".tgz"):
                return cls(kind=ChartKind.PATH, value=doc, version=version)
            return cls(kind=ChartKind.COORDINATE, value=doc, version=version)
        if not isinstance(doc, dict):
            raise InputException(f"Invalid chart reference: {doc}")
        version = doc.get("version", version)
        if chart := doc.get("chart"):
            return cls(kind=ChartKind.BUILD, value=chart, version=version)
        if path := doc.get("path"):
            return cls(kind=ChartKind.PATH, value=path, version=version)
        if uri := doc.get("uri"):
            return cls(kind=ChartKind.URI, value=uri, version=version)
        if coordinate := doc.get("coordinate"):
            return cls(kind=ChartKind.COORDINATE, value=coordinate, version=version)
        raise InputException(
            f"Invalid chart reference missing chart, path, uri or coordinate: {doc}"
        )


@dataclass
class ChartDefinition(BaseManifest):
    """A chart that is packaged as part of the same build."""

    name: str
    """The name used by releases to refer to this chart."""

    chart_name: Optional[str] = field(
        metadata=field_options(alias="chartName"), default=None
    )
    """The name of the chart in Chart.yaml, defaults to the name."""

    version: Optional[str] = None
    """The version of the packaged chart."""

    output_dir: str = field(
        metadata=field_options(alias="outputDir"), default=DEFAULT_CHART_OUTPUT_DIR
    )
    """Directory where the packaged chart is written."""

    @classmethod
    def parse_doc(cls, doc: dict[str, Any]) -> "ChartDefinition":
        """Parse a ChartDefinition from a document."""
        if not isinstance(doc, dict) or not doc.get("name"):
            raise InputException(f"Invalid chart definition missing name: {doc}")
        return cls.from_dict(doc)

    @property
    def package_step(self) -> str:
        """Name of the build step that packages this chart."""
        return f"helmPackage{capitalize(self.name)}Chart"

    @property
    def packaged_path(self) -> str:
        """Path of the packaged chart archive."""
        chart_name = self.chart_name or self.name
        if self.version:
            return f"{self.output_dir}/{chart_name}-{self.version}.tgz"
        return f"{self.output_dir}/{chart_name}"


@dataclass
class ReleaseSettings:
    """Working copy of the configuration of a release.

    This is what `forTarget` and `forAnyTarget` blocks mutate once the active
    release target is known.
    """

    chart: ChartReference | None
    options: InstallOptions
    values: dict[str, Any]
    value_files: list[str]
    values_dir: str | None
    test: ReleaseTestConfig
    task_dependencies: list[str]

    def set_value(self, key: str, value: Any) -> None:
        """Set a value passed with `--set`."""
        self.values[key] = value

    def set_file_value(self, key: str, path: str) -> None:
        """Set a value read from a file, passed with `--set-file`."""
        self.values[key] = FileValue(path)

    def apply(self, doc: dict[str, Any], owner: str) -> None:
        """Apply a declarative override block to the settings."""
        if "chart" in doc:
            self.chart = ChartReference.parse_doc(doc["chart"], doc.get("version"))
        elif "version" in doc:
            if self.chart is None:
                raise InputException(f"Invalid {owner} sets a version without a chart")
            self.chart = replace(self.chart, version=doc["version"])
        self.options = InstallOptions.from_dict(doc).merge(self.options)
        self.values.update(_parse_values(doc, owner))
        self.value_files.extend(_str_list(doc, "valueFiles", owner))
        if "valuesDir" in doc:
            self.values_dir = doc["valuesDir"]
        if "test" in doc:
            self.test = ReleaseTestConfig.from_dict(_mapping(doc, "test", owner)).merge(
                self.test
            )
        self.task_dependencies.extend(_str_list(doc, "dependsOnTasks", owner))


def _parse_values(doc: dict[str, Any], owner: str) -> dict[str, Any]:
    """Parse `values` and `fileValues` into a single mapping of value keys."""
    values = _mapping(doc, "values", owner)
    for key, path in _mapping(doc, "fileValues", owner).items():
        if key in values:
            raise InputException(
                f"Invalid {owner} value '{key}' is declared in values and fileValues"
            )
        values[key] = FileValue(str(path))
    return values


def target_predicate(selector: str) -> Callable[[str], bool]:
    """Return a predicate over target names for a `forTarget` selector.

    The selector is a target name, a target name prefixed with `!` to match
    every other target, or `any` to match every target.
    """
    if selector == ANY_TARGET:
        return lambda name: True
    if selector.startswith("!"):
        excluded = selector[1:]
        return lambda name: name != excluded
    return lambda name: name == selector


@dataclass(frozen=True)
class TargetBlock:
    """A deferred mutation applied to a release for matching targets."""

    selector: str
    """The target selector that was declared e.g. `prod`, `!prod` or `any`."""

    predicate: Callable[[str], bool]
    """Predicate over the active target name."""

    mutation: Callable[[ReleaseSettings], None]
    """Mutation applied to the working copy of the release configuration."""

    def applies_to(self, target_name: str) -> bool:
        """Return true if the block applies to the target."""
        return self.predicate(target_name)


@dataclass
class Release:
    """A named, declared desired-state installation of a chart."""

    name: str
    """The unique name of the release."""

    chart: ChartReference | None = None
    """The chart to install."""

    options: InstallOptions = field(default_factory=InstallOptions)
    """Install options declared on the release."""

    values: dict[str, Any] = field(default_factory=dict)
    """Values passed with `--set`, or `--set-file` for `FileValue` entries."""

    value_files: list[str] = field(default_factory=list)
    """Value files passed with `--values`."""

    values_dir: str | None = None
    """Directory containing conventionally named value files."""

    base_dir: str | None = None
    """Directory that a relative values directory is resolved against."""

    tags: frozenset[str] = frozenset()
    """Tags used by selector expressions."""

    install_after: list[str] = field(default_factory=list)
    """Names of releases that must be installed before this one."""

    uninstall_after: list[str] = field(default_factory=list)
    """Names of releases that must be uninstalled before this one."""

    depends_on: list[str] = field(default_factory=list)
    """Deprecated hard dependencies on other releases."""

    task_dependencies: list[str] = field(default_factory=list)
    """Names of additional steps the install step depends on."""

    test: ReleaseTestConfig = field(default_factory=ReleaseTestConfig)
    """Configuration for `helm test`."""

    target_blocks: list[TargetBlock] = field(default_factory=list)
    """Deferred per-target configuration in declaration order."""

    def for_target(
        self, selector: str, mutation: Callable[[ReleaseSettings], None]
    ) -> None:
        """Add configuration applied when the active target matches the selector."""
        self.target_blocks.append(
            TargetBlock(
                selector=selector,
                predicate=target_predicate(selector),
                mutation=mutation,
            )
        )

    def for_any_target(self, mutation: Callable[[ReleaseSettings], None]) -> None:
        """Add configuration applied for every target."""
        self.for_target(ANY_TARGET, mutation)

    def settings(self) -> ReleaseSettings:
        """Return a new working copy of the release configuration."""
        return ReleaseSettings(
            chart=self.chart,
            options=copy.copy(self.options),
            values=copy.deepcopy(self.values),
            value_files=list(self.value_files),
            values_dir=self.values_dir,
            test=copy.copy(self.test),
            task_dependencies=list(self.task_dependencies),
        )

    @classmethod
    def parse_doc(cls, doc: dict[str, Any]) -> "Release":
        """Parse a Release from a document."""
        if not isinstance(doc, dict) or not (name := doc.get("name")):
            raise InputException(f"Invalid release missing name: {doc}")
        owner = f"release {name}"
        chart: ChartReference | None = None
        if (chart_doc := doc.get("chart")) is not None:
            chart = ChartReference.parse_doc(chart_doc, doc.get("version"))
        release = cls(
            name=name,
            chart=chart,
            options=InstallOptions.from_dict(doc),
            values=_parse_values(doc, owner),
            value_files=_str_list(doc, "valueFiles", owner),
            values_dir=doc.get("valuesDir"),
            tags=frozenset(_str_list(doc, "tags", owner)),
            install_after=_str_list(doc, "mustInstallAfter", owner),
            uninstall_after=_str_list(doc, "mustUninstallAfter", owner),
            depends_on=_str_list(doc, "dependsOn", owner),
            task_dependencies=_str_list(doc, "dependsOnTasks", owner),
            test=ReleaseTestConfig.from_dict(_mapping(doc, "test", owner)),
        )
        if release.depends_on:
            _LOGGER.warning(
                "Release %s uses deprecated dependsOn, use mustInstallAfter instead",
                name,
            )
        # Preserve declaration order across forTarget and forAnyTarget blocks
        for key, block in doc.items():
            if key == "forAnyTarget":
                release.for_any_target(_override(block, f"{owner} forAnyTarget"))
            elif key == "forTarget":
                for selector, target_doc in _mapping(doc, key, owner).items():
                    release.for_target(
                        selector,
                        _override(target_doc, f"{owner} forTarget({selector})"),
                    )
        return release


def _override(block: Any, owner: str) -> Callable[[ReleaseSettings], None]:
    """Return a mutation applying a declarative override block."""
    if block is None:
        block = {}
    if not isinstance(block, dict):
        raise InputException(f"Invalid {owner} expected mapping: {block}")

    def mutation(settings: ReleaseSettings) -> None:
        settings.apply(block, owner)

    return mutation


@dataclass
class ReleaseTarget:
    """A named deployment environment with its own defaults and tag filter."""

    name: str
    """The unique name of the release target."""

    kube_context: str | None = None
    """The kubeconfig context used for helm commands."""

    options: InstallOptions = field(default_factory=InstallOptions)
    """Install options, overridden by options declared on a release."""

    values: dict[str, Any] = field(default_factory=dict)
    """Values for every release, overridden by values of the release."""

    value_files: list[str] = field(default_factory=list)
    """Value files for every release, before the release's value files."""

    select_tags: str = MATCH_ALL_TAGS
    """Tag expression selecting the releases installed to this target."""

    test: ReleaseTestConfig = field(default_factory=ReleaseTestConfig)
    """Fallback configuration for `helm test`."""

    @classmethod
    def parse_doc(cls, doc: dict[str, Any]) -> "ReleaseTarget":
        """Parse a ReleaseTarget from a document."""
        if not isinstance(doc, dict) or not (name := doc.get("name")):
            raise InputException(f"Invalid release target missing name: {doc}")
        owner = f"release target {name}"
        select_tags = doc.get("selectTags", MATCH_ALL_TAGS)
        if not isinstance(select_tags, str):
            raise InputException(f"Invalid {owner} selectTags must be a string")
        return cls(
            name=name,
            kube_context=doc.get("kubeContext"),
            options=InstallOptions.from_dict(doc),
            values=_parse_values(doc, owner),
            value_files=_str_list(doc, "valueFiles", owner),
            select_tags=select_tags,
            test=ReleaseTestConfig.from_dict(_mapping(doc, "test", owner)),
        )


def _index(items: list[Any], kind: str) -> dict[str, Any]:
    """Index items by name, rejecting duplicates."""
    result: dict[str, Any] = {}
    for item in items:
        if item.name in result:
            raise InputException(f"Duplicate {kind} name '{item.name}'")
        result[item.name] = item
    return result


@dataclass
class ReleaseManifest:
    """Holds the releases, release targets and charts declared for a build."""

    releases: list[Release] = field(default_factory=list)
    targets: list[ReleaseTarget] = field(default_factory=list)
    charts: list[ChartDefinition] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.validate()

    def validate(self) -> None:
        """Validate that names are unique."""
        _index(self.releases, "release")
        _index(self.targets, "release target")
        _index(self.charts, "chart")

    @property
    def release_map(self) -> dict[str, Release]:
        """Releases indexed by name."""
        return _index(self.releases, "release")

    @property
    def target_map(self) -> dict[str, ReleaseTarget]:
        """Release targets indexed by name."""
        return _index(self.targets, "release target")

    @property
    def chart_map(self) -> dict[str, ChartDefinition]:
        """Chart definitions indexed by name."""
        return _index(self.charts, "chart")

    @classmethod
    def parse_doc(cls, doc: dict[str, Any]) -> "ReleaseManifest":
        """Parse a ReleaseManifest from a document."""
        if not isinstance(doc, dict):
            raise InputException(f"Invalid release manifest: {doc}")
        for key in ("releases", "targets", "charts"):
            if not isinstance(doc.get(key) or [], list):
                raise InputException(f"Invalid release manifest {key} must be a list")
        return cls(
            releases=[Release.parse_doc(d) for d in doc.get("releases") or []],
            targets=[ReleaseTarget.parse_doc(d) for d in doc.get("targets") or []],
            charts=[ChartDefinition.parse_doc(d) for d in doc.get("charts") or []],
        )

    @classmethod
    def parse_yaml(cls, content: str) -> "ReleaseManifest":
        """Parse a serialized release manifest."""
        try:
            doc = yaml.safe_load(content)
        except yaml.YAMLError as err:
            raise InputException(f"Unable to parse release manifest: {err}") from err
        return cls.parse_doc(doc or {})


async def read_manifest(manifest_path: Path) -> ReleaseManifest:
    """Return the contents of a release manifest file."""
    _LOGGER.debug("Reading release manifest %s", manifest_path)
    async with aiofiles.open(str(manifest_path)) as manifest_file:
        content = await manifest_file.read()
    manifest = ReleaseManifest.parse_yaml(content)
    for release in manifest.releases:
        release.base_dir = str(manifest_path.parent)
    return manifest
