"""Library for resolving the effective configuration of a release for a target.

Resolution happens in three steps:

1. `resolve_settings` applies the release's `forTarget` and `forAnyTarget`
   blocks, in declaration order, to a working copy of its configuration.
2. The values directory of the resulting settings is resolved against the
   file system with `helm_releases.values.resolve_values_directory`.
3. `build_plan` merges the settings with the release target and global
   defaults into an immutable `ReleasePlan`.

Steps 1 and 3 are pure and never touch the file system or the cluster.
`resolve_plan` performs all three steps.

Precedence for scalar options is release, then target, then global default.
Values declared on the release override values declared on the target. Value
files are ordered from lowest to highest precedence: the target's value files,
the common file of the values directory, the release's value files, then the
target specific file of the values directory.
"""

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
import logging
from pathlib import Path
from typing import Any

from mashumaro import DataClassDictMixin
from mashumaro.codecs.yaml import yaml_encode
from mashumaro.config import BaseConfig

from .config import default_install_options, default_test_config
from .exceptions import InputException, UnresolvedReferenceError
from .manifest import (
    ChartDefinition,
    ChartKind,
    FileValue,
    InstallOptions,
    Release,
    ReleaseSettings,
    ReleaseTarget,
    ReleaseTestConfig,
)
from .values import VALUES_FILE_PREFIX, resolve_values_directory, target_values_file

__all__ = [
    "ReleasePlan",
    "resolve_settings",
    "build_plan",
    "resolve_plan",
]

_LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True, kw_only=True)
class ReleasePlan(DataClassDictMixin):
    """The fully merged configuration of a release for a release target."""

    release_name: str
    """The name of the release."""

    target_name: str
    """The name of the release target."""

    chart: str
    """The chart argument passed to helm."""

    chart_version: str | None = None
    """The chart version passed with `--version`."""

    kube_context: str | None = None
    """The kubeconfig context of the release target."""

    options: InstallOptions
    """Merged install options."""

    values: dict[str, Any] = field(default_factory=dict)
    """Merged values passed with `--set`."""

    file_values: dict[str, str] = field(default_factory=dict)
    """Merged values passed with `--set-file`."""

    value_files: list[str] = field(default_factory=list)
    """Value files passed with `--values`, lowest precedence first."""

    test: ReleaseTestConfig
    """Merged configuration for `helm test`."""

    task_dependencies: list[str] = field(default_factory=list)
    """Steps that must complete before the release is installed."""

    def yaml(self) -> str:
        """Return a YAML string representation of the plan."""
        return yaml_encode(self, self.__class__)  # type: ignore[return-value]

    class Config(BaseConfig):
        omit_none = True
        serialize_by_alias = True


def resolve_settings(release: Release, target_name: str) -> ReleaseSettings:
    """Apply the deferred target blocks of the release for the target."""
    settings = release.settings()
    for block in release.target_blocks:
        if not block.applies_to(target_name):
            continue
        _LOGGER.debug(
            "Applying forTarget(%s) of release %s for target %s",
            block.selector,
            release.name,
            target_name,
        )
        block.mutation(settings)
    return settings


def _resolve_chart(
    release: Release,
    settings: ReleaseSettings,
    target: ReleaseTarget,
    charts: Mapping[str, ChartDefinition],
) -> tuple[str, str | None, list[str]]:
    """Return the chart argument, version and any build steps it requires."""
    if (chart := settings.chart) is None:
        raise InputException(
            f"Release {release.name} has no chart for target {target.name}"
        )
    if chart.kind != ChartKind.BUILD:
        return (chart.value, chart.version, [])
    if (definition := charts.get(chart.value)) is None:
        raise UnresolvedReferenceError(
            f"Release {release.name} (target {target.name})", chart.value, "chart"
        )
    return (definition.packaged_path, None, [definition.package_step])


def _split_values(values: Mapping[str, Any]) -> tuple[dict[str, Any], dict[str, str]]:
    scalar: dict[str, Any] = {}
    files: dict[str, str] = {}
    for key, value in values.items():
        if isinstance(value, FileValue):
            files[key] = value.path
        else:
            scalar[key] = value
    return (scalar, files)


def build_plan(
    release: Release,
    settings: ReleaseSettings,
    target: ReleaseTarget,
    *,
    defaults: InstallOptions | None = None,
    test_defaults: ReleaseTestConfig | None = None,
    charts: Mapping[str, ChartDefinition] | None = None,
    values_dir_files: Sequence[Path] = (),
    values_file_prefix: str = VALUES_FILE_PREFIX,
) -> ReleasePlan:
    """Merge the release settings with the target and defaults into a plan."""
    if defaults is None:
        defaults = default_install_options()
    if test_defaults is None:
        test_defaults = default_test_config()

    chart, chart_version, chart_steps = _resolve_chart(
        release, settings, target, charts or {}
    )

    values, file_values = _split_values({**target.values, **settings.values})

    specific_name = target_values_file(Path(), target.name, values_file_prefix).name
    common_files = [str(p) for p in values_dir_files if p.name != specific_name]
    specific_files = [str(p) for p in values_dir_files if p.name == specific_name]
    value_files = [
        *target.value_files,
        *common_files,
        *settings.value_files,
        *specific_files,
    ]

    task_dependencies: list[str] = []
    for step in (*settings.task_dependencies, *chart_steps):
        if step not in task_dependencies:
            task_dependencies.append(step)

    return ReleasePlan(
        release_name=release.name,
        target_name=target.name,
        chart=chart,
        chart_version=chart_version,
        kube_context=target.kube_context,
        options=settings.options.merge(target.options).merge(defaults),
        values=values,
        file_values=file_values,
        value_files=value_files,
        test=settings.test.merge(target.test).merge(test_defaults),
        task_dependencies=task_dependencies,
    )


async def resolve_plan(
    release: Release,
    target: ReleaseTarget,
    *,
    defaults: InstallOptions | None = None,
    test_defaults: ReleaseTestConfig | None = None,
    charts: Mapping[str, ChartDefinition] | None = None,
    values_file_prefix: str = VALUES_FILE_PREFIX,
) -> ReleasePlan:
    """Resolve the plan of a release for a target, including its values directory."""
    settings = resolve_settings(release, target.name)
    values_dir: Path | str | None = settings.values_dir
    if values_dir and release.base_dir and not Path(values_dir).is_absolute():
        values_dir = Path(release.base_dir) / values_dir
    values_dir_files = await resolve_values_directory(
        values_dir, target.name, values_file_prefix
    )
    return build_plan(
        release,
        settings,
        target,
        defaults=defaults,
        test_defaults=test_defaults,
        charts=charts,
        values_dir_files=values_dir_files,
        values_file_prefix=values_file_prefix,
    )
