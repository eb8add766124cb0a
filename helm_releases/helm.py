"""Library for running `helm` commands for a release plan.

`ReleaseClient` is the interface the orchestrator uses to query and modify
releases in a cluster. `Helm` implements it by running the helm binary:

```python
from helm_releases.helm import Helm

helm = Helm()
status = await helm.status(plan)
await helm.upgrade_install(plan)
```
"""

from abc import ABC, abstractmethod
from collections.abc import Iterator, Mapping
import json
import logging
from typing import Any

from . import command
from .decision import InstallMode
from .exceptions import (
    HelmException,
    ReleaseNotFoundError,
    StatusQueryTransportError,
)
from .resolver import ReleasePlan
from .status import ReleaseStatus

__all__ = [
    "ReleaseClient",
    "Helm",
]

_LOGGER = logging.getLogger(__name__)


HELM_BIN = "helm"
NOT_FOUND_ERROR = "release: not found"


class ReleaseClient(ABC):
    """Interface for querying and changing releases in a cluster."""

    @abstractmethod
    async def status(self, plan: ReleasePlan) -> ReleaseStatus:
        """Return the status of the release.

        Raises `ReleaseNotFoundError` if the release is not installed and
        `StatusQueryTransportError` if the status could not be determined.
        """

    @abstractmethod
    async def install(self, plan: ReleasePlan) -> None:
        """Install a release that does not exist yet."""

    @abstractmethod
    async def upgrade_install(self, plan: ReleasePlan) -> None:
        """Upgrade the release, installing it if it does not exist."""

    @abstractmethod
    async def force_replace(self, plan: ReleasePlan) -> None:
        """Install the release, replacing any existing release."""

    @abstractmethod
    async def uninstall(self, plan: ReleasePlan) -> None:
        """Uninstall the release."""

    @abstractmethod
    async def test(self, plan: ReleasePlan) -> None:
        """Run the tests of the release."""

    async def install_with_mode(self, plan: ReleasePlan, mode: InstallMode) -> None:
        """Install the release using the specified mode."""
        if mode == InstallMode.FORCE_REPLACE:
            await self.force_replace(plan)
        elif mode == InstallMode.UPGRADE_INSTALL:
            await self.upgrade_install(plan)
        else:
            await self.install(plan)


# Characters with a meaning in helm's `--set` syntax. Dots and brackets in a
# declared value key are path separators, so they are only escaped in the
# keys of nested mappings.
_KEY_ESCAPES = "\\,="
_SEGMENT_ESCAPES = "\\,=.[]"
_VALUE_ESCAPES = "\\,"


def _escape(text: str, chars: str) -> str:
    """Escape characters for the helm `--set` syntax."""
    return "".join(f"\\{c}" if c in chars else c for c in text)


def _format_value(value: Any) -> str:
    """Format a scalar value for the helm `--set` flag."""
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    return _escape(str(value), _VALUE_ESCAPES)


def _flatten(path: str, value: Any) -> Iterator[tuple[str, Any]]:
    """Yield the leaf values of nested mappings and lists with their paths."""
    if isinstance(value, Mapping):
        for key, item in value.items():
            yield from _flatten(f"{path}.{_escape(str(key), _SEGMENT_ESCAPES)}", item)
    elif isinstance(value, (list, tuple)) and any(
        isinstance(item, (Mapping, list, tuple)) for item in value
    ):
        for index, item in enumerate(value):
            yield from _flatten(f"{path}[{index}]", item)
    else:
        yield (path, value)


def set_args(values: Mapping[str, Any]) -> list[str]:
    """Return `--set` and `--set-string` arguments for the values.

    Strings are passed with `--set-string` so helm does not convert values
    like `true` or `123`.
    """
    args = []
    for key, value in values.items():
        for path, leaf in _flatten(_escape(str(key), _KEY_ESCAPES), value):
            if isinstance(leaf, (list, tuple)):
                strings = bool(leaf) and all(isinstance(item, str) for item in leaf)
                flag = "--set-string" if strings else "--set"
                text = "{" + ",".join(_format_value(item) for item in leaf) + "}"
            elif isinstance(leaf, str):
                flag = "--set-string"
                text = _format_value(leaf)
            else:
                flag = "--set"
                text = _format_value(leaf)
            args.extend([flag, f"{path}={text}"])
    return args


def set_file_args(file_values: Mapping[str, str]) -> list[str]:
    """Return `--set-file` arguments for values read from files."""
    args = []
    for key, path in file_values.items():
        args.extend(
            [
                "--set-file",
                f"{_escape(key, _KEY_ESCAPES)}={_escape(path, _VALUE_ESCAPES)}",
            ]
        )
    return args


def _connection_args(plan: ReleasePlan) -> list[str]:
    args = []
    if plan.kube_context:
        args.extend(["--kube-context", plan.kube_context])
    if plan.options.namespace:
        args.extend(["--namespace", plan.options.namespace])
    return args


def install_args(plan: ReleasePlan, mode: InstallMode) -> list[str]:
    """Return the helm arguments to install the release with the mode."""
    options = plan.options
    upgrade = mode == InstallMode.UPGRADE_INSTALL
    args: list[str]
    if upgrade:
        args = ["upgrade", "--install", plan.release_name, plan.chart]
    elif mode == InstallMode.FORCE_REPLACE:
        args = ["install", "--replace", plan.release_name, plan.chart]
    else:
        args = ["install", plan.release_name, plan.chart]
    args.extend(_connection_args(plan))
    if plan.chart_version:
        args.extend(["--version", plan.chart_version])
    if options.atomic:
        args.append("--atomic")
    if options.wait:
        args.append("--wait")
    if options.wait_for_jobs:
        args.append("--wait-for-jobs")
    if options.timeout:
        args.extend(["--timeout", str(options.timeout)])
    if options.create_namespace:
        args.append("--create-namespace")
    if options.dry_run:
        args.append("--dry-run")
    if options.no_hooks:
        args.append("--no-hooks")
    if options.skip_crds:
        args.append("--skip-crds")
    if upgrade:
        if options.history_max is not None:
            args.extend(["--history-max", str(options.history_max)])
        if options.reset_values:
            args.append("--reset-values")
        if options.reuse_values:
            args.append("--reuse-values")
    for value_file in plan.value_files:
        args.extend(["--values", value_file])
    args.extend(set_args(plan.values))
    args.extend(set_file_args(plan.file_values))
    return args


def uninstall_args(plan: ReleasePlan) -> list[str]:
    """Return the helm arguments to uninstall the release."""
    options = plan.options
    args = ["uninstall", plan.release_name]
    args.extend(_connection_args(plan))
    if options.keep_history:
        args.append("--keep-history")
    if options.no_hooks:
        args.append("--no-hooks")
    if options.dry_run:
        args.append("--dry-run")
    if options.wait:
        args.append("--wait")
    if options.timeout:
        args.extend(["--timeout", str(options.timeout)])
    return args


def release_test_args(plan: ReleasePlan) -> list[str]:
    """Return the helm arguments to test the release."""
    args = ["test", plan.release_name]
    args.extend(_connection_args(plan))
    if plan.test.show_logs:
        args.append("--logs")
    if plan.test.timeout:
        args.extend(["--timeout", str(plan.test.timeout)])
    return args


class Helm(ReleaseClient):
    """Runs helm commands against the cluster of a release target."""

    def __init__(self, helm_bin: str = HELM_BIN, env: dict[str, str] | None = None):
        """Initialize Helm."""
        self._helm_bin = helm_bin
        self._env = env

    def _command(self, args: list[str]) -> command.Command:
        return command.Command([self._helm_bin, *args], exc=HelmException, env=self._env)

    async def status(self, plan: ReleasePlan) -> ReleaseStatus:
        """Return the status of the release."""
        args = ["status", plan.release_name, *_connection_args(plan), "--output", "json"]
        try:
            out = await command.run(self._command(args))
        except HelmException as err:
            if NOT_FOUND_ERROR in str(err):
                raise ReleaseNotFoundError(plan.release_name) from err
            raise StatusQueryTransportError(plan.release_name, str(err)) from err
        try:
            doc = json.loads(out)
        except ValueError as err:
            raise StatusQueryTransportError(
                plan.release_name, f"Unable to parse status output: {err}"
            ) from err
        info = doc.get("info") or {}
        return ReleaseStatus(
            name=doc.get("name", plan.release_name),
            status=info.get("status", "unknown"),
            revision=doc.get("version"),
        )

    async def _run(self, action: str, plan: ReleasePlan, args: list[str]) -> None:
        _LOGGER.info(
            "%s release %s on target %s", action, plan.release_name, plan.target_name
        )
        await command.run(self._command(args))

    async def install(self, plan: ReleasePlan) -> None:
        """Run `helm install`."""
        await self._run(
            "Installing", plan, install_args(plan, InstallMode.PLAIN_INSTALL)
        )

    async def upgrade_install(self, plan: ReleasePlan) -> None:
        """Run `helm upgrade --install`."""
        await self._run(
            "Upgrading", plan, install_args(plan, InstallMode.UPGRADE_INSTALL)
        )

    async def force_replace(self, plan: ReleasePlan) -> None:
        """Run `helm install --replace`."""
        await self._run(
            "Replacing", plan, install_args(plan, InstallMode.FORCE_REPLACE)
        )

    async def uninstall(self, plan: ReleasePlan) -> None:
        """Run `helm uninstall`."""
        await self._run("Uninstalling", plan, uninstall_args(plan))

    async def test(self, plan: ReleasePlan) -> None:
        """Run `helm test`."""
        await self._run("Testing", plan, release_test_args(plan))
