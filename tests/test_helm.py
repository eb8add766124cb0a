"""Tests for helm library."""

import dataclasses
import json
from typing import Any

import pytest

from helm_releases import command
from helm_releases.decision import InstallMode
from helm_releases.exceptions import (
    HelmException,
    ReleaseNotFoundError,
    StatusQueryTransportError,
)
from helm_releases.helm import (
    Helm,
    install_args,
    release_test_args,
    set_args,
    set_file_args,
    uninstall_args,
)
from helm_releases.manifest import InstallOptions, ReleaseTestConfig
from helm_releases.resolver import ReleasePlan


@pytest.fixture(name="plan")
def plan_fixture() -> ReleasePlan:
    """Fixture for a resolved release plan."""
    return ReleasePlan(
        release_name="myApp",
        target_name="prod",
        chart="stable/app",
        chart_version="1.2.0",
        kube_context="prod-cluster",
        options=InstallOptions(
            atomic=True,
            wait=False,
            timeout="5m0s",
            namespace="apps",
            history_max=3,
        ),
        values={"replicas": 3, "debug": False, "hosts": ["a", "b"], "tag": None},
        file_values={"config": "config/app.conf"},
        value_files=["values.yaml", "values-prod.yaml"],
        test=ReleaseTestConfig(enabled=True, show_logs=True, timeout="1m"),
    )


class FakeCommands:
    """Records commands instead of running them."""

    def __init__(self) -> None:
        self.commands: list[list[str]] = []
        self.output = ""
        self.error: Exception | None = None

    async def run(self, cmd: command.Command) -> str:
        self.commands.append(cmd.cmd)
        if self.error is not None:
            raise self.error
        return self.output


@pytest.fixture(name="commands")
def commands_fixture(monkeypatch: pytest.MonkeyPatch) -> FakeCommands:
    """Fixture that replaces running subprocesses with a recorder."""
    commands = FakeCommands()
    monkeypatch.setattr(command, "run", commands.run)
    return commands


def test_upgrade_install_args(plan: ReleasePlan) -> None:
    """Test the arguments of `helm upgrade --install`."""
    assert install_args(plan, InstallMode.UPGRADE_INSTALL) == [
        "upgrade",
        "--install",
        "myApp",
        "stable/app",
        "--kube-context",
        "prod-cluster",
        "--namespace",
        "apps",
        "--version",
        "1.2.0",
        "--atomic",
        "--timeout",
        "5m0s",
        "--history-max",
        "3",
        "--values",
        "values.yaml",
        "--values",
        "values-prod.yaml",
        "--set",
        "replicas=3",
        "--set",
        "debug=false",
        "--set-string",
        "hosts={a,b}",
        "--set",
        "tag=null",
        "--set-file",
        "config=config/app.conf",
    ]


def test_force_replace_args(plan: ReleasePlan) -> None:
    """Test that replacing uses `helm install --replace` without upgrade flags."""
    args = install_args(plan, InstallMode.FORCE_REPLACE)
    assert args[:4] == ["install", "--replace", "myApp", "stable/app"]
    assert "--history-max" not in args


def test_plain_install_args(plan: ReleasePlan) -> None:
    """Test the arguments of `helm install`."""
    args = install_args(plan, InstallMode.PLAIN_INSTALL)
    assert args[:3] == ["install", "myApp", "stable/app"]
    assert "--replace" not in args


def test_set_args_escaping() -> None:
    """Test that characters with a meaning to helm are escaped."""
    assert set_args(
        {
            "hosts": "a.example.com,b.example.com",
            "path": "C:\\charts",
            "query": "a=b",
            "key,with=chars": 1,
        }
    ) == [
        "--set-string",
        "hosts=a.example.com\\,b.example.com",
        "--set-string",
        "path=C:\\\\charts",
        "--set-string",
        "query=a=b",
        "--set",
        "key\\,with\\=chars=1",
    ]


def test_set_args_string_types() -> None:
    """Test that strings are not re-typed by helm."""
    assert set_args({"enabled": "true", "port": "123", "replicas": 2, "ratio": 0.5}) == [
        "--set-string",
        "enabled=true",
        "--set-string",
        "port=123",
        "--set",
        "replicas=2",
        "--set",
        "ratio=0.5",
    ]


def test_set_args_nested() -> None:
    """Test that nested mappings and lists are flattened into paths."""
    assert set_args(
        {
            "image.tag": "1.0.0",
            "podAnnotations": {"prometheus.io/scrape": "true"},
            "resources": {"limits": {"memory": "512Mi", "cpu": 1}},
            "ports": [{"name": "http", "port": 80}],
            "args": ["--verbose", "--level=debug"],
            "empty": [],
        }
    ) == [
        "--set-string",
        "image.tag=1.0.0",
        "--set-string",
        "podAnnotations.prometheus\\.io/scrape=true",
        "--set-string",
        "resources.limits.memory=512Mi",
        "--set",
        "resources.limits.cpu=1",
        "--set-string",
        "ports[0].name=http",
        "--set",
        "ports[0].port=80",
        "--set-string",
        "args={--verbose,--level=debug}",
        "--set",
        "empty={}",
    ]


def test_set_file_args_escaping() -> None:
    """Test escaping values read from files."""
    assert set_file_args({"config": "conf/a,b.conf"}) == [
        "--set-file",
        "config=conf/a\\,b.conf",
    ]


def test_install_args_escape_values(plan: ReleasePlan) -> None:
    """Test that install arguments carry escaped values."""
    plan = dataclasses.replace(
        plan, values={"hosts": "a.example.com,b.example.com"}, file_values={}
    )
    args = install_args(plan, InstallMode.UPGRADE_INSTALL)
    assert args[-2:] == ["--set-string", "hosts=a.example.com\\,b.example.com"]


def test_uninstall_args(plan: ReleasePlan) -> None:
    """Test the arguments of `helm uninstall`."""
    assert uninstall_args(plan) == [
        "uninstall",
        "myApp",
        "--kube-context",
        "prod-cluster",
        "--namespace",
        "apps",
        "--timeout",
        "5m0s",
    ]


def test_release_test_args(plan: ReleasePlan) -> None:
    """Test the arguments of `helm test`."""
    assert release_test_args(plan) == [
        "test",
        "myApp",
        "--kube-context",
        "prod-cluster",
        "--namespace",
        "apps",
        "--logs",
        "--timeout",
        "1m",
    ]


async def test_status(plan: ReleasePlan, commands: FakeCommands) -> None:
    """Test parsing the output of `helm status`."""
    commands.output = json.dumps(
        {"name": "myApp", "version": 7, "info": {"status": "deployed"}}
    )
    status = await Helm().status(plan)
    assert status.name == "myApp"
    assert status.status == "deployed"
    assert status.revision == 7
    assert not status.last_deployment_failed
    assert commands.commands == [
        [
            "helm",
            "status",
            "myApp",
            "--kube-context",
            "prod-cluster",
            "--namespace",
            "apps",
            "--output",
            "json",
        ]
    ]


async def test_status_failed(plan: ReleasePlan, commands: FakeCommands) -> None:
    """Test a release whose last deployment failed."""
    commands.output = json.dumps(
        {"name": "myApp", "version": 1, "info": {"status": "failed"}}
    )
    assert (await Helm().status(plan)).last_deployment_failed


async def test_status_not_found(plan: ReleasePlan, commands: FakeCommands) -> None:
    """Test a release that is not installed."""
    commands.error = HelmException("Error: release: not found")
    with pytest.raises(ReleaseNotFoundError):
        await Helm().status(plan)


@pytest.mark.parametrize(
    ("output", "error"),
    [
        ("", HelmException("Error: Kubernetes cluster unreachable")),
        ("not json", None),
    ],
)
async def test_status_transport_error(
    plan: ReleasePlan, commands: FakeCommands, output: str, error: Any
) -> None:
    """Test that other status failures are reported as transport errors."""
    commands.output = output
    commands.error = error
    with pytest.raises(StatusQueryTransportError):
        await Helm().status(plan)


@pytest.mark.parametrize(
    ("mode", "expected"),
    [
        (InstallMode.UPGRADE_INSTALL, ["upgrade", "--install"]),
        (InstallMode.FORCE_REPLACE, ["install", "--replace"]),
        (InstallMode.PLAIN_INSTALL, ["install", "myApp"]),
    ],
)
async def test_install_with_mode(
    plan: ReleasePlan, commands: FakeCommands, mode: InstallMode, expected: list[str]
) -> None:
    """Test that each install mode runs the matching helm command."""
    await Helm(helm_bin="/usr/local/bin/helm").install_with_mode(plan, mode)
    assert len(commands.commands) == 1
    assert commands.commands[0][0] == "/usr/local/bin/helm"
    assert commands.commands[0][1:3] == expected


async def test_uninstall_and_test(plan: ReleasePlan, commands: FakeCommands) -> None:
    """Test running uninstall and test commands."""
    helm = Helm()
    await helm.uninstall(plan)
    await helm.test(plan)
    assert [cmd[1] for cmd in commands.commands] == ["uninstall", "test"]


async def test_command_failure(plan: ReleasePlan, commands: FakeCommands) -> None:
    """Test that a failing helm command is raised to the caller."""
    commands.error = HelmException("Error: UPGRADE FAILED")
    with pytest.raises(HelmException, match="UPGRADE FAILED"):
        await Helm().upgrade_install(plan)
