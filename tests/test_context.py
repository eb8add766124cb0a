"""Tests for the trace context."""

import asyncio
import logging

import pytest

from helm_releases.context import current_trace, trace_context


def test_nested_trace(caplog: pytest.LogCaptureFixture) -> None:
    """Test that nested contexts are joined and logged."""
    with caplog.at_level(logging.DEBUG, logger="helm_releases.context"):
        with trace_context("Target 'prod'"):
            with trace_context("Install 'myApp'"):
                assert current_trace() == "Target 'prod' > Install 'myApp'"
            assert current_trace() == "Target 'prod'"
    assert current_trace() == ""
    assert "[Trace] > Target 'prod' > Install 'myApp'" in caplog.text
    assert "[Trace] < Target 'prod'" in caplog.text


async def test_trace_per_task() -> None:
    """Test that concurrent tasks do not see each other's labels."""
    seen: dict[str, str] = {}

    async def work(name: str) -> None:
        with trace_context(name):
            await asyncio.sleep(0)
            seen[name] = current_trace()

    with trace_context("Target 'prod'"):
        await asyncio.gather(work("a"), work("b"))
    assert seen == {"a": "Target 'prod' > a", "b": "Target 'prod' > b"}


def test_trace_reset_on_error() -> None:
    """Test that the trace is restored when the body raises."""
    with pytest.raises(ValueError):
        with trace_context("Install 'myApp'"):
            raise ValueError("boom")
    assert current_trace() == ""
