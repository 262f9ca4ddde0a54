"""
Tests for the log_exception decorator.

Tests cover:
- Exception logging with sync and async functions
- Parameter binding and prefix formatting
- Default return values
"""

import asyncio

import pytest

from hycore.logger import log_exception


class TestBasicExceptionLogging:
    """Test basic exception logging functionality."""

    @pytest.mark.asyncio
    async def test_sync_function_with_prefix(self, caplog):
        """Test sync function logs exception with prefix and returns None."""

        @log_exception("SyncOperation")
        def sync_func_with_error():
            raise ValueError("Test error from sync function")

        result = sync_func_with_error()

        assert result is None
        assert "SyncOperation: ValueError: Test error from sync function" in caplog.text
        assert "ERROR" in caplog.text

    @pytest.mark.asyncio
    async def test_async_function_with_prefix(self, caplog):
        """Test async function logs exception with prefix and returns None."""

        @log_exception("AsyncOperation")
        async def async_func_with_error():
            await asyncio.sleep(0.01)
            raise ValueError("Test error from async function")

        result = await async_func_with_error()

        assert result is None
        assert (
            "AsyncOperation: ValueError: Test error from async function" in caplog.text
        )

    @pytest.mark.asyncio
    async def test_successful_execution_no_log(self, caplog):
        """Test that successful calls pass their result through without logging."""

        @log_exception("SuccessfulOp")
        def ok(value: int) -> int:
            return value * 2

        assert ok(21) == 42
        assert "SuccessfulOp" not in caplog.text


class TestParameterBinding:
    """Test parameter names and values in log output."""

    @pytest.mark.asyncio
    async def test_positional_args_with_names(self, caplog):
        @log_exception("Terminate")
        def terminate(world_id: str, reason: str):
            raise RuntimeError("boom")

        terminate("alpha", "stopped")

        assert "[world_id='alpha', reason='stopped'] Terminate: RuntimeError: boom" in (
            caplog.text
        )

    @pytest.mark.asyncio
    async def test_default_values_shown(self, caplog):
        @log_exception()
        def tail(world_id: str, lines: int = 100):
            raise ValueError("bad")

        tail("alpha")

        assert "lines=100" in caplog.text


class TestPrefixFormatting:
    """Test prefix string formatting with parameter substitution."""

    @pytest.mark.asyncio
    async def test_parameter_in_prefix(self, caplog):
        @log_exception("World[{world_id}]")
        def handler(world_id: str):
            raise KeyError("missing")

        handler("alpha")

        assert "World[alpha]: KeyError" in caplog.text

    @pytest.mark.asyncio
    async def test_missing_parameter_in_prefix(self, caplog):
        """An unknown placeholder leaves the prefix as written."""

        @log_exception("Missing[{nonexistent}]")
        def handler(actual_param: str):
            raise ValueError("oops")

        handler("value")

        assert "Missing[{nonexistent}]: ValueError: oops" in caplog.text

    @pytest.mark.asyncio
    async def test_binding_failure_is_reported(self, caplog):
        @log_exception("BindTest")
        def handler(param: str):
            return param

        handler("a", "b")  # type: ignore[call-arg]

        assert "Failed to bind arguments" in caplog.text
        assert "BindTest: TypeError" in caplog.text


class TestReturnValues:
    @pytest.mark.asyncio
    async def test_default_return_on_error(self):
        @log_exception(default_return=[])
        async def fetch() -> list:
            raise RuntimeError("down")

        assert await fetch() == []
