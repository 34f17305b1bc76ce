#!/usr/bin/env python3
"""Tests for the timeout and retry helpers."""

import asyncio
import time
from unittest.mock import MagicMock, patch

import pytest
import requests

from bridge_relayer.exceptions import TransientRPCError
from bridge_relayer.utils.retry import call_with_timeout, is_transient_error, with_retry


def _http_error(status):
    response = requests.Response()
    response.status_code = status
    return requests.exceptions.HTTPError(response=response)


class TestIsTransientError:
    @pytest.mark.parametrize("exc", [
        requests.exceptions.Timeout(),
        requests.exceptions.ConnectionError(),
        asyncio.TimeoutError(),
        ConnectionResetError(),
        _http_error(429),
        _http_error(503),
    ])
    def test_transient(self, exc):
        assert is_transient_error(exc)

    @pytest.mark.parametrize("exc", [
        ValueError("bad params"),
        _http_error(400),
        KeyError("x"),
    ])
    def test_not_transient(self, exc):
        assert not is_transient_error(exc)


@pytest.mark.asyncio
async def test_call_with_timeout_times_out():
    with pytest.raises(asyncio.TimeoutError):
        await call_with_timeout(time.sleep, 0.5, timeout=0.05)


@pytest.mark.asyncio
async def test_with_retry_recovers_after_transient_failures():
    operation = MagicMock(side_effect=[requests.exceptions.Timeout(), _http_error(502), 1010])

    with patch("bridge_relayer.utils.retry.asyncio.sleep") as sleep:
        sleep.return_value = None
        result = await with_retry(operation, "source.get_head", retry_count=3, base_delay=1.0)

    assert result == 1010
    assert operation.call_count == 3
    assert [c.args[0] for c in sleep.call_args_list] == [1.0, 2.0]


@pytest.mark.asyncio
async def test_with_retry_gives_up():
    operation = MagicMock(side_effect=requests.exceptions.ConnectionError("down"))

    with patch("bridge_relayer.utils.retry.asyncio.sleep"):
        with pytest.raises(TransientRPCError) as exc_info:
            await with_retry(operation, "source.get_logs", retry_count=2)

    assert exc_info.value.attempts == 2
    assert exc_info.value.label == "source.get_logs"
    assert operation.call_count == 2


@pytest.mark.asyncio
async def test_with_retry_does_not_retry_permanent_errors():
    operation = MagicMock(side_effect=ValueError("invalid block range"))

    with pytest.raises(ValueError, match="invalid block range"):
        await with_retry(operation, "source.get_logs", retry_count=5)

    assert operation.call_count == 1


@pytest.mark.asyncio
async def test_backoff_is_capped():
    operation = MagicMock(side_effect=[asyncio.TimeoutError()] * 4 + [7])

    with patch("bridge_relayer.utils.retry.asyncio.sleep") as sleep:
        await with_retry(operation, "x", retry_count=5, base_delay=10, max_delay=25)

    assert [c.args[0] for c in sleep.call_args_list] == [10, 20, 25, 25]
