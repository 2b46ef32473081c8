"""Unit tests for cancellation primitives."""

from __future__ import annotations

import asyncio
import os
import signal

import pytest

from agency.utils.concurrency import CancellationToken, cancel_on_signals, cancel_task

pytestmark = pytest.mark.unit


@pytest.mark.asyncio
async def test_token_wakes_waiters_once_cancelled() -> None:
    token = CancellationToken()
    waiter = asyncio.create_task(token.wait())
    await asyncio.sleep(0)
    assert not waiter.done()

    token.cancel()
    await asyncio.wait_for(waiter, timeout=1.0)
    assert token.is_cancelled is True

    with pytest.raises(asyncio.CancelledError):
        token.raise_if_cancelled()


@pytest.mark.asyncio
async def test_cancel_task_drains_pending_and_finished_tasks() -> None:
    pending = asyncio.create_task(asyncio.sleep(30))
    await cancel_task(pending)
    assert pending.cancelled()

    async def _boom() -> None:
        raise RuntimeError("ignored")

    finished = asyncio.create_task(_boom())
    await asyncio.sleep(0)
    await cancel_task(finished)
    assert finished.done()


@pytest.mark.asyncio
async def test_cancel_on_signals_routes_signal_to_token() -> None:
    token = CancellationToken()
    with cancel_on_signals(token, signals=(signal.SIGUSR1,)):
        os.kill(os.getpid(), signal.SIGUSR1)
        await asyncio.wait_for(token.wait(), timeout=2.0)
    assert token.is_cancelled is True
