"""Tests for the send handler registry and the worker loop."""
import pytest

from stageflow import worker
from stageflow.jobs import registry
from stageflow.jobs.handlers import actions
from stageflow.services.dispatcher import SweepResult


def test_every_action_kind_has_a_handler():
    assert registry.resolve_action_handler("email") is actions.process_email
    assert registry.resolve_action_handler("sms") is actions.process_sms
    assert registry.resolve_action_handler("document_send") is actions.process_document_send


def test_unknown_action_kind():
    with pytest.raises(ValueError, match="Unknown action kind"):
        registry.resolve_action_handler("fax")


class CountingDispatcher:
    batch_size = 10

    def __init__(self):
        self.sweeps = 0

    async def run_sweep(self, db, now=None):
        self.sweeps += 1
        return SweepResult()


@pytest.mark.asyncio
async def test_worker_loop_sleeps_between_sweeps(db, monkeypatch):
    sleeps = []

    async def fake_sleep(seconds):
        sleeps.append(seconds)

    monkeypatch.setattr(worker.asyncio, "sleep", fake_sleep)
    dispatcher = CountingDispatcher()

    await worker.worker_loop(dispatcher=dispatcher, max_sweeps=3)

    assert dispatcher.sweeps == 3
    assert sleeps == [worker.POLL_INTERVAL_SECONDS] * 2


@pytest.mark.asyncio
async def test_worker_loop_stops_on_store_error(db):
    class BrokenDispatcher(CountingDispatcher):
        async def run_sweep(self, db, now=None):
            raise RuntimeError("database unavailable")

    with pytest.raises(RuntimeError):
        await worker.worker_loop(dispatcher=BrokenDispatcher(), max_sweeps=1)
