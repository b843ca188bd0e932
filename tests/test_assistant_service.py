"""
AssistantService failure paths: the reservation is released off the event
loop and the completion's own error reaches the caller.
"""

import asyncio
import threading
from unittest.mock import patch

import pytest

from meterproxy.core.errors import MeterProxyError
from meterproxy.services.assistant_service import AssistantService
from meterproxy.services.llm_providers import CompletionProvider


class FailingProvider(CompletionProvider):
    name = "failing"

    def __init__(self, error):
        self.error = error

    async def complete(self, prompt, max_tokens):
        raise self.error

    def get_model_info(self):
        return {"provider": self.name, "model": "none"}


class HangingProvider(CompletionProvider):
    name = "hanging"

    def __init__(self):
        self.started = asyncio.Event()

    async def complete(self, prompt, max_tokens):
        self.started.set()
        await asyncio.Event().wait()

    def get_model_info(self):
        return {"provider": self.name, "model": "none"}


class TestFailedCompletion:
    @pytest.mark.asyncio
    async def test_release_runs_in_worker_thread(self, meter, store, user, make_subscription):
        sub = make_subscription(user.id, quota=1000)
        service = AssistantService(meter, lambda: FailingProvider(MeterProxyError("MPX-UPS-001")))
        loop_thread = threading.get_ident()
        release_threads = []
        real_cancel = meter.cancel

        def recording_cancel(reservation):
            release_threads.append(threading.get_ident())
            return real_cancel(reservation)

        with patch.object(meter, "cancel", side_effect=recording_cancel):
            with pytest.raises(MeterProxyError):
                await service.ask(user.id, "hi", 100)

        assert release_threads and release_threads[0] != loop_thread
        assert store.get(sub.id).used == 0

    @pytest.mark.asyncio
    async def test_upstream_error_survives_failed_release(self, meter, user, make_subscription):
        make_subscription(user.id, quota=1000)
        service = AssistantService(meter, lambda: FailingProvider(MeterProxyError("MPX-UPS-003")))

        with patch.object(meter, "cancel", side_effect=MeterProxyError("MPX-DB-001")):
            with pytest.raises(MeterProxyError) as exc_info:
                await service.ask(user.id, "hi", 100)

        assert exc_info.value.code == "MPX-UPS-003"

    @pytest.mark.asyncio
    async def test_cancelled_request_releases_reservation(self, meter, store, user, make_subscription):
        sub = make_subscription(user.id, quota=1000, used=100)
        provider = HangingProvider()
        service = AssistantService(meter, lambda: provider)

        task = asyncio.create_task(service.ask(user.id, "hi", 300))
        await asyncio.wait_for(provider.started.wait(), timeout=5)
        assert store.get(sub.id).used == 400

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert store.get(sub.id).used == 100
