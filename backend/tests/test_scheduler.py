import asyncio
import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from livescribe.field_store import FieldStore
from livescribe.llm_client import GenerationError
from livescribe.scheduler import ExtractionScheduler
from livescribe.schemas import FieldState
from livescribe.transcript_buffer import TranscriptBuffer


def _make_scheduler(text="", response=None, ids=("prefs",), **kwargs):
    buffer = TranscriptBuffer()
    buffer.text = text
    store = FieldStore()
    if ids:
        store.apply_context([FieldState(id=i, name=i.title(), hint="facts") for i in ids], "")
    client = MagicMock()
    client.extract = AsyncMock(return_value=response if response is not None else json.dumps({"updates": []}))
    emit = AsyncMock()
    scheduler = ExtractionScheduler(buffer, store, client, emit, **kwargs)
    return scheduler, buffer, store, client, emit


def _emitted(emit):
    return [c[0][0] for c in emit.call_args_list]


@pytest.mark.asyncio
async def test_tick_proceeds_with_enough_delta():
    scheduler, buffer, _, client, _ = _make_scheduler("hello world")
    assert scheduler.tick() is True
    await scheduler.wait_for_extraction()
    client.extract.assert_awaited_once()
    prompt = client.extract.call_args[0][0]
    assert "hello world" in prompt


@pytest.mark.asyncio
async def test_tick_skipped_for_short_delta():
    scheduler, _, _, client, emit = _make_scheduler("hi")
    assert scheduler.tick() is False
    client.extract.assert_not_called()
    emit.assert_not_called()


@pytest.mark.asyncio
async def test_tick_skipped_without_template():
    scheduler, _, _, client, _ = _make_scheduler("plenty of transcript here", ids=())
    assert scheduler.tick() is False
    client.extract.assert_not_called()


@pytest.mark.asyncio
async def test_tick_recovers_template_from_client_state():
    scheduler, _, store, client, _ = _make_scheduler("plenty of transcript here")
    store.template = []
    assert scheduler.tick() is True
    await scheduler.wait_for_extraction()
    assert store.template_ids == {"prefs"}


@pytest.mark.asyncio
async def test_tick_while_in_flight_makes_no_call():
    scheduler, _, _, client, _ = _make_scheduler("plenty of transcript here")
    scheduler.in_flight = True
    assert scheduler.tick() is False
    client.extract.assert_not_called()


@pytest.mark.asyncio
async def test_second_tick_during_slow_call_is_skipped():
    release = asyncio.Event()
    scheduler, _, _, client, _ = _make_scheduler("plenty of transcript here")

    async def slow_extract(prompt, timeout=None):
        await release.wait()
        return "{}"

    client.extract = AsyncMock(side_effect=slow_extract)

    assert scheduler.tick() is True
    await asyncio.sleep(0)
    assert scheduler.tick() is False
    release.set()
    await scheduler.wait_for_extraction()
    assert client.extract.await_count == 1
    assert scheduler.in_flight is False


@pytest.mark.asyncio
async def test_successful_extraction_merges_and_advances_cursor():
    response = json.dumps({"updates": [{"fieldId": "prefs", "action": "APPEND", "value": "* likes tea"}]})
    scheduler, buffer, store, _, emit = _make_scheduler("[Speaker 0] I really like tea", response=response)

    scheduler.tick()
    await scheduler.wait_for_extraction()

    assert store.state.get("prefs").current_value == "* likes tea"
    assert buffer.processed_cursor == len(buffer.text)
    assert _emitted(emit) == [
        {"type": "status", "active": True},
        {"type": "templateUpdate", "data": {"prefs": "* likes tea"}},
        {"type": "status", "active": False},
    ]


@pytest.mark.asyncio
async def test_no_changes_sends_no_template_update():
    response = json.dumps({"updates": [{"fieldId": "prefs", "action": "SKIP"}]})
    scheduler, buffer, _, _, emit = _make_scheduler("nothing relevant was said", response=response)

    scheduler.tick()
    await scheduler.wait_for_extraction()

    assert all(p["type"] == "status" for p in _emitted(emit))
    assert buffer.processed_cursor == len(buffer.text)


@pytest.mark.asyncio
async def test_unparsable_output_is_noop_but_advances_cursor():
    scheduler, buffer, store, _, emit = _make_scheduler("some transcript content", response="I could not find anything.")

    scheduler.tick()
    await scheduler.wait_for_extraction()

    assert store.state.get("prefs").current_value == ""
    assert buffer.processed_cursor == len(buffer.text)
    assert not any(p["type"] == "templateUpdate" for p in _emitted(emit))


@pytest.mark.asyncio
async def test_generation_failure_reports_error_and_keeps_cursor():
    scheduler, buffer, _, client, emit = _make_scheduler("some transcript content")
    client.extract = AsyncMock(side_effect=GenerationError("service unavailable"))

    scheduler.tick()
    await scheduler.wait_for_extraction()

    emitted = _emitted(emit)
    assert {"type": "error", "message": "service unavailable"} in emitted
    assert emitted[-1] == {"type": "status", "active": False}
    assert buffer.processed_cursor == 0
    assert scheduler.in_flight is False
    # Retried on the next tick
    assert scheduler.tick() is True
    await scheduler.wait_for_extraction()


@pytest.mark.asyncio
async def test_safety_timeout_releases_session():
    scheduler, buffer, _, client, emit = _make_scheduler("some transcript content", timeout=0.05)

    async def never_returns(prompt, timeout=None):
        await asyncio.sleep(10)

    client.extract = AsyncMock(side_effect=never_returns)

    scheduler.tick()
    await asyncio.wait_for(scheduler.wait_for_extraction(), timeout=1.0)

    assert scheduler.in_flight is False
    assert _emitted(emit)[-1] == {"type": "status", "active": False}
    assert not any(p["type"] == "error" for p in _emitted(emit))
    assert buffer.processed_cursor == 0


@pytest.mark.asyncio
async def test_result_discarded_after_stop():
    release = asyncio.Event()
    response = json.dumps({"updates": [{"fieldId": "prefs", "value": "* late fact"}]})
    scheduler, buffer, store, client, emit = _make_scheduler("some transcript content")

    async def slow_extract(prompt, timeout=None):
        await release.wait()
        return response

    client.extract = AsyncMock(side_effect=slow_extract)

    scheduler.tick()
    await asyncio.sleep(0)
    await scheduler.stop()
    release.set()
    await scheduler.wait_for_extraction()

    assert store.state.get("prefs").current_value == ""
    assert _emitted(emit) == [{"type": "status", "active": True}]
    assert scheduler.tick() is False


@pytest.mark.asyncio
async def test_cursor_reset_during_call_is_kept():
    release = asyncio.Event()
    scheduler, buffer, _, client, _ = _make_scheduler("some transcript content")

    async def slow_extract(prompt, timeout=None):
        await release.wait()
        return "{}"

    client.extract = AsyncMock(side_effect=slow_extract)

    scheduler.tick()
    await asyncio.sleep(0)
    buffer.reset_cursor()
    release.set()
    await scheduler.wait_for_extraction()

    assert buffer.processed_cursor == 0


@pytest.mark.asyncio
async def test_run_loop_ticks_on_interval():
    scheduler, buffer, _, client, _ = _make_scheduler("hello world, this is a test", interval=0.01)

    scheduler.start()
    await asyncio.sleep(0.1)
    await scheduler.stop()

    # The first extraction consumed the delta; later ticks had nothing new.
    assert client.extract.await_count == 1
    assert buffer.processed_cursor == len(buffer.text)


@pytest.mark.asyncio
async def test_call_timeout_outlasts_safety_timeout():
    scheduler, _, _, client, _ = _make_scheduler("some transcript content", timeout=15.0)
    scheduler.tick()
    await scheduler.wait_for_extraction()
    assert client.extract.call_args.kwargs["timeout"] > scheduler.timeout
