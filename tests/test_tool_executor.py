import asyncio

import pytest

from models import AuthError, InvalidToolTransitionError, ToolCall, ToolCallStatus, TransportError
from tools import ToolExecutor


def test_successful_call_moves_to_completed(backend):
    backend.tool_results["get_weather"] = {"temp": 21}
    executor = ToolExecutor(backend)
    call = ToolCall(id="call_1", name="get_weather", arguments={"city": "Oslo"})

    returned = asyncio.run(executor.execute(call))

    assert returned is call
    assert call.status == ToolCallStatus.COMPLETED
    assert call.result == {"temp": 21}
    assert executor.get_call("call_1") is call


def test_backend_failure_moves_to_error_and_raises(backend):
    backend.tool_results["get_weather"] = TransportError("tool crashed", status_code=500)
    executor = ToolExecutor(backend)
    call = ToolCall(id="call_2", name="get_weather")

    with pytest.raises(TransportError):
        asyncio.run(executor.execute(call))

    assert call.status == ToolCallStatus.ERROR
    assert call.error == "tool crashed"
    assert executor.active_calls == {}
    assert executor.get_call("call_2") is call


def test_unauthorized_marks_call_failed(backend):
    backend.tool_results["get_weather"] = AuthError("unauthorized")
    call = ToolCall(id="call_3", name="get_weather")

    with pytest.raises(AuthError):
        asyncio.run(ToolExecutor(backend).execute(call))

    assert call.status == ToolCallStatus.ERROR


def test_finished_calls_cannot_be_rerun(backend):
    executor = ToolExecutor(backend)
    call = ToolCall(id="call_4", name="get_weather")
    asyncio.run(executor.execute(call))

    with pytest.raises(InvalidToolTransitionError):
        asyncio.run(executor.execute(call))
    with pytest.raises(InvalidToolTransitionError):
        call.fail("too late")
    assert call.status == ToolCallStatus.COMPLETED


def test_tool_list_is_cached_until_refresh(backend):
    executor = ToolExecutor(backend)

    async def run():
        first = await executor.list_tools()
        backend.tools = []
        cached = await executor.list_tools()
        refreshed = await executor.list_tools(refresh=True)
        return first, cached, refreshed

    first, cached, refreshed = asyncio.run(run())

    assert [t.name for t in first] == ["get_weather"]
    assert cached == first
    assert refreshed == []


def test_get_tool_by_name(backend):
    executor = ToolExecutor(backend)

    assert asyncio.run(executor.get_tool("get_weather")).description == "Weather lookup"
    assert asyncio.run(executor.get_tool("missing")) is None


def test_finished_calls_leave_the_in_flight_map(backend):
    backend.tool_results["get_weather"] = {"temp": 21}
    executor = ToolExecutor(backend, history_size=2)

    async def run():
        gate = asyncio.Event()
        original = backend.execute_tool

        async def slow_execute(call):
            await gate.wait()
            return await original(call)

        backend.execute_tool = slow_execute
        pending = asyncio.create_task(executor.execute(ToolCall(id="slow", name="get_weather")))
        await asyncio.sleep(0)
        in_flight = dict(executor.active_calls)
        gate.set()
        await pending
        return in_flight

    in_flight = asyncio.run(run())
    assert list(in_flight) == ["slow"]

    for index in range(3):
        asyncio.run(executor.execute(ToolCall(id=f"call_{index}", name="get_weather")))

    assert executor.active_calls == {}
    assert [c.id for c in executor.recent_calls] == ["call_1", "call_2"]
    assert executor.get_call("call_2").status == ToolCallStatus.COMPLETED
    assert executor.get_call("slow") is None
