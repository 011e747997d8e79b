import asyncio
import io
import threading

import pytest

from iotca.approval import (
    ApprovalRequest,
    ConsoleApprovalGate,
    QueuedApprovalGate,
    StaticApprovalGate,
    get_approval_gate,
)
from iotca.config import Settings


def request(name="sensor", reason="new_service"):
    return ApprovalRequest(service_name=name, service_id=f"{name}-1", owner="lab", reason=reason)


def test_queue_gate_resolved_from_another_thread():
    gate = QueuedApprovalGate()
    req = request()

    async def scenario():
        task = asyncio.create_task(gate.request_approval(req))
        await asyncio.sleep(0)
        assert [r.request_id for r in gate.pending()] == [req.request_id]
        t = threading.Thread(target=gate.resolve, args=(req.request_id, True))
        t.start()
        t.join()
        return await task

    assert asyncio.run(scenario()) is True
    assert gate.pending() == []


def test_queue_gate_denial():
    gate = QueuedApprovalGate()
    req = request()

    async def scenario():
        task = asyncio.create_task(gate.request_approval(req))
        await asyncio.sleep(0)
        assert gate.resolve(req.request_id, False)
        return await task

    assert asyncio.run(scenario()) is False


def test_queue_gate_unknown_request():
    assert QueuedApprovalGate().resolve("nope", True) is False


def test_abandoned_request_leaves_queue():
    gate = QueuedApprovalGate()

    async def scenario():
        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(gate.request_approval(request()), timeout=0.01)

    asyncio.run(scenario())
    assert gate.pending() == []


def test_request_serialization():
    data = request(reason="reauthentication").to_dict()
    assert data["serviceName"] == "sensor"
    assert data["reason"] == "reauthentication"
    assert data["requestedAt"].endswith("Z")
    assert len(data["requestId"]) == 32


@pytest.mark.parametrize("answer,expected", [("y", True), ("Yes", True), ("n", False), ("", False)])
def test_console_gate(answer, expected):
    out = io.StringIO()
    prompts = []

    def fake_input(prompt):
        prompts.append(prompt)
        return answer

    gate = ConsoleApprovalGate(input_func=fake_input, output=out)
    assert asyncio.run(gate.request_approval(request())) is expected
    assert "sensor" in out.getvalue()
    assert prompts == ["Approve? (y/n): "]


def test_static_gate():
    assert asyncio.run(StaticApprovalGate(True).request_approval(request())) is True
    assert asyncio.run(StaticApprovalGate(False).request_approval(request())) is False
    assert StaticApprovalGate(True).pending() == []


@pytest.mark.parametrize("mode,cls", [
    ("queue", QueuedApprovalGate),
    ("console", ConsoleApprovalGate),
    ("auto_approve", StaticApprovalGate),
    ("auto_deny", StaticApprovalGate),
])
def test_gate_factory(mode, cls):
    assert isinstance(get_approval_gate(Settings(approval_mode=mode)), cls)


def test_console_gate_discards_answer_to_expired_prompt():
    out = io.StringIO()
    stale_prompt_answered = threading.Event()
    prompts = []

    def operator(prompt):
        prompts.append(prompt)
        if len(prompts) == 1:
            # still reading the first request when it expires
            stale_prompt_answered.wait(5)
        return "y"

    gate = ConsoleApprovalGate(input_func=operator, output=out)

    async def scenario():
        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(gate.request_approval(request("first")), timeout=0.1)
        second = asyncio.ensure_future(gate.request_approval(request("second")))
        await asyncio.sleep(0.05)
        assert not second.done()
        stale_prompt_answered.set()
        return await asyncio.wait_for(second, timeout=5)

    assert asyncio.run(scenario()) is True
    assert len(prompts) == 2
    text = out.getvalue()
    assert "Answer for 'first' ignored" in text
    assert text.index("ignored") < text.index("Service 'second'")
