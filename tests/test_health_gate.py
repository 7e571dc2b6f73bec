import socket
import threading
import time

import httpx
import pytest
import uvicorn
from fastapi import FastAPI, Response

from budget_runtime.core.exceptions import HealthCheckTimeoutError
from budget_runtime.supervisor.health_gate import HealthGate

URL = "http://127.0.0.1:3401/health"


def scripted_transport(responses):
    """Replay ``responses`` in order; an int is a status code, an exception is raised."""
    remaining = list(responses)

    def handler(request: httpx.Request) -> httpx.Response:
        outcome = remaining.pop(0) if len(remaining) > 1 else remaining[0]
        if isinstance(outcome, Exception):
            raise outcome
        return httpx.Response(outcome, json={"status": "ok"})

    return httpx.MockTransport(handler)


def refused():
    return httpx.ConnectError("connection refused")


@pytest.fixture
def warming_server():
    """
    Local API whose /health answers 503 until ``state["ready_at"]`` has passed.

    Yields (url, state); set ``ready_at`` to a time.monotonic() value.
    """
    state = {"ready_at": float("inf")}
    app = FastAPI()

    @app.get("/health")
    def health():
        if time.monotonic() < state["ready_at"]:
            return Response(status_code=503)
        return {"status": "ok"}

    with socket.socket() as sock:
        sock.bind(("127.0.0.1", 0))
        port = sock.getsockname()[1]

    server = uvicorn.Server(uvicorn.Config(app, host="127.0.0.1", port=port, log_config=None))
    thread = threading.Thread(target=server.run, daemon=True)
    thread.start()
    deadline = time.monotonic() + 10
    while not server.started:
        assert time.monotonic() < deadline, "test server did not start"
        time.sleep(0.01)

    yield f"http://127.0.0.1:{port}/health", state

    server.should_exit = True
    thread.join(timeout=10)


@pytest.mark.asyncio
async def test_resolves_after_connection_refused_attempts():
    gate = HealthGate(transport=scripted_transport([refused(), refused(), refused(), 200]))
    assert await gate.poll(URL, timeout=5.0, interval=0.01) is True
    assert gate.attempts == 4


@pytest.mark.asyncio
async def test_non_2xx_is_retried():
    gate = HealthGate(transport=scripted_transport([503, 500, 204]))
    assert await gate.poll(URL, timeout=5.0, interval=0.01) is True
    assert gate.attempts == 3


@pytest.mark.asyncio
async def test_per_attempt_timeout_is_retried():
    gate = HealthGate(transport=scripted_transport([httpx.ReadTimeout("slow"), 200]))
    assert await gate.poll(URL, timeout=5.0, interval=0.01) is True
    assert gate.attempts == 2


@pytest.mark.asyncio
async def test_timeout_names_elapsed_time():
    gate = HealthGate(transport=scripted_transport([refused()]))
    with pytest.raises(HealthCheckTimeoutError) as exc_info:
        await gate.poll(URL, timeout=0.2, interval=0.05)

    error = exc_info.value
    assert error.elapsed_seconds >= 0.2
    assert "timed out after" in error.message
    assert URL in error.message
    assert error.details["attempts"] == gate.attempts >= 2


@pytest.mark.asyncio
async def test_waits_for_slow_dependency_at_default_interval(warming_server):
    url, state = warming_server
    gate = HealthGate()

    started = time.monotonic()
    state["ready_at"] = started + 2.0
    assert await gate.poll(url, timeout=5.0) is True
    elapsed = time.monotonic() - started

    assert 2.0 <= elapsed < 4.0
    assert 4 <= gate.attempts <= 6
