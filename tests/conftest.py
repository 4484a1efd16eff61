import json
import random

import fakeredis
import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketState

from pong_server import (
    AdmissionController,
    Authenticator,
    CommentaryGenerator,
    Config,
    SessionRegistry,
    SimulatedGenerator,
    build_policies,
    create_app,
)

TEST_SECRET = "test-secret"
TEST_ADMIN_KEY = "test-admin"

SNAPSHOT = {
    "ball": {"x": 400.0, "y": 240.0, "vx": 5.0, "vy": -1.25, "r": 8},
    "leftPaddle": {"x": 10, "y": 200.0, "width": 10, "height": 80},
    "rightPaddle": {"x": 780, "y": 180.0, "width": 10, "height": 80, "speed": 6},
    "score": {"player": 2, "ai": 3},
    "running": True,
}


class FakeSocket:
    """Records outbound frames the way a Starlette WebSocket would carry them."""

    def __init__(self):
        self.sent = []
        self.client_state = WebSocketState.CONNECTED
        self.application_state = WebSocketState.CONNECTED

    async def send_text(self, text):
        self.sent.append(json.loads(text))

    def disconnect(self):
        self.client_state = WebSocketState.DISCONNECTED

    def types(self):
        return [event["type"] for event in self.sent]


class ScriptedGenerator(CommentaryGenerator):
    """Generator returning canned output; optionally waits on ``gate`` first."""

    def __init__(self, text="", chunks=None, streaming=False, error=None, gate=None):
        self.text = text
        self.chunks = chunks
        self.streaming = streaming
        self.error = error
        self.gate = gate
        self.requests = []

    async def complete(self, request):
        self.requests.append(request)
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        if self.chunks is not None:
            return "".join(self.chunks)
        return self.text

    async def stream(self, request):
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        for chunk in self.chunks or []:
            yield chunk


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture()
def config():
    return Config(
        openai_api_key="",
        simulated_mode=True,
        admin_key=TEST_ADMIN_KEY,
        jwt_secret=TEST_SECRET,
        jwt_exp_seconds=3600,
        state_limit_per_second=5,
        commentary_limit_per_minute=40,
        commentary_interval_ms=1200,
        coach_interval_ms=10000,
    )


@pytest.fixture()
def redis():
    return fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer())


@pytest.fixture()
def admission(redis, config):
    return AdmissionController(redis, build_policies(config))


@pytest.fixture()
def registry():
    return SessionRegistry()


@pytest.fixture()
def authenticator():
    return Authenticator(TEST_SECRET, expires_in=3600)


@pytest.fixture()
def token(authenticator):
    return authenticator.mint("player-1", role="tester")


@pytest.fixture()
def pong_app(config, redis):
    return create_app(
        config,
        redis_client=redis,
        generator=SimulatedGenerator(random.Random(0)),
        start_schedulers=False,
    )


@pytest.fixture()
def client(pong_app):
    with TestClient(pong_app) as test_client:
        yield test_client
