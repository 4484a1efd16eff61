"""
Smoke client for the Pong commentary server.

Connects with the ["pong-proto.v1", <JWT>] subprotocol pair, plays a crude
rally locally and streams its snapshots to the server, then logs every
commentary, coach and control event it gets back. Control directives are
applied to the local AI paddle, the same way the browser client does.
"""

import argparse
import asyncio
import json
import logging
import math
import os
import random
import time

import msgpack
import websockets
from websockets.protocol import State as WsState

from pong_server import JWT_SECRET, PROTOCOL, Authenticator

logger = logging.getLogger("pong.smoke")

DEFAULT_URL = os.getenv("PONG_WS_URL", "ws://127.0.0.1:3000/ws")
STATE_SEND_MS = 800

WIDTH, HEIGHT = 800, 480
PADDLE_HEIGHT = 80


class RallyModel:
    """Just enough ball-and-paddle motion to produce plausible snapshots."""

    def __init__(self, rng: random.Random | None = None):
        self.rng = rng or random.Random()
        self.ball = {"x": WIDTH / 2, "y": HEIGHT / 2, "vx": 0.0, "vy": 0.0, "r": 8}
        self.left_y = (HEIGHT - PADDLE_HEIGHT) / 2
        self.right_y = (HEIGHT - PADDLE_HEIGHT) / 2
        self.right_speed = 4.0
        self.score = {"player": 0, "ai": 0}
        self.running = False

    def serve(self, direction: int = 1):
        angle = self.rng.uniform(-math.pi / 4, math.pi / 4)
        self.ball.update(x=WIDTH / 2, y=HEIGHT / 2, vx=math.cos(angle) * 5 * direction, vy=math.sin(angle) * 5)
        self.running = True

    def step(self):
        if not self.running:
            self.serve(self.rng.choice((-1, 1)))
            return

        ball = self.ball
        ball["x"] += ball["vx"]
        ball["y"] += ball["vy"]
        if ball["y"] < 0 or ball["y"] > HEIGHT:
            ball["vy"] = -ball["vy"]
            ball["y"] = min(max(ball["y"], 0), HEIGHT)

        # Both paddles chase the ball; the AI one is capped by its speed
        self.left_y += max(-6.0, min(6.0, ball["y"] - PADDLE_HEIGHT / 2 - self.left_y))
        self.right_y += max(-self.right_speed, min(self.right_speed, ball["y"] - PADDLE_HEIGHT / 2 - self.right_y))

        if ball["x"] <= 20 and self.left_y <= ball["y"] <= self.left_y + PADDLE_HEIGHT:
            ball["vx"] = abs(ball["vx"]) * 1.05
        elif ball["x"] >= WIDTH - 20 and self.right_y <= ball["y"] <= self.right_y + PADDLE_HEIGHT:
            ball["vx"] = -abs(ball["vx"]) * 1.05
        elif ball["x"] < 0:
            self.score["ai"] += 1
            self.running = False
        elif ball["x"] > WIDTH:
            self.score["player"] += 1
            self.running = False

    def apply_control(self, control: dict) -> bool:
        if control.get("type") != "aiAdjust":
            return False
        speed = control.get("aiSpeed")
        if isinstance(speed, bool) or not isinstance(speed, (int, float)):
            return False
        self.right_speed = float(speed)
        return True

    def snapshot(self) -> dict:
        return {
            "ball": dict(self.ball),
            "leftPaddle": {"x": 10, "y": self.left_y, "width": 10, "height": PADDLE_HEIGHT},
            "rightPaddle": {
                "x": WIDTH - 20,
                "y": self.right_y,
                "width": 10,
                "height": PADDLE_HEIGHT,
                "speed": self.right_speed,
            },
            "score": dict(self.score),
            "running": self.running,
        }


def encode_state_frame(snapshot: dict, text: bool = False) -> bytes | str:
    if text:
        return json.dumps({"type": "state", "state": snapshot})
    return msgpack.packb(["state", snapshot])


class PongSmokeClient:
    """One WebSocket session against the server."""

    def __init__(self, url: str, token: str, model: RallyModel, use_text: bool = False, coach: bool = False):
        self.url = url
        self.token = token
        self.model = model
        self.use_text = use_text
        self.coach = coach
        self.ws = None
        self._receive_task: asyncio.Task | None = None
        self.events: list[dict] = []

    def _is_open(self) -> bool:
        if not self.ws:
            return False
        try:
            return self.ws.state == WsState.OPEN
        except AttributeError:
            return getattr(self.ws, "open", False)

    async def connect(self):
        t0 = time.time()
        self.ws = await websockets.connect(self.url, subprotocols=[PROTOCOL, self.token])
        logger.info(f"Connected to {self.url} in {(time.time() - t0) * 1000:.0f}ms (subprotocol={self.ws.subprotocol})")
        self._receive_task = asyncio.create_task(self._receive_loop())
        if self.coach:
            await self.ws.send(json.dumps({"type": "coach_enable", "enable": True}))

    def handle_event(self, payload: dict):
        self.events.append(payload)
        event_type = payload.get("type")
        if event_type == "commentary_chunk":
            logger.debug(f"  ...{payload.get('text', '')}")
        elif event_type == "commentary":
            logger.info(f"[commentary] {payload.get('text', '')}")
        elif event_type == "coach":
            logger.info(f"[coach] {payload.get('text', '')}")
        elif event_type == "control":
            control = payload.get("control") or {}
            if self.model.apply_control(control):
                logger.info(f"[control] AI paddle speed -> {self.model.right_speed}")
        elif event_type == "error":
            logger.warning(f"[server error] {payload.get('message')}")
        else:
            logger.info(f"[{event_type}] {payload}")

    async def _receive_loop(self):
        try:
            async for message in self.ws:
                try:
                    payload = json.loads(message)
                except ValueError:
                    logger.warning(f"Non-JSON frame from server: {message!r}")
                    continue
                self.handle_event(payload)
        except websockets.ConnectionClosed as e:
            logger.info(f"Server closed the connection: {e}")

    async def send_state(self):
        if self._is_open():
            await self.ws.send(encode_state_frame(self.model.snapshot(), text=self.use_text))

    async def run(self, duration: float, send_interval: float = STATE_SEND_MS / 1000):
        deadline = time.monotonic() + duration
        next_send = time.monotonic()
        while time.monotonic() < deadline and self._is_open():
            self.model.step()
            if time.monotonic() >= next_send:
                await self.send_state()
                next_send += send_interval
            await asyncio.sleep(1 / 60)

    async def close(self):
        if self._is_open():
            await self.ws.close()
        if self._receive_task:
            self._receive_task.cancel()
            try:
                await self._receive_task
            except asyncio.CancelledError:
                pass


async def _main(args: argparse.Namespace):
    token = args.token or Authenticator(args.secret).mint(args.subject, role="tester")
    client = PongSmokeClient(args.url, token, RallyModel(), use_text=args.text, coach=args.coach)
    await client.connect()
    try:
        await client.run(args.duration, send_interval=args.send_ms / 1000)
    finally:
        await client.close()
    logger.info(f"Received {len(client.events)} events")


def main(argv: list[str] | None = None):
    parser = argparse.ArgumentParser(description="Stream synthetic Pong snapshots and print commentary.")
    parser.add_argument("--url", default=DEFAULT_URL)
    parser.add_argument("--token", help="JWT to present; minted locally from --secret when omitted")
    parser.add_argument("--secret", default=JWT_SECRET)
    parser.add_argument("--subject", default="smoke-user")
    parser.add_argument("--duration", type=float, default=30.0, help="seconds to play")
    parser.add_argument("--send-ms", type=int, default=STATE_SEND_MS)
    parser.add_argument("--text", action="store_true", help="send JSON text frames instead of msgpack")
    parser.add_argument("--coach", action="store_true", help="enable coaching tips")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO)
    asyncio.run(_main(args))


if __name__ == "__main__":
    main()
