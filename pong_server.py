"""
Pong Commentary Server
Real-time play-by-play commentary and coaching for Pong clients.

Backend server that:
1. Authenticates WebSocket clients (subprotocol "pong-proto.v1" + JWT) before upgrade
2. Ingests game state snapshots as MessagePack binary or JSON text frames
3. Rate-limits state ingestion and commentary calls per user through Redis
4. Streams short commentary from OpenAI (or a simulated fallback) on a fixed tick
5. Sends longer coaching tips on a slower tick when the client enables the coach
6. Forwards AI speed directives embedded in generated text as control events
"""

import asyncio
import hmac
import json
import logging
import math
import os
import random
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator

import jwt
import msgpack
from dotenv import load_dotenv
from fastapi import APIRouter, FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse, PlainTextResponse
from msgpack.exceptions import UnpackException
from openai import AsyncOpenAI, OpenAIError
from redis.asyncio import Redis
from redis.exceptions import RedisError
from starlette.websockets import WebSocketState

load_dotenv()

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

logging.basicConfig(level=LOG_LEVEL)
logger = logging.getLogger("pong")


def _parse_duration(value: str) -> int:
    """Seconds from '3600', '30s', '15m', '1h' or '1d'."""
    value = value.strip().lower()
    units = {"s": 1, "m": 60, "h": 3600, "d": 86400}
    if value and value[-1] in units:
        return int(float(value[:-1]) * units[value[-1]])
    return int(value)


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

OPENAI_API_KEY = os.getenv("OPENAI_API_KEY", "")
SIMULATED_MODE = os.getenv("SIMULATED_MODE", "false").lower() == "true"
MODEL_NAME = os.getenv("MODEL_NAME", "gpt-4o-mini")
PROVIDER_TIMEOUT_SECONDS = float(os.getenv("PROVIDER_TIMEOUT_SECONDS", "20"))

# Auth
ADMIN_KEY = os.getenv("ADMIN_KEY", "dev-admin-key")
JWT_SECRET = os.getenv("JWT_SECRET", "replace-me-very-secret")
JWT_EXP_SECONDS = _parse_duration(os.getenv("JWT_EXP", "1h"))

# Admission store
REDIS_URL = os.getenv("REDIS_URL", "redis://127.0.0.1:6379")
STATE_SEND_LIMIT_PER_SECOND = int(os.getenv("STATE_SEND_LIMIT_PER_SECOND", "5"))
COMMENTARY_LIMIT_PER_MINUTE = int(os.getenv("COMMENTARY_LIMIT_PER_MINUTE", "40"))

# Schedulers
COMMENTARY_INTERVAL_MS = int(os.getenv("COMMENTARY_INTERVAL_MS", "1200"))
COACH_INTERVAL_MS = int(os.getenv("COACH_INTERVAL_MS", "10000"))
MIN_TICK_MS = 300

HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", "3000"))

# Wire protocol
PROTOCOL = "pong-proto.v1"
ANONYMOUS_IDENTITY = "anon"

# Admission categories
STATE_INGEST = "state"
COMMENTARY_CALL = "commentary"

# Generation kinds
COMMENTARY = "commentary"
COACH = "coach"

AI_ADJUST = "aiAdjust"


@dataclass
class Config:
    openai_api_key: str = OPENAI_API_KEY
    simulated_mode: bool = SIMULATED_MODE
    model_name: str = MODEL_NAME
    provider_timeout: float = PROVIDER_TIMEOUT_SECONDS
    admin_key: str = ADMIN_KEY
    jwt_secret: str = JWT_SECRET
    jwt_exp_seconds: int = JWT_EXP_SECONDS
    redis_url: str = REDIS_URL
    state_limit_per_second: int = STATE_SEND_LIMIT_PER_SECOND
    commentary_limit_per_minute: int = COMMENTARY_LIMIT_PER_MINUTE
    commentary_interval_ms: int = COMMENTARY_INTERVAL_MS
    coach_interval_ms: int = COACH_INTERVAL_MS

    @property
    def simulated(self) -> bool:
        return self.simulated_mode or not self.openai_api_key


# ---------------------------------------------------------------------------
# Prompts
# ---------------------------------------------------------------------------

COMMENTARY_SYSTEM_PROMPT = (
    "You are a concise sports commentator for a Pong match. Reply with either one short "
    "(<25 words) lively commentary phrase or, if recommending an AI adjustment, output a "
    'single-line JSON ONLY like {"type":"aiAdjust","aiSpeed":<number>} with no other text.'
)

COACH_SYSTEM_PROMPT = (
    "You are a Pong coach giving one concise strategy tip (about 40-60 words) "
    "focusing on positioning and timing."
)

COMMENTARY_PHRASES = [
    "Nice block!",
    "Amazing reflex!",
    "Edge of the paddle, nearly missed!",
    "Fast return!",
    "Deep to the corner!",
    "Watch the angle!",
    "Move early to intercept",
    "Keep paddle centered",
    "Aim low for a tough return",
]

COACH_TIPS = [
    "Keep paddle centered and move small amounts; this reduces overcommit and increases reach for angled returns.",
    "Anticipate opponent returns by watching their paddle center; move preemptively rather than reacting late.",
    "Aim slightly ahead of the ball to push returns low. Low angles are harder to reach and often cause misses.",
]

# (max_completion_tokens, temperature) per generation kind
GENERATION_LIMITS = {
    COMMENTARY: (64, 0.8),
    COACH: (200, 0.7),
}


def _lookup(snapshot: Any, *path: str) -> Any:
    value = snapshot
    for key in path:
        if not isinstance(value, dict):
            return None
        value = value.get(key)
    return value


def _number(snapshot: Any, *path: str) -> float:
    """Read a numeric field, returning NaN for anything missing or non-numeric."""
    value = _lookup(snapshot, *path)
    if not isinstance(value, (int, float, str)):
        return math.nan
    try:
        return float(value)
    except (ValueError, OverflowError):
        return math.nan


def _format_number(value: float) -> str:
    value = float(value)
    if value.is_integer():
        return str(int(value))
    return repr(value)


def describe_snapshot(snapshot: Any) -> str:
    score_player = _lookup(snapshot, "score", "player")
    score_ai = _lookup(snapshot, "score", "ai")
    running = _lookup(snapshot, "running")
    return (
        f"Snapshot:\n"
        f"ball x={_number(snapshot, 'ball', 'x'):.1f} y={_number(snapshot, 'ball', 'y'):.1f} "
        f"vx={_number(snapshot, 'ball', 'vx'):.2f} vy={_number(snapshot, 'ball', 'vy'):.2f}\n"
        f"leftPaddle.y={_number(snapshot, 'leftPaddle', 'y'):.1f}\n"
        f"rightPaddle.y={_number(snapshot, 'rightPaddle', 'y'):.1f} "
        f"speed={_format_number(_number(snapshot, 'rightPaddle', 'speed'))}\n"
        f"score player={'?' if score_player is None else score_player} "
        f"ai={'?' if score_ai is None else score_ai}\n"
        f"running={_render_flag(running)}\n"
    )


def _render_flag(value: Any) -> str:
    if value is None:
        return "?"
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


@dataclass(frozen=True)
class GenerationRequest:
    kind: str
    system_prompt: str
    user_prompt: str
    snapshot: Any = None


def build_request(kind: str, snapshot: Any) -> GenerationRequest:
    if kind == COACH:
        return GenerationRequest(
            kind=COACH,
            system_prompt=COACH_SYSTEM_PROMPT,
            user_prompt=describe_snapshot(snapshot) + "\nProvide one coaching tip.",
            snapshot=snapshot,
        )
    return GenerationRequest(
        kind=COMMENTARY,
        system_prompt=COMMENTARY_SYSTEM_PROMPT,
        user_prompt=describe_snapshot(snapshot) + "\nRespond accordingly.",
        snapshot=snapshot,
    )


# ---------------------------------------------------------------------------
# Frame codec
# ---------------------------------------------------------------------------

CMD_STATE = "state"
CMD_COACH_ENABLE = "coach_enable"
CMD_PING = "ping"
CMD_UNRECOGNIZED = "unrecognized"


class FrameDecodeError(ValueError):
    """Raised when a frame is not valid MessagePack / JSON."""


@dataclass(frozen=True)
class Command:
    kind: str
    payload: Any = None


def classify(value: Any) -> Command:
    if isinstance(value, list):
        if value and value[0] == CMD_STATE:
            return Command(CMD_STATE, value[1] if len(value) > 1 else None)
        return Command(CMD_UNRECOGNIZED)
    if isinstance(value, dict):
        msg_type = value.get("type")
        if msg_type == CMD_STATE:
            return Command(CMD_STATE, value.get("state"))
        if msg_type == CMD_COACH_ENABLE:
            return Command(CMD_COACH_ENABLE, bool(value.get("enable")))
        if msg_type == CMD_PING:
            return Command(CMD_PING)
    return Command(CMD_UNRECOGNIZED)


def decode_frame(data: bytes | str, binary: bool) -> Command:
    """Decode one inbound frame. Binary frames are MessagePack, text frames JSON."""
    try:
        if binary:
            value = msgpack.unpackb(data, raw=False)
        else:
            if isinstance(data, (bytes, bytearray)):
                data = data.decode("utf-8")
            value = json.loads(data)
    except (ValueError, TypeError, RecursionError, UnpackException) as e:
        raise FrameDecodeError(str(e)) from e
    return classify(value)


def encode_event(event: dict) -> str:
    return json.dumps(event, separators=(",", ":"), allow_nan=False)


# ---------------------------------------------------------------------------
# Directives embedded in generated text
# ---------------------------------------------------------------------------

def parse_directive(text: str) -> dict | None:
    """Return the AI speed directive if ``text`` is exactly one, else None."""
    try:
        parsed = json.loads(text)
    except (ValueError, TypeError, RecursionError):
        return None
    if not isinstance(parsed, dict) or parsed.get("type") != AI_ADJUST:
        return None
    speed = parsed.get("aiSpeed")
    if isinstance(speed, bool) or not isinstance(speed, (int, float)):
        return None
    if not math.isfinite(speed):
        return None
    return {"type": AI_ADJUST, "aiSpeed": speed}


def directive_confirmation(directive: dict) -> str:
    return f"(AI speed set to {_format_number(directive['aiSpeed'])})"


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------

class HandshakeRejected(Exception):
    def __init__(self, status_code: int, reason: str):
        super().__init__(reason)
        self.status_code = status_code


class Authenticator:
    """Verifies HS256 JWTs offered during the WebSocket handshake."""

    ALGORITHM = "HS256"

    def __init__(self, secret: str, expires_in: int = JWT_EXP_SECONDS, protocol: str = PROTOCOL):
        self.secret = secret
        self.expires_in = expires_in
        self.protocol = protocol

    def authenticate(self, subprotocols: list[str], query_token: str | None = None) -> dict:
        """
        Validate handshake metadata and return the decoded claims.

        The first requested subprotocol must be ours. The token is the second
        subprotocol entry, falling back to the ``token`` query parameter.
        """
        if not subprotocols or subprotocols[0] != self.protocol:
            raise HandshakeRejected(400, "unsupported subprotocol")

        token = subprotocols[1] if len(subprotocols) > 1 else None
        if not token:
            token = query_token
        if not token:
            raise HandshakeRejected(401, "missing token")

        try:
            return jwt.decode(token, self.secret, algorithms=[self.ALGORITHM])
        except jwt.InvalidTokenError as e:
            raise HandshakeRejected(401, f"invalid token: {e}") from e

    def mint(self, subject: str, role: str = "tester", expires_in: int | None = None) -> str:
        now = int(time.time())
        lifetime = self.expires_in if expires_in is None else expires_in
        payload = {"sub": subject, "role": role, "iat": now, "exp": now + lifetime}
        return jwt.encode(payload, self.secret, algorithm=self.ALGORITHM)


def identity_for(claims: dict) -> str:
    subject = claims.get("sub") if isinstance(claims, dict) else None
    return str(subject) if subject else ANONYMOUS_IDENTITY


# ---------------------------------------------------------------------------
# Admission control (Redis fixed-window counters)
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class QuotaPolicy:
    key_prefix: str
    points: int
    duration: int  # seconds


def build_policies(config: Config) -> dict[str, QuotaPolicy]:
    return {
        STATE_INGEST: QuotaPolicy("rl_state", config.state_limit_per_second, 1),
        COMMENTARY_CALL: QuotaPolicy("rl_commentary", config.commentary_limit_per_minute, 60),
    }


class AdmissionController:
    """
    Per-user, per-category quota shared by every server instance.

    Each consume runs SET NX EX + INCR + PTTL in one MULTI transaction, so the
    window starts at the first request and the counter is incremented
    atomically across processes. Keys that went over budget are remembered
    in-process until their window expires to skip further Redis round trips.
    """

    def __init__(self, redis: Redis, policies: dict[str, QuotaPolicy], clock=time.monotonic):
        self.redis = redis
        self.policies = policies
        self._clock = clock
        self._blocked_until: dict[str, float] = {}

    async def try_consume(self, category: str, identity: str) -> bool:
        policy = self.policies[category]
        key = f"{policy.key_prefix}:{identity}"

        now = self._clock()
        blocked_until = self._blocked_until.get(key)
        if blocked_until is not None:
            if now < blocked_until:
                return False
            self._blocked_until.pop(key, None)

        try:
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.set(key, 0, ex=policy.duration, nx=True)
                pipe.incr(key)
                pipe.pttl(key)
                _, count, ttl_ms = await pipe.execute()
        except (RedisError, OSError) as e:
            logger.warning(f"Admission store error for {key}: {e}")
            return False

        if count <= policy.points:
            return True

        if ttl_ms and ttl_ms > 0:
            self._forget_expired(now)
            self._blocked_until[key] = now + ttl_ms / 1000
        return False

    def _forget_expired(self, now: float):
        expired = [key for key, until in self._blocked_until.items() if now >= until]
        for key in expired:
            del self._blocked_until[key]


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------

def _monotonic_ms() -> float:
    return time.monotonic() * 1000


@dataclass(eq=False)
class Session:
    websocket: Any
    claims: dict
    identity: str
    last_state: Any = None
    last_commentary_at: float | None = None
    last_coach_at: float | None = None
    coach_enabled: bool = False
    closed: bool = False

    @property
    def is_open(self) -> bool:
        if self.closed:
            return False
        ws = self.websocket
        return (
            ws.client_state == WebSocketState.CONNECTED
            and ws.application_state == WebSocketState.CONNECTED
        )

    async def send(self, payload: dict) -> bool:
        if not self.is_open:
            logger.debug(f"Dropping {payload.get('type', '?')} for closed session {self.identity}")
            return False
        try:
            await self.websocket.send_text(encode_event(payload))
            return True
        except Exception as e:
            logger.warning(f"send to {self.identity} failed ({payload.get('type', '?')}): {e}")
            return False


class SessionRegistry:
    """Open connections and their session records, owned by the app."""

    def __init__(self):
        self._sessions: dict[Any, Session] = {}

    def register(self, websocket: Any, claims: dict) -> Session:
        session = Session(websocket=websocket, claims=claims, identity=identity_for(claims))
        self._sessions[websocket] = session
        return session

    def unregister(self, websocket: Any) -> Session | None:
        session = self._sessions.pop(websocket, None)
        if session:
            session.closed = True
        return session

    def get(self, websocket: Any) -> Session | None:
        return self._sessions.get(websocket)

    def sessions(self) -> list[Session]:
        return list(self._sessions.values())

    def __len__(self) -> int:
        return len(self._sessions)


# ---------------------------------------------------------------------------
# Commentary generators
# ---------------------------------------------------------------------------

class CommentaryGenerator:
    """Produces commentary text for a GenerationRequest.

    ``streaming`` tells the schedulers whether commentary should be consumed
    through ``stream()`` (chunk events) or ``complete()``.
    """

    streaming = False

    async def complete(self, request: GenerationRequest) -> str:
        raise NotImplementedError

    async def stream(self, request: GenerationRequest) -> AsyncIterator[str]:
        yield await self.complete(request)


class OpenAIGenerator(CommentaryGenerator):
    """Chat Completions backed generator."""

    streaming = True

    def __init__(self, client: AsyncOpenAI, model: str = MODEL_NAME):
        self.client = client
        self.model = model

    def _params(self, request: GenerationRequest) -> dict:
        max_tokens, temperature = GENERATION_LIMITS.get(request.kind, GENERATION_LIMITS[COMMENTARY])
        return {
            "model": self.model,
            "messages": [
                {"role": "system", "content": request.system_prompt},
                {"role": "user", "content": request.user_prompt},
            ],
            "max_completion_tokens": max_tokens,
            "temperature": temperature,
        }

    async def complete(self, request: GenerationRequest) -> str:
        response = await self.client.chat.completions.create(**self._params(request), stream=False)
        if not response.choices:
            raise ValueError("completion returned no choices")
        content = response.choices[0].message.content
        if not content:
            raise ValueError("completion returned empty content")
        return content.strip()

    async def stream(self, request: GenerationRequest) -> AsyncIterator[str]:
        stream = await self.client.chat.completions.create(**self._params(request), stream=True)
        async for part in stream:
            for choice in part.choices or []:
                delta = getattr(choice, "delta", None)
                text = getattr(delta, "content", None) if delta is not None else None
                if text:
                    yield text


class SimulatedGenerator(CommentaryGenerator):
    """Offline stand-in that picks canned phrases and occasionally a speed directive."""

    def __init__(self, rng: random.Random | None = None, directive_probability: float = 0.05):
        self.rng = rng or random.Random()
        self.directive_probability = directive_probability

    async def complete(self, request: GenerationRequest) -> str:
        if request.kind == COACH:
            return self.rng.choice(COACH_TIPS)
        phrase = self.rng.choice(COMMENTARY_PHRASES)
        if self.rng.random() < self.directive_probability:
            return json.dumps(self._speed_directive(request.snapshot))
        return phrase

    def _speed_directive(self, snapshot: Any) -> dict:
        current = _number(snapshot, "rightPaddle", "speed")
        if not math.isfinite(current) or current == 0:
            current = 4.0
        step = -0.5 if self.rng.random() < 0.5 else 0.5
        speed = max(2.0, min(8.0, current + step))
        return {"type": AI_ADJUST, "aiSpeed": round(speed, 2)}


def build_generator(config: Config) -> CommentaryGenerator:
    if config.simulated:
        logger.info("SIMULATED_MODE enabled (no OpenAI calls)")
        return SimulatedGenerator()
    try:
        client = AsyncOpenAI(api_key=config.openai_api_key, timeout=config.provider_timeout)
    except OpenAIError as e:
        logger.warning(f"OpenAI init failed, falling back to simulated mode: {e}")
        return SimulatedGenerator()
    logger.info(f"OpenAI initialized, model: {config.model_name}")
    return OpenAIGenerator(client, config.model_name)


# ---------------------------------------------------------------------------
# Schedulers
# ---------------------------------------------------------------------------

class CommentaryScheduler:
    """
    Periodic pass over every live session producing play-by-play commentary.

    A tick only decides who is due and stamps them; admission and generation
    run in one task per session so a slow provider call never holds up the
    rest of the tick. A session with an invocation still in flight is skipped.
    """

    kind = COMMENTARY
    event_type = "commentary"

    def __init__(
        self,
        registry: SessionRegistry,
        admission: AdmissionController,
        generator: CommentaryGenerator,
        interval_ms: int = COMMENTARY_INTERVAL_MS,
        clock=_monotonic_ms,
    ):
        self.registry = registry
        self.admission = admission
        self.generator = generator
        self.interval_ms = interval_ms
        self.tick_seconds = max(MIN_TICK_MS, interval_ms) / 1000
        self._clock = clock
        self._in_flight: set[Session] = set()
        self._tasks: set[asyncio.Task] = set()

    # -- Per-kind hooks ------------------------------------------------------

    def _eligible(self, session: Session) -> bool:
        return session.last_state is not None

    def _last_fired(self, session: Session) -> float | None:
        return session.last_commentary_at

    def _mark_fired(self, session: Session, now: float):
        session.last_commentary_at = now

    # -- Tick --------------------------------------------------------------

    def is_due(self, session: Session, now: float) -> bool:
        if not session.is_open or not self._eligible(session):
            return False
        if session in self._in_flight:
            return False
        last = self._last_fired(session)
        return last is None or now - last >= self.interval_ms

    def tick(self, now: float | None = None) -> list[asyncio.Task]:
        now = self._clock() if now is None else now
        spawned = []
        for session in self.registry.sessions():
            if not self.is_due(session, now):
                continue
            self._mark_fired(session, now)
            self._in_flight.add(session)
            task = asyncio.create_task(self._invoke(session, session.last_state))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
            spawned.append(task)
        return spawned

    async def run(self):
        logger.info(
            f"{self.kind} scheduler started (interval={self.interval_ms}ms, tick={self.tick_seconds:.2f}s)"
        )
        while True:
            try:
                self.tick()
            except Exception as e:
                logger.error(f"{self.kind} tick failed: {e}", exc_info=True)
            await asyncio.sleep(self.tick_seconds)

    async def close(self):
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)

    # -- Invocation ----------------------------------------------------------

    async def _invoke(self, session: Session, snapshot: Any):
        try:
            if not await self.admission.try_consume(COMMENTARY_CALL, session.identity):
                logger.info(f"{self.kind} rate-limited for {session.identity}")
                await session.send({"type": self.event_type, "text": f"[{self.kind} rate-limited]"})
                return
            await self._generate(session, build_request(self.kind, snapshot))
        except Exception as e:
            logger.error(f"{self.kind} invocation failed for {session.identity}: {e}", exc_info=True)
        finally:
            self._in_flight.discard(session)

    async def _generate(self, session: Session, request: GenerationRequest):
        try:
            if self.generator.streaming:
                parts = []
                async for chunk in self.generator.stream(request):
                    parts.append(chunk)
                    await session.send({"type": "commentary_chunk", "text": chunk})
                text = "".join(parts).strip()
            else:
                text = (await self.generator.complete(request)).strip()
        except Exception as e:
            logger.error(f"Commentary generation error for {session.identity}: {e}")
            await session.send({"type": "commentary", "text": "[commentary error]"})
            return

        directive = parse_directive(text)
        if directive is not None:
            logger.info(f"Directive for {session.identity}: {directive}")
            await session.send({"type": "control", "control": directive})
            await session.send({"type": "commentary", "text": directive_confirmation(directive)})
            return

        await session.send({"type": "commentary", "text": text})


class CoachScheduler(CommentaryScheduler):
    """Slower tick with longer, non-streamed tips for sessions that opted in."""

    kind = COACH
    event_type = "coach"

    def __init__(self, registry, admission, generator, interval_ms: int = COACH_INTERVAL_MS, clock=_monotonic_ms):
        super().__init__(registry, admission, generator, interval_ms=interval_ms, clock=clock)

    def _eligible(self, session: Session) -> bool:
        return session.coach_enabled and session.last_state is not None

    def _last_fired(self, session: Session) -> float | None:
        return session.last_coach_at

    def _mark_fired(self, session: Session, now: float):
        session.last_coach_at = now

    async def _generate(self, session: Session, request: GenerationRequest):
        try:
            text = (await self.generator.complete(request)).strip()
        except Exception as e:
            logger.error(f"Coach call error for {session.identity}: {e}")
            text = ""
        await session.send({"type": "coach", "text": text or "[coach error]"})


# ---------------------------------------------------------------------------
# Inbound frames
# ---------------------------------------------------------------------------

async def dispatch_frame(session: Session, data: bytes | str, binary: bool, admission: AdmissionController):
    try:
        command = decode_frame(data, binary=binary)
    except FrameDecodeError as e:
        logger.debug(f"Invalid frame from {session.identity}: {e}")
        await session.send({"type": "error", "message": "invalid message"})
        return

    if command.kind == CMD_STATE:
        if not await admission.try_consume(STATE_INGEST, session.identity):
            logger.debug(f"State frame dropped (rate limit) for {session.identity}")
            return
        session.last_state = command.payload
    elif command.kind == CMD_COACH_ENABLE:
        session.coach_enabled = command.payload
        session.last_coach_at = None
        logger.info(f"Coach {'enabled' if session.coach_enabled else 'disabled'} for {session.identity}")
        await session.send({"type": "coach_status", "enabled": session.coach_enabled})
    elif command.kind == CMD_PING:
        await session.send({"type": "pong", "ts": int(time.time() * 1000)})
    else:
        await session.send({"type": "error", "message": "unknown message type"})


# ---------------------------------------------------------------------------
# FastAPI app
# ---------------------------------------------------------------------------

router = APIRouter()


@router.get("/health")
async def health(request: Request):
    state = request.app.state
    return {
        "ok": True,
        "simulated": isinstance(state.generator, SimulatedGenerator),
        "sessions": len(state.registry),
    }


@router.post("/auth/token")
async def mint_dev_token(request: Request):
    """Dev-only: trade the admin key for a signed JWT."""
    try:
        payload = await request.json()
    except ValueError:
        payload = {}
    admin_key = payload.get("adminKey") if isinstance(payload, dict) else None

    config = request.app.state.config
    if not admin_key or not hmac.compare_digest(str(admin_key), config.admin_key):
        return JSONResponse({"error": "invalid adminKey"}, status_code=401)

    token = request.app.state.authenticator.mint("dev-user", role="tester")
    return {"token": token}


@router.websocket("/ws")
async def pong_websocket(websocket: WebSocket):
    """
    Main WebSocket endpoint.

    Protocol:
      Client -> Server:
        - Binary msgpack: ["state", {...}]
        - JSON:           { type: "state", state: {...} }
        - JSON:           { type: "coach_enable", enable: bool }
        - JSON ping:      { type: "ping" }

      Server -> Client:
        - { type: "welcome", user }
        - { type: "commentary_chunk", text }
        - { type: "commentary", text }
        - { type: "control", control: { type: "aiAdjust", aiSpeed } }
        - { type: "coach", text }
        - { type: "coach_status", enabled }
        - { type: "pong", ts }
        - { type: "error", message }
    """
    state = websocket.app.state

    try:
        claims = state.authenticator.authenticate(
            list(websocket.scope.get("subprotocols") or []),
            websocket.query_params.get("token"),
        )
    except HandshakeRejected as e:
        logger.info(f"Handshake rejected ({e.status_code}): {e}")
        if "websocket.http.response" in websocket.scope.get("extensions", {}):
            await websocket.send_denial_response(PlainTextResponse(str(e), status_code=e.status_code))
        else:
            await websocket.close(code=1008)
        return

    await websocket.accept(subprotocol=PROTOCOL)
    session = state.registry.register(websocket, claims)
    logger.info(f"WS connection: {session.identity} ({len(state.registry)} open)")

    try:
        await session.send({"type": "welcome", "user": claims})
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                break
            if message.get("bytes") is not None:
                await dispatch_frame(session, message["bytes"], True, state.admission)
            elif message.get("text") is not None:
                await dispatch_frame(session, message["text"], False, state.admission)

    except WebSocketDisconnect:
        pass
    except Exception as e:
        logger.error(f"WebSocket error for {session.identity}: {e}", exc_info=True)
    finally:
        state.registry.unregister(websocket)
        logger.info(f"WS disconnected: {session.identity}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    state = app.state
    runners = []
    if state.start_schedulers:
        runners = [asyncio.create_task(scheduler.run()) for scheduler in state.schedulers]
    try:
        yield
    finally:
        for runner in runners:
            runner.cancel()
        await asyncio.gather(*runners, return_exceptions=True)
        for scheduler in state.schedulers:
            await scheduler.close()
        await state.redis.aclose()


def create_app(
    config: Config | None = None,
    *,
    redis_client: Redis | None = None,
    generator: CommentaryGenerator | None = None,
    start_schedulers: bool = True,
) -> FastAPI:
    config = config or Config()
    app = FastAPI(title="Pong Commentary Server", lifespan=lifespan)

    registry = SessionRegistry()
    redis = redis_client if redis_client is not None else Redis.from_url(config.redis_url)
    admission = AdmissionController(redis, build_policies(config))
    generator = generator or build_generator(config)

    app.state.config = config
    app.state.registry = registry
    app.state.authenticator = Authenticator(config.jwt_secret, expires_in=config.jwt_exp_seconds)
    app.state.redis = redis
    app.state.admission = admission
    app.state.generator = generator
    app.state.schedulers = [
        CommentaryScheduler(registry, admission, generator, interval_ms=config.commentary_interval_ms),
        CoachScheduler(registry, admission, generator, interval_ms=config.coach_interval_ms),
    ]
    app.state.start_schedulers = start_schedulers

    app.include_router(router)
    return app


app = create_app()


# ---------------------------------------------------------------------------
# Run
# ---------------------------------------------------------------------------

def main():
    import uvicorn

    uvicorn.run(
        "pong_server:app",
        host=HOST,
        port=PORT,
        log_level=LOG_LEVEL.lower(),
    )


if __name__ == "__main__":
    main()
