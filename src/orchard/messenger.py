"""Length-framed message channel between the orchestrator and container code.

Wire format: a 4-byte big-endian length followed by a JSON envelope::

    {"version": 1, "kind": "ready", "payload": "<base64>"}

The payload is opaque bytes and round-trips bit-identically. Unknown kinds or
versions are rejected with UnknownMessageTypeError; a declared length above
``max_frame_bytes`` is rejected before the body is read.

Typical handshake: code inside a container calls ``signal_ready(port)``; the
orchestrator's ``messenger_probe(port)`` connects, receives READY and lets the
dependents start.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import struct
from enum import StrEnum

from pydantic import BaseModel, ConfigDict, ValidationError

from orchard.config import get_settings
from orchard.errors import (
    ConnectionClosedError,
    MalformedFrameError,
    MessengerConnectionError,
    MessengerTimeoutError,
    UnknownMessageTypeError,
)
from orchard.logger import logger

PROTOCOL_VERSION = 1
_LENGTH = struct.Struct(">I")
_Streams = tuple[asyncio.StreamReader, asyncio.StreamWriter]


class MessageKind(StrEnum):
    START = "start"
    READY = "ready"
    RESULT = "result"
    DATA = "data"
    ERROR = "error"


class NetMessage(BaseModel):
    model_config = ConfigDict(
        extra="forbid",
        frozen=True,
        ser_json_bytes="base64",
        val_json_bytes="base64",
    )

    version: int = PROTOCOL_VERSION
    kind: MessageKind
    payload: bytes = b""

    @classmethod
    def of(cls, kind: MessageKind, payload: bytes | str = b"") -> NetMessage:
        if isinstance(payload, str):
            payload = payload.encode()
        return cls(kind=kind, payload=payload)

    def payload_text(self) -> str:
        return self.payload.decode("utf-8", errors="replace")

    def to_bytes(self) -> bytes:
        return self.model_dump_json().encode()

    @classmethod
    def from_bytes(cls, data: bytes) -> NetMessage:
        try:
            raw = json.loads(data)
        except ValueError as exc:
            raise MalformedFrameError(f"envelope is not JSON: {exc}") from exc
        if not isinstance(raw, dict):
            raise MalformedFrameError("envelope is not a JSON object")
        if raw.get("version") != PROTOCOL_VERSION:
            raise UnknownMessageTypeError(f"unsupported protocol version {raw.get('version')!r}")
        if raw.get("kind") not in {k.value for k in MessageKind}:
            raise UnknownMessageTypeError(f"unknown message kind {raw.get('kind')!r}")
        try:
            return cls.model_validate_json(data)
        except ValidationError as exc:
            raise MalformedFrameError(f"invalid envelope: {exc}") from exc


# ---------------------------------------------------------------------------
# Framing
# ---------------------------------------------------------------------------


def encode_frame(message: NetMessage, max_frame_bytes: int | None = None) -> bytes:
    body = message.to_bytes()
    limit = max_frame_bytes
    if limit is None:
        limit = get_settings().messenger.max_frame_bytes
    if len(body) > limit:
        raise MalformedFrameError(f"frame of {len(body)} bytes exceeds the {limit} byte limit")
    return _LENGTH.pack(len(body)) + body


async def read_frame(reader: asyncio.StreamReader, max_frame_bytes: int) -> bytes:
    """Read one frame body; raises ConnectionClosedError if the peer hangs up."""
    try:
        header = await reader.readexactly(_LENGTH.size)
    except asyncio.IncompleteReadError as exc:
        where = "mid-header" if exc.partial else "before a frame"
        raise ConnectionClosedError(f"peer closed the stream {where}") from exc
    except ConnectionError as exc:
        raise ConnectionClosedError(str(exc)) from exc
    (length,) = _LENGTH.unpack(header)
    if length > max_frame_bytes:
        raise MalformedFrameError(
            f"declared frame length {length} exceeds the {max_frame_bytes} byte limit"
        )
    try:
        return await reader.readexactly(length)
    except asyncio.IncompleteReadError as exc:
        raise ConnectionClosedError(
            f"peer closed the stream mid-frame ({len(exc.partial)} of {length} bytes)"
        ) from exc
    except ConnectionError as exc:
        raise ConnectionClosedError(str(exc)) from exc


# ---------------------------------------------------------------------------
# Messenger
# ---------------------------------------------------------------------------


class NetMessenger:
    """One bidirectional framed stream. No implicit retries after connecting."""

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        *,
        max_frame_bytes: int | None = None,
    ) -> None:
        self.reader = reader
        self.writer = writer
        if max_frame_bytes is None:
            max_frame_bytes = get_settings().messenger.max_frame_bytes
        self.max_frame_bytes = max_frame_bytes

    @classmethod
    async def connect(
        cls,
        host: str,
        port: int,
        *,
        retries: int | None = None,
        delay: float | None = None,
    ) -> NetMessenger:
        """Connect, retrying ``retries`` times with ``delay`` seconds between attempts."""
        cfg = get_settings().messenger
        retries = cfg.connect_retries if retries is None else retries
        delay = cfg.connect_delay if delay is None else delay
        last: OSError | None = None
        for attempt in range(retries + 1):
            try:
                reader, writer = await asyncio.open_connection(host, port)
            except OSError as exc:
                last = exc
                if attempt < retries:
                    await asyncio.sleep(delay)
                continue
            logger.debug("Messenger connected", host=host, port=port, attempts=attempt + 1)
            return cls(reader, writer)
        raise MessengerConnectionError(
            f"could not connect to {host}:{port} after {retries + 1} attempts: {last}"
        )

    @classmethod
    async def listen_single_connect(
        cls, host: str, port: int, timeout: float | None = None
    ) -> NetMessenger:
        """Accept exactly one connection; raises MessengerTimeoutError after ``timeout``."""
        listener = SingleConnectListener(host, port)
        await listener.start()
        return await listener.accept(timeout)

    async def send(self, message: NetMessage) -> None:
        frame = encode_frame(message, self.max_frame_bytes)
        try:
            self.writer.write(frame)
            await self.writer.drain()
        except (ConnectionError, OSError) as exc:
            raise MessengerConnectionError(f"send failed: {exc}") from exc

    async def recv(self) -> NetMessage:
        return NetMessage.from_bytes(await read_frame(self.reader, self.max_frame_bytes))

    async def close(self) -> None:
        self.writer.close()
        with contextlib.suppress(ConnectionError, OSError):
            await self.writer.wait_closed()

    async def __aenter__(self) -> NetMessenger:
        return self

    async def __aexit__(self, *exc: object) -> None:
        await self.close()


class SingleConnectListener:
    """A server that hands out its first connection and refuses the rest."""

    def __init__(self, host: str, port: int) -> None:
        self.host = host
        self.port = port
        self._server: asyncio.Server | None = None
        self._accepted: asyncio.Future[_Streams] | None = None

    async def start(self) -> None:
        loop = asyncio.get_running_loop()
        self._accepted = loop.create_future()

        def on_connect(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
            assert self._accepted is not None
            if self._accepted.done():
                writer.close()
                return
            self._accepted.set_result((reader, writer))

        try:
            self._server = await asyncio.start_server(on_connect, self.host, self.port)
        except OSError as exc:
            raise MessengerConnectionError(
                f"cannot listen on {self.host}:{self.port}: {exc}"
            ) from exc
        # Resolve port 0 to the port the OS picked
        self.port = self._server.sockets[0].getsockname()[1]

    async def accept(self, timeout: float | None = None) -> NetMessenger:
        assert self._server is not None and self._accepted is not None
        try:
            reader, writer = await asyncio.wait_for(asyncio.shield(self._accepted), timeout)
        except TimeoutError:
            raise MessengerTimeoutError(
                f"no connection on {self.host}:{self.port} within {timeout}s"
            ) from None
        finally:
            # Stop accepting; the established connection stays open
            self._server.close()
        return NetMessenger(reader, writer)


async def signal_ready(
    port: int,
    *,
    host: str = "0.0.0.0",
    timeout: float | None = None,
    payload: bytes | str = b"",
) -> None:
    """Container side of the readiness handshake: wait for the probe, send READY."""
    messenger = await NetMessenger.listen_single_connect(host, port, timeout)
    async with messenger:
        await messenger.send(NetMessage.of(MessageKind.READY, payload))
        logger.debug("Readiness signalled", port=port)
