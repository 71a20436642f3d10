"""
api/middleware.py -- Optional encrypted-payload transport (pure ASGI middleware).

When PAYLOAD_ENCRYPTION=true, a client may send

    Content-Type: application/json
    {"encryptedData": "<Fernet token of the real JSON body>"}

The middleware decrypts the token, replays the original JSON bytes to the
route as if they had been sent in clear, and encrypts the JSON response the
same way. Requests without an encryptedData envelope pass through untouched,
so plain clients keep working.

Written as raw ASGI rather than BaseHTTPMiddleware because it has to rewrite
the request body before routing, which BaseHTTPMiddleware cannot do.
"""

from __future__ import annotations

import json
import logging

from starlette.datastructures import Headers, MutableHeaders
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from api.responses import fail
from core.crypto import PayloadCipher
from core.errors import ValidationError

logger = logging.getLogger("immobilier.api.crypto")

_BODYLESS = {"GET", "HEAD", "OPTIONS", "DELETE"}


async def _read_body(receive: Receive) -> bytes:
    chunks = []
    while True:
        message = await receive()
        chunks.append(message.get("body", b""))
        if not message.get("more_body", False):
            return b"".join(chunks)


class PayloadEncryptionMiddleware:
    def __init__(self, app: ASGIApp, cipher: PayloadCipher) -> None:
        self.app = app
        self.cipher = cipher

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http" or scope["method"] in _BODYLESS:
            await self.app(scope, receive, send)
            return
        if not Headers(scope=scope).get("content-type", "").startswith("application/json"):
            await self.app(scope, receive, send)
            return

        raw = await _read_body(receive)
        envelope = None
        try:
            payload = json.loads(raw) if raw else None
            if isinstance(payload, dict) and set(payload) == {"encryptedData"}:
                envelope = payload
        except ValueError:
            pass  # not JSON: let the route report it

        if envelope is None:
            await self.app(scope, _replay(raw, receive), send)
            return

        try:
            plain = self.cipher.unwrap(envelope)
        except ValidationError as exc:
            logger.warning("Rejected undecryptable payload on %s %s", scope["method"], scope["path"])
            response = fail(exc.status_code, exc.message, exc.code)
            await response(scope, receive, send)
            return

        headers = MutableHeaders(scope=scope)
        headers["content-length"] = str(len(plain))
        await self.app(scope, _replay(plain, receive), self._encrypting(send))

    def _encrypting(self, send: Send) -> Send:
        """Wrap `send` so a JSON response body goes out as {"encryptedData": ...}."""
        start: Message = {}
        chunks: list[bytes] = []

        async def wrapped(message: Message) -> None:
            if message["type"] == "http.response.start":
                start.update(message)
                return
            if message["type"] != "http.response.body":
                await send(message)
                return
            chunks.append(message.get("body", b""))
            if message.get("more_body", False):
                return
            body = b"".join(chunks)
            headers = MutableHeaders(raw=list(start.get("headers", [])))
            if headers.get("content-type", "").startswith("application/json"):
                body = json.dumps(self.cipher.wrap(body)).encode("utf-8")
                headers["content-length"] = str(len(body))
            start["headers"] = headers.raw
            await send(start)
            await send({"type": "http.response.body", "body": body, "more_body": False})

        return wrapped


def _replay(body: bytes, receive: Receive) -> Receive:
    sent = False

    async def replay() -> Message:
        nonlocal sent
        if not sent:
            sent = True
            return {"type": "http.request", "body": body, "more_body": False}
        return await receive()

    return replay
