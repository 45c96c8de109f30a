"""WebSocket terminal relay.

Protocol (client -> server, JSON text frames):
    {"type": "attach", "resource_id": "..."}
    {"type": "data", "data": "..."}        binary frames are data as well
    {"type": "resize", "rows": 24, "cols": 80}

Server -> client: binary frames carry shell output; failures are sent as
{"type": "error", "message": "..."} and leave the socket open.

The bearer token is checked before the handshake is accepted; an invalid
token closes with 1008.
"""

import asyncio
import contextlib
import json
import logging
from typing import Any

from starlette.websockets import WebSocket, WebSocketDisconnect, WebSocketState

from cloudbay.app.metrics.collector import TERMINAL_SESSIONS_ACTIVE
from cloudbay.core.errors import CloudbayError, UnauthorizedError
from cloudbay.core.interfaces import ShellSession
from cloudbay.core.logging_schema import LogEvent
from cloudbay.core.security import Principal, extract_bearer, verify_token
from cloudbay.services.provisioning import ProvisioningEngine

logger = logging.getLogger(__name__)

POLICY_VIOLATION = 1008


class TerminalSession:
    """State of one terminal WebSocket: at most one attached shell."""

    def __init__(
        self,
        websocket: WebSocket,
        principal: Principal,
        engine: ProvisioningEngine,
    ) -> None:
        self._websocket = websocket
        self._principal = principal
        self._engine = engine
        self._shell: ShellSession | None = None
        self._pump: asyncio.Task | None = None
        self._resource_id: str | None = None

    @property
    def attached(self) -> bool:
        return self._shell is not None

    async def send_error(self, message: str) -> None:
        await self._websocket.send_text(json.dumps({"type": "error", "message": message}))

    async def handle(self, payload: Any) -> None:
        if not isinstance(payload, dict):
            await self.send_error("Invalid message")
            return

        match payload.get("type"):
            case "attach":
                await self.attach(payload.get("resource_id"))
            case "data":
                data = payload.get("data")
                if not isinstance(data, str):
                    await self.send_error("Invalid data message")
                    return
                await self.write(data.encode())
            case "resize":
                await self.resize(payload.get("rows"), payload.get("cols"))
            case _:
                await self.send_error("Unknown message type")

    async def attach(self, resource_id: Any) -> None:
        if not isinstance(resource_id, str) or not resource_id:
            await self.send_error("resource_id is required")
            return

        await self.detach()

        try:
            resource = await self._engine.get_resource(
                resource_id, project_id=self._principal.project_id
            )
            shell = await self._engine.driver.open_shell(resource.name)
        except CloudbayError as exc:
            await self.send_error(exc.message)
            return

        self._shell = shell
        self._resource_id = resource_id
        self._pump = asyncio.create_task(self._pump_output(shell))
        TERMINAL_SESSIONS_ACTIVE.inc()
        logger.info(
            "Terminal attached to %s",
            resource_id,
            extra={
                "event": LogEvent.TERMINAL_ATTACHED,
                "resource_id": resource_id,
                "user_id": self._principal.user_id,
            },
        )

    async def write(self, data: bytes) -> None:
        if self._shell is None:
            await self.send_error("Not attached")
            return
        try:
            await self._shell.write(data)
        except CloudbayError as exc:
            await self.send_error(exc.message)
        except OSError as exc:
            # Transport to the shell is gone; a re-attach opens a fresh one
            logger.warning("Terminal input failed: %s", exc)
            await self.send_error(f"Shell error: {exc}")
            await self.detach()

    async def resize(self, rows: Any, cols: Any) -> None:
        if not isinstance(rows, int) or not isinstance(cols, int) or rows <= 0 or cols <= 0:
            await self.send_error("rows and cols must be positive integers")
            return
        if self._shell is None:
            await self.send_error("Not attached")
            return
        try:
            await self._shell.resize(rows, cols)
        except CloudbayError as exc:
            await self.send_error(exc.message)
        except OSError as exc:
            logger.warning("Terminal resize failed: %s", exc)
            await self.send_error(f"Shell error: {exc}")
            await self.detach()

    async def detach(self) -> None:
        """Close the current shell, if any. Safe to call repeatedly."""
        shell, pump = self._shell, self._pump
        if shell is None:
            return
        self._shell = None
        self._pump = None

        if pump is not None and pump is not asyncio.current_task():
            pump.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await pump
        with contextlib.suppress(CloudbayError, OSError):
            await shell.close()

        TERMINAL_SESSIONS_ACTIVE.dec()
        logger.info(
            "Terminal detached from %s",
            self._resource_id,
            extra={"event": LogEvent.TERMINAL_DETACHED, "resource_id": self._resource_id},
        )
        self._resource_id = None

    async def _pump_output(self, shell: ShellSession) -> None:
        try:
            while True:
                chunk = await shell.read()
                if not chunk:
                    break
                await self._websocket.send_bytes(chunk)
        except (CloudbayError, OSError) as exc:
            logger.warning("Terminal output stopped: %s", exc)
            with contextlib.suppress(WebSocketDisconnect, RuntimeError):
                await self.send_error(f"Shell error: {exc}")
        except (WebSocketDisconnect, RuntimeError):
            # Client went away; the receive loop closes the shell
            return
        else:
            with contextlib.suppress(WebSocketDisconnect, RuntimeError):
                await self.send_error("Shell exited")
        # The shell ended on its own; drop it so a re-attach starts fresh
        if self._shell is shell:
            await self.detach()


class TerminalRelay:
    """Bridges browser WebSockets to driver shell sessions."""

    def __init__(self, engine: ProvisioningEngine) -> None:
        self._engine = engine

    @staticmethod
    def token_from(websocket: WebSocket) -> str | None:
        return extract_bearer(websocket.headers.get("authorization")) or websocket.query_params.get(
            "token"
        )

    async def handle(self, websocket: WebSocket) -> None:
        try:
            principal = verify_token(self.token_from(websocket))
        except UnauthorizedError as exc:
            logger.info(
                "Terminal handshake rejected",
                extra={"event": LogEvent.TERMINAL_REJECTED, "reason": exc.message},
            )
            await websocket.close(code=POLICY_VIOLATION, reason=exc.message)
            return

        await websocket.accept()
        session = TerminalSession(websocket, principal, self._engine)
        try:
            await self._receive_loop(websocket, session)
        except WebSocketDisconnect:
            pass
        finally:
            await session.detach()
            if (
                websocket.client_state != WebSocketState.DISCONNECTED
                and websocket.application_state != WebSocketState.DISCONNECTED
            ):
                with contextlib.suppress(RuntimeError, OSError, WebSocketDisconnect):
                    await websocket.close()

    async def _receive_loop(self, websocket: WebSocket, session: TerminalSession) -> None:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                return

            if message.get("bytes") is not None:
                await session.write(message["bytes"])
                continue

            try:
                payload = json.loads(message.get("text") or "")
            except json.JSONDecodeError:
                await session.send_error("Invalid JSON")
                continue
            await session.handle(payload)
