"""Tests for the terminal WebSocket relay."""

import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from cloudbay.app.main import create_app
from cloudbay.core.errors import DriverError, ResourceNotFoundError
from cloudbay.core.interfaces import ShellSession
from cloudbay.core.security import create_access_token
from cloudbay.services.platform import Platform


class EchoShell(ShellSession):
    """Shell that echoes every write back as output."""

    def __init__(self) -> None:
        self.written: list[bytes] = []
        self.sizes: list[tuple[int, int]] = []
        self.closed = False
        self._output: asyncio.Queue[bytes] | None = None

    @property
    def output(self) -> asyncio.Queue[bytes]:
        # Created lazily so the queue lives on the app's event loop
        if self._output is None:
            self._output = asyncio.Queue()
        return self._output

    async def read(self) -> bytes:
        return await self.output.get()

    async def write(self, data: bytes) -> None:
        self.written.append(data)
        if data == b"exit\n":
            await self.output.put(b"")
        else:
            await self.output.put(data)

    async def resize(self, rows: int, cols: int) -> None:
        self.sizes.append((rows, cols))

    async def close(self) -> None:
        self.closed = True


class BrokenPipeShell(EchoShell):
    """Shell whose input side has gone away."""

    async def write(self, data: bytes) -> None:
        raise BrokenPipeError("Broken pipe")


@pytest.fixture
def shells() -> list[EchoShell]:
    return []


@pytest.fixture
def terminal_engine(shells: list[EchoShell]) -> MagicMock:
    async def open_shell(name: str, rows: int = 24, cols: int = 80) -> EchoShell:
        shell = EchoShell()
        shells.append(shell)
        return shell

    engine = MagicMock()
    engine.get_resource = AsyncMock(return_value=SimpleNamespace(name="nextjs-shop-1a2b"))
    engine.driver.open_shell = AsyncMock(side_effect=open_shell)
    engine.driver.mode = "docker"
    engine.check_driver = AsyncMock(return_value=True)
    return engine


@pytest.fixture
def client(terminal_engine: MagicMock):
    platform = Platform(
        driver=terminal_engine.driver,
        engine=terminal_engine,
        backups=MagicMock(),
        monitor=MagicMock(),
    )
    with TestClient(create_app(platform=platform)) as test_client:
        yield test_client


@pytest.fixture
def token() -> str:
    return create_access_token("user-1", project_id="proj-1")


def _auth(token: str) -> dict[str, str]:
    return {"authorization": f"Bearer {token}"}


class TestHandshake:
    def test_missing_token_rejected(self, client: TestClient) -> None:
        with pytest.raises(WebSocketDisconnect) as exc_info:
            with client.websocket_connect("/ws/terminal"):
                pass

        assert exc_info.value.code == 1008

    def test_invalid_token_rejected(self, client: TestClient) -> None:
        with pytest.raises(WebSocketDisconnect) as exc_info:
            with client.websocket_connect("/ws/terminal", headers=_auth("not-a-jwt")):
                pass

        assert exc_info.value.code == 1008

    def test_expired_token_rejected(self, client: TestClient) -> None:
        expired = create_access_token("user-1", expires_in=-10)

        with pytest.raises(WebSocketDisconnect) as exc_info:
            with client.websocket_connect("/ws/terminal", headers=_auth(expired)):
                pass

        assert exc_info.value.code == 1008

    def test_token_in_query(
        self, client: TestClient, token: str, shells: list[EchoShell]
    ) -> None:
        with client.websocket_connect(f"/ws/terminal?token={token}") as ws:
            ws.send_json({"type": "attach", "resource_id": "01HRES"})
            ws.send_json({"type": "data", "data": "pwd\n"})

            assert ws.receive_bytes() == b"pwd\n"


class TestSession:
    def test_attach_and_echo(
        self,
        client: TestClient,
        token: str,
        terminal_engine: MagicMock,
        shells: list[EchoShell],
    ) -> None:
        with client.websocket_connect("/ws/terminal", headers=_auth(token)) as ws:
            ws.send_json({"type": "attach", "resource_id": "01HRES"})
            ws.send_json({"type": "data", "data": "ls\n"})
            assert ws.receive_bytes() == b"ls\n"

            ws.send_bytes(b"\x03")
            assert ws.receive_bytes() == b"\x03"

        terminal_engine.get_resource.assert_awaited_once_with("01HRES", project_id="proj-1")
        terminal_engine.driver.open_shell.assert_awaited_once_with("nextjs-shop-1a2b")
        assert shells[0].written == [b"ls\n", b"\x03"]

    def test_attach_unknown_resource(
        self, client: TestClient, token: str, terminal_engine: MagicMock
    ) -> None:
        terminal_engine.get_resource.side_effect = ResourceNotFoundError()

        with client.websocket_connect("/ws/terminal", headers=_auth(token)) as ws:
            ws.send_json({"type": "attach", "resource_id": "01HOTHER"})

            assert ws.receive_json() == {"type": "error", "message": "Resource not found"}

    def test_attach_shell_failure(
        self, client: TestClient, token: str, terminal_engine: MagicMock
    ) -> None:
        terminal_engine.driver.open_shell.side_effect = DriverError("No address known for vm")

        with client.websocket_connect("/ws/terminal", headers=_auth(token)) as ws:
            ws.send_json({"type": "attach", "resource_id": "01HRES"})

            assert ws.receive_json()["message"] == "No address known for vm"

    def test_attach_requires_resource_id(self, client: TestClient, token: str) -> None:
        with client.websocket_connect("/ws/terminal", headers=_auth(token)) as ws:
            ws.send_json({"type": "attach"})

            assert ws.receive_json()["message"] == "resource_id is required"

    def test_data_before_attach(self, client: TestClient, token: str) -> None:
        with client.websocket_connect("/ws/terminal", headers=_auth(token)) as ws:
            ws.send_json({"type": "data", "data": "ls\n"})

            assert ws.receive_json() == {"type": "error", "message": "Not attached"}

    def test_resize(self, client: TestClient, token: str, shells: list[EchoShell]) -> None:
        with client.websocket_connect("/ws/terminal", headers=_auth(token)) as ws:
            ws.send_json({"type": "attach", "resource_id": "01HRES"})
            ws.send_json({"type": "resize", "rows": 40, "cols": 120})
            ws.send_json({"type": "data", "data": "x"})
            assert ws.receive_bytes() == b"x"

        assert shells[0].sizes == [(40, 120)]

    @pytest.mark.parametrize(
        "message",
        [
            {"type": "resize", "rows": 0, "cols": 80},
            {"type": "resize", "rows": "24", "cols": 80},
            {"type": "resize", "rows": 24},
        ],
    )
    def test_invalid_resize(self, client: TestClient, token: str, message: dict) -> None:
        with client.websocket_connect("/ws/terminal", headers=_auth(token)) as ws:
            ws.send_json({"type": "attach", "resource_id": "01HRES"})
            ws.send_json(message)

            assert ws.receive_json()["message"] == "rows and cols must be positive integers"

    def test_invalid_json(self, client: TestClient, token: str) -> None:
        with client.websocket_connect("/ws/terminal", headers=_auth(token)) as ws:
            ws.send_text("{not json")

            assert ws.receive_json()["message"] == "Invalid JSON"

    def test_unknown_message_type(self, client: TestClient, token: str) -> None:
        with client.websocket_connect("/ws/terminal", headers=_auth(token)) as ws:
            ws.send_json({"type": "upload"})

            assert ws.receive_json()["message"] == "Unknown message type"

    def test_reattach_closes_previous_shell(
        self, client: TestClient, token: str, shells: list[EchoShell]
    ) -> None:
        with client.websocket_connect("/ws/terminal", headers=_auth(token)) as ws:
            ws.send_json({"type": "attach", "resource_id": "01HRES"})
            ws.send_json({"type": "attach", "resource_id": "01HRES2"})
            ws.send_json({"type": "data", "data": "id\n"})
            assert ws.receive_bytes() == b"id\n"

        assert len(shells) == 2
        assert shells[0].closed is True
        assert shells[1].written == [b"id\n"]

    def test_shell_exit_is_reported(
        self, client: TestClient, token: str, shells: list[EchoShell]
    ) -> None:
        with client.websocket_connect("/ws/terminal", headers=_auth(token)) as ws:
            ws.send_json({"type": "attach", "resource_id": "01HRES"})
            ws.send_json({"type": "data", "data": "exit\n"})
            assert ws.receive_json() == {"type": "error", "message": "Shell exited"}

            # The socket stays open; data now needs a new attach
            ws.send_json({"type": "data", "data": "ls\n"})
            assert ws.receive_json()["message"] == "Not attached"

        assert shells[0].closed is True

    def test_broken_shell_input_detaches(
        self,
        client: TestClient,
        token: str,
        terminal_engine: MagicMock,
        shells: list[EchoShell],
    ) -> None:
        async def open_broken(name: str, rows: int = 24, cols: int = 80) -> EchoShell:
            shell = BrokenPipeShell()
            shells.append(shell)
            return shell

        terminal_engine.driver.open_shell.side_effect = open_broken

        with client.websocket_connect("/ws/terminal", headers=_auth(token)) as ws:
            ws.send_json({"type": "attach", "resource_id": "01HRES"})
            ws.send_bytes(b"ls\n")
            assert ws.receive_json() == {"type": "error", "message": "Shell error: Broken pipe"}

            ws.send_json({"type": "data", "data": "ls\n"})
            assert ws.receive_json()["message"] == "Not attached"

        assert shells[0].closed is True
