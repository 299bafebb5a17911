from __future__ import annotations

import dataclasses
import logging
import uuid

from . import protocol
from .errors import DecodeError
from .events import Signal, release
from .protocol import SOCKET_EVENTS
from .transport import SignalingSocket

logger = logging.getLogger(__name__)


def default_device_id() -> str:
    return str(uuid.uuid5(uuid.NAMESPACE_OID, hex(uuid.getnode())))


@dataclasses.dataclass(frozen=True)
class ConnectionSession:
    identity: str
    token: str | None
    authenticated: bool = True
    role: str | None = None
    permissions: tuple[str, ...] = ()


class SessionHandler:
    """Login/logout over the signaling socket.

    Emits ``login_succeeded(token, identity)``, ``login_failed(reason)`` and
    ``logged_out``. Never raises to the caller.
    """
    def __init__(self, socket: SignalingSocket):
        self.login_succeeded = Signal("login_succeeded")
        self.login_failed = Signal("login_failed")
        self.logged_out = Signal("logged_out")

        self._socket = socket
        self._session: ConnectionSession | None = None
        self._subscriptions = [
            socket.message.connect(self._on_message),
            socket.disconnected.connect(self._on_disconnected),
        ]

    @property
    def session(self) -> ConnectionSession | None:
        return self._session

    @property
    def is_authenticated(self) -> bool:
        return self._session is not None and self._session.authenticated

    @property
    def token(self) -> str | None:
        return self._session.token if self._session else None

    @property
    def identity(self) -> str | None:
        return self._session.identity if self._session else None

    async def login(self, username: str, password: str, device_id: str | None = None) -> bool:
        request = protocol.LoginRequest(username=username, password=password,
                                        deviceId=device_id or default_device_id())
        logger.info("AUTH: login attempt: %s", username)
        if not await self._socket.send(SOCKET_EVENTS.AUTH_LOGIN, request.to_wire()):
            self.login_failed.emit("Not connected to server")
            return False
        return True

    async def logout(self) -> None:
        await self._socket.send(SOCKET_EVENTS.DISCONNECT, {})
        self._clear()
        logger.info("AUTH: logout")

    def close(self):
        release(self._subscriptions)

    def _on_message(self, event_name: str, data: str):
        match event_name:
            case SOCKET_EVENTS.AUTH_SUCCESS:
                self._handle_success(data)
            case SOCKET_EVENTS.AUTH_ERROR:
                self._handle_error(data)

    def _handle_success(self, data: str):
        try:
            response = protocol.decode_login_response(data)
        except DecodeError as e:
            logger.error("AUTH: parse error: %s", e)
            self.login_failed.emit("Parse error")
            return
        if not response.success:
            logger.warning("AUTH: login failed: %s", response.message)
            self.login_failed.emit(response.message or "Login rejected")
            return
        user = response.user or protocol.UserData()
        identity = user.username or response.user_id or "self"
        self._session = ConnectionSession(identity=identity, token=response.token,
                                          role=user.role, permissions=user.permissions)
        logger.info("AUTH: authenticated: %s", identity)
        if response.token:
            logger.debug("AUTH: token: %s...", response.token[:10])
        self.login_succeeded.emit(response.token, identity)

    def _handle_error(self, data: str):
        try:
            message = protocol.decode_error_message(data)
        except DecodeError:
            message = None
        logger.error("AUTH: error: %s", message)
        self.login_failed.emit(message or "Authentication error")

    def _on_disconnected(self):
        if self.is_authenticated:
            self._clear()

    def _clear(self):
        was_authenticated = self._session is not None
        self._session = None
        if was_authenticated:
            logger.info("AUTH: session ended")
            self.logged_out.emit()
