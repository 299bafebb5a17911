from __future__ import annotations

import asyncio
import enum
import logging
import typing

from . import config
from . import models
from . import protocol
from .channels import ChannelReadinessTracker
from .errors import AuthError, ChannelError, DecodeError, LinkError, NegotiationError, TransportError
from .events import Signal, release
from .negotiation import IceConfig, NegotiationState, PeerNegotiationEngine, Role
from .protocol import SOCKET_EVENTS
from .session import SessionHandler
from .signaling import SignalingRelay
from .stats import MetricsPoller
from .transport import Connector, SignalingSocket

logger = logging.getLogger(__name__)


class SessionStatus(enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    AUTHENTICATED = "authenticated"
    NEGOTIATING = "negotiating"
    PEER_CONNECTED = "peer-connected"
    DATA_READY = "data-ready"
    ERROR = "error"


class TeleopSession:
    """One headset-to-robot session: socket, login, negotiation, channels and stats.

    Every component is built here and handed its dependencies explicitly;
    ``cleanup`` tears them down in reverse order and releases every
    subscription taken in ``__init__``.
    """
    def __init__(self, *, server_uri: str = config.SERVER_URI,
                 username: str | None = None, password: str | None = None, device_id: str | None = None,
                 robot: str | None = None, ice_config: IceConfig | None = None,
                 stats_interval: float = config.STATS_INTERVAL, auto_connect: bool = config.AUTO_CONNECT,
                 glare_policy: typing.Literal["answer", "compare"] = config.GLARE_POLICY,
                 reconnect_delay: float = config.RECONNECT_DELAY,
                 max_reconnect_attempts: int = config.MAX_RECONNECT_ATTEMPTS,
                 peer_retry_delay: float = config.PEER_RETRY_DELAY,
                 connector: Connector | None = None, peer_factory=None):
        self.server_uri = server_uri
        self.username = username
        self.password = password
        self.device_id = device_id
        self.robot = robot
        self.stats_interval = stats_interval
        self.auto_connect = auto_connect
        self.peer_retry_delay = peer_retry_delay

        self.should_exit = asyncio.Event()
        self.status_changed = Signal("status_changed")
        self.status = SessionStatus.DISCONNECTED
        self.last_error: LinkError | None = None

        self.socket = SignalingSocket(reconnect_delay=reconnect_delay,
                                      max_reconnect_attempts=max_reconnect_attempts, connector=connector)
        self.auth = SessionHandler(self.socket)
        self.relay = SignalingRelay(self.socket)
        self.engine = PeerNegotiationEngine(self.relay, ice_config=ice_config, peer_factory=peer_factory,
                                            glare_policy=glare_policy)
        self.channels = ChannelReadinessTracker(self.engine)
        self.poller = MetricsPoller(self.engine)

        self._tasks: set[asyncio.Task] = set()
        self._retry_task: asyncio.Task | None = None
        self._offer_target: str | None = None

        self._subscriptions = [
            self.socket.connected.connect(self._on_socket_connected),
            self.socket.disconnected.connect(self._on_socket_disconnected),
            self.socket.error.connect(self._on_socket_error),
            self.socket.message.connect(self._on_socket_message),
            self.auth.login_succeeded.connect(self._on_login_succeeded),
            self.auth.login_failed.connect(self._on_login_failed),
            self.auth.logged_out.connect(self._on_logged_out),
            self.relay.peer_available.connect(self._on_peer_available),
            self.engine.peer_connection_created.connect(self._on_peer_connection_created),
            self.engine.state_changed.connect(self._on_engine_state),
            self.engine.connection_established.connect(self._on_connection_established),
            self.engine.connection_lost.connect(self._on_connection_lost),
            self.engine.negotiation_error.connect(self._on_negotiation_error),
            self.channels.ready.connect(self._on_channels_ready),
            self.channels.ready_lost.connect(self._on_channels_lost),
        ]

    # ======================= LIFECYCLE ===================================

    def start(self) -> None:
        self.update_status(SessionStatus.CONNECTING)
        self.socket.connect(self.server_uri)

    async def run(self):
        try:
            logger.debug("TS: running")
            self.start()
            await self.should_exit.wait()
            logger.debug("TS: exit requested")
        except asyncio.CancelledError:
            logger.debug("TS: cancelled")
        except Exception:
            logger.critical("TS: unknown exception in session", exc_info=True)
        finally:
            await self.cleanup()

    async def cleanup(self):
        logger.debug("TS: cleaning up")
        release(self._subscriptions)
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()
        await self.poller.aclose()
        self.channels.close()
        await self.engine.close()
        self.relay.close()
        if self.auth.is_authenticated and self.socket.is_connected:
            await self.auth.logout()
        self.auth.close()
        await self.socket.aclose()
        self.update_status(SessionStatus.DISCONNECTED)
        logger.debug("TS: cleanup succeeded")

    def shutdown(self):
        self.should_exit.set()

    def update_status(self, status: SessionStatus):
        if status is self.status:
            return
        logger.info("TS: status %s -> %s", self.status.value, status.value)
        self.status = status
        self.status_changed.emit(status)

    def _spawn(self, coro: typing.Coroutine) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    # ======================= ACTIONS =====================================

    def connect_to(self, peer_id: str) -> None:
        if not self.auth.is_authenticated:
            logger.warning("TS: cannot connect to %s before login", peer_id)
            return
        self.engine.initiate_connection(peer_id)

    async def send_emergency_stop(self, reason: str, activate: bool = True) -> bool:
        if self.channels.send_emergency_stop(reason, activate):
            return True
        logger.warning("TS: emergency stop over signaling socket")
        command = models.EmergencyStopCommand(reason=reason, activate=activate)
        return await self.socket.send(SOCKET_EVENTS.EMERGENCY_STOP, models.encode_command(command).decode())

    # ======================= SOCKET ======================================

    def _on_socket_connected(self):
        self.update_status(SessionStatus.CONNECTED)
        if self.username and self.password:
            self._spawn(self.auth.login(self.username, self.password, self.device_id))
        else:
            logger.info("TS: no credentials configured, staying anonymous")

    def _on_socket_disconnected(self):
        if self.engine.state is NegotiationState.IDLE:
            self.update_status(SessionStatus.DISCONNECTED)

    def _on_socket_error(self, exc: Exception):
        self.last_error = exc if isinstance(exc, LinkError) else TransportError(str(exc))
        if not self.socket.is_connected:
            self.update_status(SessionStatus.ERROR)

    def _on_socket_message(self, event_name: str, data: str):
        match event_name:
            case SOCKET_EVENTS.HEARTBEAT:
                self._spawn(self.socket.send(SOCKET_EVENTS.PONG, {"timestamp": protocol.now_ms()}))
            case SOCKET_EVENTS.SERVER_SHUTDOWN:
                logger.warning("TS: server is shutting down: %s", data)
            case SOCKET_EVENTS.ERROR:
                try:
                    message = protocol.decode_error_message(data)
                except DecodeError:
                    message = data
                logger.error("TS: server error: %s", message)

    # ======================= AUTH ========================================

    def _on_login_succeeded(self, token: str | None, identity: str):
        self.engine.local_id = identity
        self.update_status(SessionStatus.AUTHENTICATED)
        if self.robot:
            self.engine.initiate_connection(self.robot)

    def _on_login_failed(self, reason: str):
        logger.error("TS: login failed: %s", reason)
        self.last_error = AuthError(reason)
        self.update_status(SessionStatus.ERROR)

    def _on_logged_out(self):
        self._cancel_retry()
        if self.socket.is_connected:
            self.update_status(SessionStatus.CONNECTED)

    # ======================= PEER ========================================

    def _on_peer_available(self, peer_id: str, role: str):
        if role != "robot" or not self.auto_connect:
            return
        if not self.auth.is_authenticated:
            logger.info("TS: robot %s announced before login, ignoring", peer_id)
            return
        if self.engine.state is not NegotiationState.IDLE:
            logger.info("TS: robot %s announced while %s, ignoring", peer_id, self.engine.state.value)
            return
        self.engine.initiate_connection(peer_id)

    def _on_peer_connection_created(self, pc, role: Role):
        self._offer_target = self.engine.target_peer if role is Role.OFFERER else None

    def _on_engine_state(self, state: NegotiationState):
        if state is NegotiationState.NEGOTIATING:
            self.update_status(SessionStatus.NEGOTIATING)
        elif state is NegotiationState.IDLE and not self.channels.is_ready:
            self._fallback_status()

    def _on_connection_established(self):
        self._cancel_retry()
        if not self.channels.is_ready:
            self.update_status(SessionStatus.PEER_CONNECTED)
        if not self.poller.is_running:
            self.poller.start(self.stats_interval)

    def _on_connection_lost(self):
        self._spawn(self.poller.stop())
        self._fallback_status()
        target = self._offer_target
        self._offer_target = None
        if target and not self.should_exit.is_set():
            logger.info("TS: reconnecting to %s in %.1f seconds", target, self.peer_retry_delay)
            self._cancel_retry()
            self._retry_task = self._spawn(self._retry_peer(target))

    def _on_negotiation_error(self, reason: str):
        logger.error("TS: negotiation failed: %s", reason)
        self.last_error = NegotiationError(reason)
        self.update_status(SessionStatus.ERROR)

    async def _retry_peer(self, peer_id: str):
        await asyncio.sleep(self.peer_retry_delay)
        if self.auth.is_authenticated and self.engine.state is NegotiationState.IDLE:
            self.engine.initiate_connection(peer_id)

    def _cancel_retry(self):
        task, self._retry_task = self._retry_task, None
        if task and not task.done() and task is not asyncio.current_task():
            task.cancel()

    def _fallback_status(self):
        if self.auth.is_authenticated:
            self.update_status(SessionStatus.AUTHENTICATED)
        elif self.socket.is_connected:
            self.update_status(SessionStatus.CONNECTED)
        else:
            self.update_status(SessionStatus.DISCONNECTED)

    # ======================= CHANNELS ====================================

    def _on_channels_ready(self):
        self.last_error = None
        self.update_status(SessionStatus.DATA_READY)

    def _on_channels_lost(self):
        if self.engine.is_connected:
            self.last_error = ChannelError("data channel closed")
            self.update_status(SessionStatus.PEER_CONNECTED)
        elif self.engine.state is NegotiationState.IDLE:
            self._fallback_status()
