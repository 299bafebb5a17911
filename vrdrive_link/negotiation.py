from __future__ import annotations

import asyncio
import dataclasses
import enum
import functools
import logging
import typing

from aiortc import RTCConfiguration, RTCIceServer, RTCPeerConnection, RTCSessionDescription
from aiortc.sdp import candidate_from_sdp, candidate_to_sdp

from . import config
from .events import Signal, release
from .protocol import IceCandidateMessage, SessionDescriptionMessage
from .signaling import SignalingRelay

logger = logging.getLogger(__name__)

PeerFactory = typing.Callable[[], typing.Any]


@dataclasses.dataclass
class IceConfig:
    urls: tuple[str, ...] = ()
    transport_policy: typing.Literal["all", "relay"] = config.ICE_TRANSPORT_POLICY

    def server_urls(self) -> list[str]:
        urls = [u for u in self.urls if u] or list(config.ICE_SERVERS_URLS)
        if self.transport_policy == "relay":
            relays = [u for u in urls if u.startswith(("turn:", "turns:"))]
            if relays:
                return relays
            logger.warning("PEER: relay-only ICE policy without TURN servers, using all servers")
        return urls

    def to_rtc_configuration(self) -> RTCConfiguration:
        return RTCConfiguration(iceServers=[RTCIceServer(urls=url) for url in self.server_urls()])


class NegotiationState(enum.Enum):
    IDLE = "idle"
    NEGOTIATING = "negotiating"
    CONNECTED = "connected"
    CLOSED = "closed"

class Role(enum.Enum):
    OFFERER = "offerer"
    ANSWERER = "answerer"


class PeerNegotiationEngine:
    """Drives one peer connection through offer/answer and ICE exchange.

    Every input (API call, relayed message, peer-connection callback) is
    queued as a job and jobs run one at a time on the event loop, so an
    answer can never interleave with a fresh InitiateConnection. A job that
    resumes after its peer connection was disposed sees ``pc is not
    self._pc`` and stops without touching state.
    """
    def __init__(self, relay: SignalingRelay, *, ice_config: IceConfig | None = None,
                 peer_factory: PeerFactory | None = None,
                 glare_policy: typing.Literal["answer", "compare"] = config.GLARE_POLICY):
        self.state_changed = Signal("state_changed")
        self.peer_connection_created = Signal("peer_connection_created")
        self.peer_connection_disposed = Signal("peer_connection_disposed")
        self.negotiation_complete = Signal("negotiation_complete")
        self.negotiation_error = Signal("negotiation_error")
        self.connection_established = Signal("connection_established")
        self.connection_lost = Signal("connection_lost")
        self.track_received = Signal("track_received")

        self.ice_config = ice_config or IceConfig()
        self.glare_policy = glare_policy
        self.local_id: str | None = None

        self._relay = relay
        self._peer_factory = peer_factory or self._create_rtc_peer_connection
        self._jobs: asyncio.Queue[typing.Callable[[], typing.Awaitable[None]]] = asyncio.Queue()
        self._worker: asyncio.Task | None = None

        self._state = NegotiationState.IDLE
        self._role: Role | None = None
        self._target: str | None = None
        self._pc = None
        self._remote_set = False
        self._established = False
        self._pending_candidates: list[typing.Any] = []

        self._subscriptions = [
            relay.offer_received.connect(self._on_offer),
            relay.answer_received.connect(self._on_answer),
            relay.ice_candidate_received.connect(self._on_remote_candidate),
        ]

    @property
    def state(self) -> NegotiationState:
        return self._state

    @property
    def role(self) -> Role | None:
        return self._role

    @property
    def target_peer(self) -> str | None:
        return self._target

    @property
    def peer_connection(self):
        return self._pc

    @property
    def is_connected(self) -> bool:
        return self._state is NegotiationState.CONNECTED

    # ======================= PUBLIC API ==================================

    def initiate_connection(self, peer_id: str) -> None:
        self._post(functools.partial(self._initiate, peer_id))

    async def join(self) -> None:
        '''wait until every queued job has run'''
        await self._jobs.join()

    async def disconnect(self) -> None:
        '''close the current peer connection (safe mid-negotiation) and return to idle'''
        pc = self._pc
        if pc is None:
            return
        logger.info("PEER: closing connection to %s", self._target)
        self._reset()
        await self._close_pc(pc)

    async def close(self) -> None:
        release(self._subscriptions)
        await self.disconnect()
        self._set_state(NegotiationState.CLOSED)
        if self._worker:
            self._worker.cancel()
            self._worker = None

    # ======================= QUEUE =======================================

    def _post(self, job: typing.Callable[[], typing.Awaitable[None]]):
        if self._state is NegotiationState.CLOSED:
            logger.debug("PEER: engine closed, dropping job")
            return
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(self._run())
        self._jobs.put_nowait(job)

    async def _run(self) -> typing.NoReturn:
        while True:
            job = await self._jobs.get()
            try:
                await job()
            except Exception:
                logger.error("PEER: unhandled error in negotiation job", exc_info=True)
            finally:
                self._jobs.task_done()

    def _on_offer(self, offer: SessionDescriptionMessage):
        self._post(functools.partial(self._handle_offer, offer))

    def _on_answer(self, answer: SessionDescriptionMessage):
        self._post(functools.partial(self._handle_answer, answer))

    def _on_remote_candidate(self, candidate: IceCandidateMessage):
        self._post(functools.partial(self._handle_remote_candidate, candidate))

    # ======================= PEER CONNECTION =============================

    def _create_rtc_peer_connection(self):
        return RTCPeerConnection(configuration=self.ice_config.to_rtc_configuration())

    def _new_peer_connection(self):
        pc = self._peer_factory()
        pc.on("connectionstatechange", functools.partial(self._on_pc_state_change, pc))
        pc.on("icecandidate", functools.partial(self._on_local_candidate, pc))
        pc.on("track", functools.partial(self._on_track, pc))
        self._pc = pc
        self._remote_set = False
        self._established = False
        self._pending_candidates.clear()
        logger.debug("PEER: peer connection created (%s)", self._role.value if self._role else None)
        return pc

    def _is_stale(self, pc) -> bool:
        if pc is not self._pc:
            logger.debug("PEER: ignoring result for a disposed peer connection")
            return True
        return False

    def _reset(self):
        pc = self._pc
        self._pc = None
        self._role = None
        self._target = None
        self._remote_set = False
        self._established = False
        self._pending_candidates.clear()
        if self._state is not NegotiationState.CLOSED:
            self._set_state(NegotiationState.IDLE)
        if pc is not None:
            self.peer_connection_disposed.emit(pc)

    async def _close_pc(self, pc):
        try:
            await pc.close()
        except Exception:
            logger.warning("PEER: error while closing peer connection", exc_info=True)

    async def _fail(self, pc, reason: str):
        logger.error("PEER: negotiation with %s failed: %s", self._target, reason)
        if pc is self._pc:
            self._reset()
        await self._close_pc(pc)
        self.negotiation_error.emit(reason)

    def _set_state(self, state: NegotiationState):
        if state is self._state:
            return
        logger.debug("PEER: %s -> %s", self._state.value, state.value)
        self._state = state
        self.state_changed.emit(state)

    def _mark_connected(self):
        if self._established:
            return
        self._established = True
        self._set_state(NegotiationState.CONNECTED)
        logger.info("PEER: connected to %s", self._target)
        self.connection_established.emit()

    # ======================= JOBS ========================================

    async def _initiate(self, peer_id: str):
        if self._state is not NegotiationState.IDLE:
            logger.warning("PEER: initiate to %s ignored, engine is %s", peer_id, self._state.value)
            return
        logger.info("PEER: initiating connection to %s", peer_id)
        self._role = Role.OFFERER
        self._target = peer_id
        self._set_state(NegotiationState.NEGOTIATING)
        pc = None
        try:
            pc = self._new_peer_connection()
            pc.addTransceiver("video", direction="recvonly")
            # data channels must exist before the offer so SCTP lands in the SDP
            self.peer_connection_created.emit(pc, Role.OFFERER)
            offer = await pc.createOffer()
            if self._is_stale(pc):
                return
            await pc.setLocalDescription(offer)
            if self._is_stale(pc):
                return
        except Exception as e:
            if pc is None:
                self._reset()
                self.negotiation_error.emit(f"Failed to create peer connection: {e}")
                return
            if not self._is_stale(pc):
                await self._fail(pc, f"Failed to create offer: {e}")
            return
        if not await self._relay.send_offer(pc.localDescription.sdp, peer_id):
            if not self._is_stale(pc):
                await self._fail(pc, "Offer could not be relayed")

    async def _handle_offer(self, offer: SessionDescriptionMessage):
        if self._state is NegotiationState.CLOSED:
            return
        if offer.sender is None:
            logger.warning("PEER: offer without sender ignored")
            return
        if (self._state is not NegotiationState.IDLE and self._target is not None
                and offer.sender != self._target):
            logger.warning("PEER: offer from %s ignored, negotiating with %s", offer.sender, self._target)
            return
        if self._state is NegotiationState.NEGOTIATING and self._role is Role.OFFERER:
            if (self.glare_policy == "compare" and self.local_id and offer.sender
                    and self.local_id < offer.sender):
                logger.warning("PEER: glare with %s, keeping our offer", offer.sender)
                return
            logger.warning("PEER: glare with %s, answering their offer", offer.sender)
        if self._pc is not None:
            old = self._pc
            self._reset()
            await self._close_pc(old)

        self._role = Role.ANSWERER
        self._target = offer.sender
        self._set_state(NegotiationState.NEGOTIATING)
        logger.info("PEER: answering offer from %s", offer.sender)
        pc = None
        try:
            pc = self._new_peer_connection()
            self.peer_connection_created.emit(pc, Role.ANSWERER)
            await pc.setRemoteDescription(RTCSessionDescription(sdp=offer.sdp, type="offer"))
            if self._is_stale(pc):
                return
            self._remote_set = True
            await self._flush_candidates(pc)
            if self._is_stale(pc):
                return
            answer = await pc.createAnswer()
            if self._is_stale(pc):
                return
            await pc.setLocalDescription(answer)
            if self._is_stale(pc):
                return
        except Exception as e:
            if pc is None:
                self._reset()
                self.negotiation_error.emit(f"Failed to create peer connection: {e}")
                return
            if not self._is_stale(pc):
                await self._fail(pc, f"Failed to answer offer: {e}")
            return
        if not await self._relay.send_answer(pc.localDescription.sdp, self._target):
            if not self._is_stale(pc):
                await self._fail(pc, "Answer could not be relayed")

    async def _handle_answer(self, answer: SessionDescriptionMessage):
        if self._role is not Role.OFFERER or self._state is not NegotiationState.NEGOTIATING:
            logger.warning("PEER: answer from %s rejected, we are not the offerer (%s, %s)",
                           answer.sender, self._role.value if self._role else None, self._state.value)
            return
        if answer.sender is not None and self._target is not None and answer.sender != self._target:
            logger.warning("PEER: answer from %s ignored, negotiating with %s", answer.sender, self._target)
            return
        if self._remote_set:
            logger.warning("PEER: duplicate answer from %s ignored", answer.sender)
            return
        pc = self._pc
        try:
            await pc.setRemoteDescription(RTCSessionDescription(sdp=answer.sdp, type="answer"))
        except Exception as e:
            if not self._is_stale(pc):
                await self._fail(pc, f"Failed to apply answer: {e}")
            return
        if self._is_stale(pc):
            return
        self._remote_set = True
        logger.info("PEER: negotiation complete with %s", self._target)
        self.negotiation_complete.emit()
        self._mark_connected()
        await self._flush_candidates(pc)

    async def _handle_remote_candidate(self, message: IceCandidateMessage):
        pc = self._pc
        if pc is None:
            logger.warning("PEER: ICE candidate from %s dropped, no peer connection", message.sender)
            return
        if message.sender is not None and self._target is not None and message.sender != self._target:
            logger.warning("PEER: ICE candidate from %s ignored, negotiating with %s", message.sender, self._target)
            return
        try:
            candidate = parse_candidate(message)
        except ValueError as e:
            logger.warning("PEER: invalid ICE candidate dropped: %s", e)
            return
        if not self._remote_set:
            logger.debug("PEER: buffering ICE candidate until remote description is set")
            self._pending_candidates.append(candidate)
            return
        await self._add_candidate(pc, candidate)

    async def _flush_candidates(self, pc):
        pending, self._pending_candidates = self._pending_candidates, []
        if pending:
            logger.debug("PEER: applying %d buffered ICE candidates", len(pending))
        for candidate in pending:
            if self._is_stale(pc):
                return
            await self._add_candidate(pc, candidate)

    async def _add_candidate(self, pc, candidate):
        try:
            await pc.addIceCandidate(candidate)
        except Exception as e:
            if not self._is_stale(pc):
                await self._fail(pc, f"Failed to add ICE candidate: {e}")

    # ======================= PEER CONNECTION CALLBACKS ===================

    def _on_local_candidate(self, pc, candidate):
        self._post(functools.partial(self._send_local_candidate, pc, candidate))

    async def _send_local_candidate(self, pc, candidate):
        if candidate is None or self._is_stale(pc):
            return
        if not self._target:
            logger.warning("PEER: cannot send ICE candidate, no target peer")
            return
        await self._relay.send_ice_candidate("candidate:" + candidate_to_sdp(candidate),
                                             candidate.sdpMid, candidate.sdpMLineIndex or 0, self._target)

    def _on_pc_state_change(self, pc):
        self._post(functools.partial(self._handle_pc_state, pc))

    async def _handle_pc_state(self, pc):
        if self._is_stale(pc):
            return
        state = pc.connectionState
        logger.debug("PEER: transport state %s", state)
        match state:
            case "connected":
                self._mark_connected()
            case "disconnected" | "failed" | "closed":
                logger.warning("PEER: connection to %s lost (%s)", self._target, state)
                self._reset()
                self.connection_lost.emit()
                await self._close_pc(pc)

    def _on_track(self, pc, track):
        if pc is not self._pc:
            return
        logger.info("PEER: %s track received", getattr(track, "kind", "unknown"))
        self.track_received.emit(track)


def parse_candidate(message: IceCandidateMessage):
    text = message.candidate
    if text.startswith("candidate:"):
        text = text[len("candidate:"):]
    try:
        candidate = candidate_from_sdp(text)
    except (IndexError, ValueError) as e:
        raise ValueError(f"cannot parse {message.candidate!r}") from e
    candidate.sdpMid = message.sdpMid
    candidate.sdpMLineIndex = message.sdpMLineIndex
    return candidate
