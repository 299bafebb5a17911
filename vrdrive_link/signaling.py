from __future__ import annotations

import logging

from . import protocol
from .errors import DecodeError
from .events import Signal, release
from .protocol import SOCKET_EVENTS
from .transport import SignalingSocket

logger = logging.getLogger(__name__)


class SignalingRelay:
    """Stateless codec between negotiation primitives and socket events.

    Inbound payloads that fail to decode, or carry no SDP/candidate, are
    logged and dropped; they never reach ``offer_received``,
    ``answer_received`` or ``ice_candidate_received``.
    """
    def __init__(self, socket: SignalingSocket):
        self.offer_received = Signal("offer_received")
        self.answer_received = Signal("answer_received")
        self.ice_candidate_received = Signal("ice_candidate_received")
        self.peer_available = Signal("peer_available")

        self._socket = socket
        self._subscriptions = [socket.message.connect(self._on_message)]

    def close(self):
        release(self._subscriptions)

    # ======================= SEND ========================================

    async def send_offer(self, sdp: str, target: str | None) -> bool:
        message = protocol.SessionDescriptionMessage(sdp=sdp, target=target)
        sent = await self._socket.send(SOCKET_EVENTS.WEBRTC_OFFER, message.to_wire())
        logger.info("SIG: offer %s to %s", "sent" if sent else "NOT sent", target or "broadcast")
        return sent

    async def send_answer(self, sdp: str, target: str | None) -> bool:
        message = protocol.SessionDescriptionMessage(sdp=sdp, target=target)
        sent = await self._socket.send(SOCKET_EVENTS.WEBRTC_ANSWER, message.to_wire())
        logger.info("SIG: answer %s to %s", "sent" if sent else "NOT sent", target or "broadcast")
        return sent

    async def send_ice_candidate(self, candidate: str, sdp_mid: str | None, sdp_mline_index: int | None,
                                 target: str | None) -> bool:
        message = protocol.IceCandidateMessage(candidate=candidate, sdpMid=sdp_mid,
                                               sdpMLineIndex=sdp_mline_index, target=target)
        sent = await self._socket.send(SOCKET_EVENTS.WEBRTC_ICE_CANDIDATE, message.to_wire())
        logger.debug("SIG: ICE candidate %s to %s", "sent" if sent else "NOT sent", target or "broadcast")
        return sent

    # ======================= RECEIVE =====================================

    def _on_message(self, event_name: str, data: str):
        if event_name not in protocol.SIGNALING_EVENTS:
            return
        if not data or not data.strip():
            logger.warning("SIG: empty payload for event %s", event_name)
            return
        try:
            match event_name:
                case SOCKET_EVENTS.WEBRTC_OFFER:
                    offer = protocol.decode_session_description(data)
                    logger.info("SIG: offer received from %s (%d bytes SDP)", offer.sender, len(offer.sdp))
                    self.offer_received.emit(offer)
                case SOCKET_EVENTS.WEBRTC_ANSWER:
                    answer = protocol.decode_session_description(data)
                    logger.info("SIG: answer received from %s (%d bytes SDP)", answer.sender, len(answer.sdp))
                    self.answer_received.emit(answer)
                case SOCKET_EVENTS.WEBRTC_ICE_CANDIDATE:
                    candidate = protocol.decode_ice_candidate(data)
                    logger.debug("SIG: ICE candidate received from %s", candidate.sender)
                    self.ice_candidate_received.emit(candidate)
                case SOCKET_EVENTS.ROBOT_CONNECTED | SOCKET_EVENTS.FRONTEND_CONNECTED:
                    notification = protocol.decode_peer_notification(data)
                    role = notification.role or event_name.split(":", 1)[0]
                    logger.info("SIG: %s available: %s", role, notification.username)
                    self.peer_available.emit(notification.username, role)
        except DecodeError as e:
            logger.warning("SIG: invalid %s payload: %s", event_name, e)
            logger.debug("SIG: raw data: %s", data)
