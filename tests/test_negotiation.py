import asyncio

import pytest
from aiortc.sdp import candidate_from_sdp

from fakes import ANSWER_SDP, CANDIDATE, OFFER_SDP, FakePeerConnection, PeerFactory, wait_until
from vrdrive_link.negotiation import IceConfig, NegotiationState, PeerNegotiationEngine, Role


def engine_events(engine, recorder):
    for signal in (engine.connection_established, engine.connection_lost, engine.negotiation_error,
                   engine.negotiation_complete, engine.peer_connection_created, engine.peer_connection_disposed,
                   engine.track_received):
        recorder.listen(signal)
    return recorder


def local_candidate():
    candidate = candidate_from_sdp(CANDIDATE[len("candidate:"):])
    candidate.sdpMid = "0"
    candidate.sdpMLineIndex = 0
    return candidate


async def negotiate_as_offerer(engine, spy_socket, peer="robot-1"):
    engine.initiate_connection(peer)
    await engine.join()
    spy_socket.inject("webrtc:answer", {"sdp": ANSWER_SDP, "from": peer})
    await engine.join()


# ======================= ICE CONFIG ==========================================

def test_ice_config_defaults_when_empty():
    assert IceConfig().server_urls() == IceConfig(urls=("",)).server_urls()
    assert IceConfig().server_urls()[0].startswith("stun:")


def test_ice_config_relay_policy_keeps_turn_servers():
    config = IceConfig(urls=("stun:stun.test:3478", "turn:turn.test:3478"), transport_policy="relay")
    assert config.server_urls() == ["turn:turn.test:3478"]
    rtc = config.to_rtc_configuration()
    assert [server.urls for server in rtc.iceServers] == ["turn:turn.test:3478"]


def test_ice_config_relay_policy_without_turn_uses_everything():
    config = IceConfig(urls=("stun:stun.test:3478",), transport_policy="relay")
    assert config.server_urls() == ["stun:stun.test:3478"]


# ======================= OFFERER =============================================

@pytest.mark.asyncio
async def test_initiate_relays_exactly_one_offer(engine, spy_socket, peer_factory):
    engine.initiate_connection("robot-1")
    engine.initiate_connection("robot-1")
    await engine.join()

    assert engine.state is NegotiationState.NEGOTIATING
    assert engine.role is Role.OFFERER
    assert engine.target_peer == "robot-1"
    assert spy_socket.events("webrtc:offer") == [{"sdp": OFFER_SDP, "target": "robot-1"}]
    assert len(peer_factory.created) == 1
    pc = peer_factory.last
    assert pc.transceivers == [("video", "recvonly")]
    assert pc.localDescription.type == "offer"


@pytest.mark.asyncio
async def test_answer_completes_negotiation_once(engine, spy_socket, peer_factory, recorder):
    engine_events(engine, recorder)
    await negotiate_as_offerer(engine, spy_socket)

    assert engine.state is NegotiationState.CONNECTED
    assert peer_factory.last.set_remote_count == 1
    assert len(recorder.of("negotiation_complete")) == 1

    peer_factory.last.set_state("connected")
    await engine.join()
    assert len(recorder.of("connection_established")) == 1


@pytest.mark.asyncio
async def test_duplicate_answer_is_not_applied(engine, spy_socket, peer_factory):
    await negotiate_as_offerer(engine, spy_socket)
    spy_socket.inject("webrtc:answer", {"sdp": ANSWER_SDP, "from": "robot-1"})
    await engine.join()
    assert peer_factory.last.set_remote_count == 1


@pytest.mark.asyncio
async def test_answer_from_other_peer_is_ignored(engine, spy_socket, peer_factory):
    engine.initiate_connection("robot-1")
    await engine.join()
    spy_socket.inject("webrtc:answer", {"sdp": ANSWER_SDP, "from": "robot-2"})
    await engine.join()
    assert peer_factory.last.set_remote_count == 0
    assert engine.state is NegotiationState.NEGOTIATING


@pytest.mark.asyncio
async def test_answer_while_idle_is_rejected(engine, spy_socket, peer_factory):
    spy_socket.inject("webrtc:answer", {"sdp": ANSWER_SDP, "from": "robot-1"})
    await engine.join()
    assert engine.state is NegotiationState.IDLE
    assert peer_factory.created == []


@pytest.mark.asyncio
async def test_offer_creation_failure_disposes_connection(relay, spy_socket, recorder):
    factory = PeerFactory(fail_on={"createOffer"})
    engine = PeerNegotiationEngine(relay, peer_factory=factory)
    engine_events(engine, recorder)
    engine.initiate_connection("robot-1")
    await engine.join()

    assert engine.state is NegotiationState.IDLE
    assert engine.peer_connection is None
    assert factory.last.closed
    assert len(recorder.of("negotiation_error")) == 1
    assert recorder.of("peer_connection_disposed") == [(factory.last,)]
    assert spy_socket.events("webrtc:offer") == []
    await engine.close()


@pytest.mark.asyncio
async def test_unsent_offer_is_a_negotiation_error(engine, spy_socket, peer_factory, recorder):
    engine_events(engine, recorder)
    spy_socket.is_connected = False
    engine.initiate_connection("robot-1")
    await engine.join()

    assert engine.state is NegotiationState.IDLE
    assert peer_factory.last.closed
    assert recorder.of("negotiation_error") == [("Offer could not be relayed",)]

    spy_socket.is_connected = True
    engine.initiate_connection("robot-1")
    await engine.join()
    assert engine.state is NegotiationState.NEGOTIATING
    assert len(peer_factory.created) == 2


@pytest.mark.asyncio
async def test_dispose_mid_negotiation_ignores_late_result(relay, spy_socket, recorder):
    gate = asyncio.Event()
    created = []

    def factory():
        pc = FakePeerConnection()
        pc.gate = gate
        created.append(pc)
        return pc

    engine = PeerNegotiationEngine(relay, peer_factory=factory)
    engine_events(engine, recorder)
    engine.initiate_connection("robot-1")
    await wait_until(lambda: created)

    await engine.disconnect()
    gate.set()
    await engine.join()

    assert engine.state is NegotiationState.IDLE
    assert created[0].closed
    assert created[0].localDescription is None
    assert spy_socket.events("webrtc:offer") == []
    assert recorder.of("negotiation_error") == []
    await engine.close()


# ======================= ANSWERER ============================================

@pytest.mark.asyncio
async def test_inbound_offer_is_answered(engine, spy_socket, peer_factory, recorder):
    engine_events(engine, recorder)
    spy_socket.inject("webrtc:offer", {"sdp": OFFER_SDP, "from": "robot-1"})
    await engine.join()

    assert engine.role is Role.ANSWERER
    assert engine.target_peer == "robot-1"
    assert engine.state is NegotiationState.NEGOTIATING
    assert peer_factory.last.remoteDescription.type == "offer"
    assert spy_socket.events("webrtc:answer") == [{"sdp": ANSWER_SDP, "target": "robot-1"}]
    assert recorder.of("peer_connection_created") == [(peer_factory.last, Role.ANSWERER)]
    assert peer_factory.last.transceivers == []


@pytest.mark.asyncio
async def test_answer_while_answerer_is_never_applied(engine, spy_socket, peer_factory):
    spy_socket.inject("webrtc:offer", {"sdp": OFFER_SDP, "from": "robot-1"})
    await engine.join()
    spy_socket.inject("webrtc:answer", {"sdp": ANSWER_SDP, "from": "robot-1"})
    await engine.join()

    assert peer_factory.last.set_remote_count == 1
    assert engine.state is NegotiationState.NEGOTIATING
    assert engine.role is Role.ANSWERER


@pytest.mark.asyncio
async def test_offer_with_empty_sdp_never_reaches_engine(engine, spy_socket, peer_factory):
    spy_socket.inject("webrtc:offer", {"sdp": "", "from": "robot-1"})
    await engine.join()
    assert engine.state is NegotiationState.IDLE
    assert peer_factory.created == []


@pytest.mark.asyncio
async def test_answer_failure_resets(relay, spy_socket, recorder):
    factory = PeerFactory(fail_on={"setRemoteDescription"})
    engine = PeerNegotiationEngine(relay, peer_factory=factory)
    engine_events(engine, recorder)
    spy_socket.inject("webrtc:offer", {"sdp": OFFER_SDP, "from": "robot-1"})
    await engine.join()

    assert engine.state is NegotiationState.IDLE
    assert factory.last.closed
    assert len(recorder.of("negotiation_error")) == 1
    assert spy_socket.events("webrtc:answer") == []
    await engine.close()


@pytest.mark.asyncio
async def test_offer_from_other_peer_during_negotiation_is_ignored(engine, spy_socket, peer_factory):
    engine.initiate_connection("robot-1")
    await engine.join()
    spy_socket.inject("webrtc:offer", {"sdp": OFFER_SDP, "from": "robot-2"})
    await engine.join()
    assert engine.role is Role.OFFERER
    assert engine.target_peer == "robot-1"
    assert len(peer_factory.created) == 1


@pytest.mark.asyncio
async def test_offer_without_sender_is_ignored(engine, spy_socket, peer_factory):
    spy_socket.inject("webrtc:offer", {"sdp": OFFER_SDP})
    await engine.join()
    assert engine.state is NegotiationState.IDLE
    assert peer_factory.created == []
    assert spy_socket.events("webrtc:answer") == []


@pytest.mark.asyncio
async def test_offer_without_sender_does_not_abort_negotiation(engine, spy_socket, peer_factory):
    engine.initiate_connection("robot-1")
    await engine.join()
    spy_socket.inject("webrtc:offer", {"sdp": OFFER_SDP})
    await engine.join()

    assert engine.role is Role.OFFERER
    assert engine.target_peer == "robot-1"
    assert len(peer_factory.created) == 1
    assert not peer_factory.last.closed
    assert spy_socket.events("webrtc:answer") == []

    peer_factory.last.emit("icecandidate", local_candidate())
    await engine.join()
    assert [c["target"] for c in spy_socket.events("webrtc:ice-candidate")] == ["robot-1"]


# ======================= GLARE ===============================================

@pytest.mark.asyncio
async def test_glare_answers_by_default(engine, spy_socket, peer_factory):
    engine.initiate_connection("robot-1")
    await engine.join()
    spy_socket.inject("webrtc:offer", {"sdp": OFFER_SDP, "from": "robot-1"})
    await engine.join()

    assert engine.role is Role.ANSWERER
    assert peer_factory.created[0].closed
    assert len(spy_socket.events("webrtc:answer")) == 1


@pytest.mark.asyncio
@pytest.mark.parametrize("local_id, keeps_offer", [("a-headset", True), ("z-headset", False)])
async def test_glare_compare_policy(relay, spy_socket, local_id, keeps_offer):
    factory = PeerFactory()
    engine = PeerNegotiationEngine(relay, peer_factory=factory, glare_policy="compare")
    engine.local_id = local_id
    engine.initiate_connection("robot-1")
    await engine.join()
    spy_socket.inject("webrtc:offer", {"sdp": OFFER_SDP, "from": "robot-1"})
    await engine.join()

    if keeps_offer:
        assert engine.role is Role.OFFERER
        assert spy_socket.events("webrtc:answer") == []
        assert len(factory.created) == 1
    else:
        assert engine.role is Role.ANSWERER
        assert len(spy_socket.events("webrtc:answer")) == 1
    await engine.close()


# ======================= ICE =================================================

@pytest.mark.asyncio
async def test_local_candidate_is_relayed_to_target(engine, spy_socket, peer_factory):
    engine.initiate_connection("robot-1")
    await engine.join()
    peer_factory.last.emit("icecandidate", local_candidate())
    await engine.join()

    (sent,) = spy_socket.events("webrtc:ice-candidate")
    assert sent["candidate"].startswith("candidate:")
    assert "192.0.2.1" in sent["candidate"]
    assert sent["sdpMid"] == "0"
    assert sent["sdpMLineIndex"] == 0
    assert sent["target"] == "robot-1"


@pytest.mark.asyncio
async def test_remote_candidate_without_connection_is_dropped(engine, spy_socket, peer_factory):
    spy_socket.inject("webrtc:ice-candidate", {"candidate": CANDIDATE, "sdpMid": "0", "sdpMLineIndex": 0,
                                                "from": "robot-1"})
    await engine.join()
    engine.initiate_connection("robot-1")
    await engine.join()
    spy_socket.inject("webrtc:answer", {"sdp": ANSWER_SDP, "from": "robot-1"})
    await engine.join()
    assert peer_factory.last.candidates == []


@pytest.mark.asyncio
async def test_early_remote_candidate_is_buffered_until_answer(engine, spy_socket, peer_factory):
    engine.initiate_connection("robot-1")
    await engine.join()
    spy_socket.inject("webrtc:ice-candidate", {"candidate": CANDIDATE, "sdpMid": "0", "sdpMLineIndex": 0,
                                                "from": "robot-1"})
    await engine.join()
    assert peer_factory.last.candidates == []

    spy_socket.inject("webrtc:answer", {"sdp": ANSWER_SDP, "from": "robot-1"})
    await engine.join()
    (candidate,) = peer_factory.last.candidates
    assert candidate.ip == "192.0.2.1"
    assert candidate.sdpMid == "0"


@pytest.mark.asyncio
async def test_remote_candidate_after_answer_is_applied(engine, spy_socket, peer_factory):
    await negotiate_as_offerer(engine, spy_socket)
    spy_socket.inject("webrtc:ice-candidate", {"candidate": CANDIDATE[len("candidate:"):], "sdpMid": "0",
                                                "sdpMLineIndex": 0, "from": "robot-1"})
    await engine.join()
    assert len(peer_factory.last.candidates) == 1


@pytest.mark.asyncio
async def test_unparseable_remote_candidate_is_dropped(engine, spy_socket, peer_factory, recorder):
    engine_events(engine, recorder)
    await negotiate_as_offerer(engine, spy_socket)
    spy_socket.inject("webrtc:ice-candidate", {"candidate": "candidate:garbage", "from": "robot-1"})
    await engine.join()
    assert peer_factory.last.candidates == []
    assert recorder.of("negotiation_error") == []
    assert engine.state is NegotiationState.CONNECTED


@pytest.mark.asyncio
async def test_failed_candidate_application_aborts(relay, spy_socket, recorder):
    factory = PeerFactory(fail_on={"addIceCandidate"})
    engine = PeerNegotiationEngine(relay, peer_factory=factory)
    engine_events(engine, recorder)
    await negotiate_as_offerer(engine, spy_socket)
    spy_socket.inject("webrtc:ice-candidate", {"candidate": CANDIDATE, "sdpMid": "0", "sdpMLineIndex": 0,
                                                "from": "robot-1"})
    await engine.join()
    assert len(recorder.of("negotiation_error")) == 1
    assert engine.state is NegotiationState.IDLE
    await engine.close()


# ======================= TRANSPORT STATE =====================================

@pytest.mark.asyncio
async def test_connection_loss_returns_to_idle(engine, spy_socket, peer_factory, recorder):
    engine_events(engine, recorder)
    await negotiate_as_offerer(engine, spy_socket)
    pc = peer_factory.last
    pc.set_state("failed")
    await engine.join()

    assert engine.state is NegotiationState.IDLE
    assert engine.peer_connection is None
    assert pc.closed
    assert len(recorder.of("connection_lost")) == 1

    engine.initiate_connection("robot-1")
    await engine.join()
    assert len(peer_factory.created) == 2
    assert engine.state is NegotiationState.NEGOTIATING


@pytest.mark.asyncio
async def test_transport_connected_establishes_answerer(engine, spy_socket, peer_factory, recorder):
    engine_events(engine, recorder)
    spy_socket.inject("webrtc:offer", {"sdp": OFFER_SDP, "from": "robot-1"})
    await engine.join()
    peer_factory.last.set_state("connecting")
    peer_factory.last.set_state("connected")
    peer_factory.last.set_state("connected")
    await engine.join()
    assert engine.state is NegotiationState.CONNECTED
    assert len(recorder.of("connection_established")) == 1


@pytest.mark.asyncio
async def test_state_change_of_disposed_connection_is_ignored(engine, spy_socket, peer_factory, recorder):
    engine_events(engine, recorder)
    await negotiate_as_offerer(engine, spy_socket)
    old = peer_factory.last
    await engine.disconnect()
    old.set_state("failed")
    await engine.join()
    assert recorder.of("connection_lost") == []


@pytest.mark.asyncio
async def test_tracks_are_forwarded(engine, spy_socket, peer_factory, recorder):
    engine_events(engine, recorder)
    engine.initiate_connection("robot-1")
    await engine.join()
    track = object()
    peer_factory.last.emit("track", track)
    assert recorder.of("track_received") == [(track,)]


@pytest.mark.asyncio
async def test_closed_engine_ignores_requests(engine, spy_socket, peer_factory):
    await engine.close()
    engine.initiate_connection("robot-1")
    spy_socket.inject("webrtc:offer", {"sdp": OFFER_SDP, "from": "robot-1"})
    await engine.join()
    assert engine.state is NegotiationState.CLOSED
    assert peer_factory.created == []
