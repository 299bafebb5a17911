from __future__ import annotations

import dataclasses
import time
import typing

import orjson

from .errors import DecodeError


class SOCKET_EVENTS:
    AUTH_LOGIN = "auth:login"
    AUTH_SUCCESS = "auth:success"
    AUTH_ERROR = "auth:error"

    WEBRTC_OFFER = "webrtc:offer"
    WEBRTC_ANSWER = "webrtc:answer"
    WEBRTC_ICE_CANDIDATE = "webrtc:ice-candidate"

    ROBOT_CONNECTED = "robot:connected"
    FRONTEND_CONNECTED = "frontend:connected"
    SERVER_SHUTDOWN = "server:shutdown"

    # fallback path when the command channel is down
    EMERGENCY_STOP = "emergency:stop"

    ERROR = "error"
    HEARTBEAT = "heartbeat"
    PONG = "pong"
    DISCONNECT = "disconnect"

SIGNALING_EVENTS = frozenset({
    SOCKET_EVENTS.WEBRTC_OFFER,
    SOCKET_EVENTS.WEBRTC_ANSWER,
    SOCKET_EVENTS.WEBRTC_ICE_CANDIDATE,
    SOCKET_EVENTS.ROBOT_CONNECTED,
    SOCKET_EVENTS.FRONTEND_CONNECTED,
})

def now_ms() -> int:
    return int(time.time() * 1000)

# ======================= ENVELOPE =====================================================

def make_envelope(event_name: str, payload: dict[str, typing.Any] | str | None = None,
                  timestamp: int | None = None) -> bytes:
    if payload is None:
        data = "{}"
    elif isinstance(payload, str):
        data = payload
    else:
        data = orjson.dumps(payload).decode()
    return orjson.dumps({
        "eventName": event_name,
        "data": data,
        "timestamp": now_ms() if timestamp is None else timestamp,
    })

def _data_text(data) -> str:
    if data is None:
        return "{}"
    if isinstance(data, str):
        return data
    return orjson.dumps(data).decode()

def parse_envelope(raw: str | bytes) -> tuple[str, str]:
    '''returns (event name, payload text); server shape {event, data} first, then {eventName, data}'''
    try:
        js = orjson.loads(raw)
    except orjson.JSONDecodeError as e:
        raise DecodeError(f"envelope is not JSON: {e}") from e
    if not isinstance(js, dict):
        raise DecodeError("envelope is not an object")
    for key in ("event", "eventName"):
        name = js.get(key)
        if isinstance(name, str) and name:
            return name, _data_text(js.get("data"))
    raise DecodeError("envelope carries neither 'event' nor 'eventName'")

def load_object(data: str | bytes) -> dict[str, typing.Any]:
    if not data:
        raise DecodeError("empty payload")
    try:
        js = orjson.loads(data)
    except orjson.JSONDecodeError as e:
        raise DecodeError(f"payload is not JSON: {e}") from e
    if not isinstance(js, dict):
        raise DecodeError("payload is not an object")
    return js

def _optional_str(js: dict, key: str) -> str | None:
    value = js.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise DecodeError(f"'{key}' must be a string")
    return value or None

def _drop_none(d: dict[str, typing.Any]) -> dict[str, typing.Any]:
    return {k: v for k, v in d.items() if v is not None}

# ======================= AUTH =========================================================

@dataclasses.dataclass
class LoginRequest:
    username: str
    password: str
    deviceId: str

    def to_wire(self) -> dict[str, typing.Any]:
        return dataclasses.asdict(self)

@dataclasses.dataclass
class UserData:
    username: str | None = None
    role: str | None = None
    permissions: tuple[str, ...] = ()

@dataclasses.dataclass
class LoginResponse:
    success: bool
    token: str | None = None
    user_id: str | None = None
    message: str | None = None
    user: UserData | None = None

def decode_login_response(data: str | bytes) -> LoginResponse:
    js = load_object(data)
    # two schema variants are in the wild: "success" and "status"
    flag = js.get("success", js.get("status"))
    user = None
    user_js = js.get("userData")
    if isinstance(user_js, dict):
        permissions = user_js.get("permissions") or []
        if not isinstance(permissions, list):
            raise DecodeError("'userData.permissions' must be a list")
        user = UserData(
            username=_optional_str(user_js, "username"),
            role=_optional_str(user_js, "role"),
            permissions=tuple(p for p in permissions if isinstance(p, str)),
        )
    elif user_js is not None:
        raise DecodeError("'userData' must be an object")
    return LoginResponse(
        success=bool(flag),
        token=_optional_str(js, "token"),
        user_id=_optional_str(js, "userId"),
        message=_optional_str(js, "message"),
        user=user,
    )

def decode_error_message(data: str | bytes) -> str | None:
    return _optional_str(load_object(data), "message")

# ======================= SIGNALING ====================================================

@dataclasses.dataclass
class SessionDescriptionMessage:
    sdp: str
    target: str | None = None
    sender: str | None = None

    def to_wire(self) -> dict[str, typing.Any]:
        return _drop_none({"sdp": self.sdp, "target": self.target, "from": self.sender})

@dataclasses.dataclass
class IceCandidateMessage:
    candidate: str
    sdpMid: str | None = None
    sdpMLineIndex: int | None = None
    target: str | None = None
    sender: str | None = None

    def to_wire(self) -> dict[str, typing.Any]:
        return _drop_none({
            "candidate": self.candidate,
            "sdpMid": self.sdpMid,
            "sdpMLineIndex": self.sdpMLineIndex,
            "target": self.target,
            "from": self.sender,
        })

@dataclasses.dataclass
class PeerNotification:
    username: str
    role: str | None = None
    timestamp: int | None = None

def decode_session_description(data: str | bytes) -> SessionDescriptionMessage:
    js = load_object(data)
    sdp = _optional_str(js, "sdp")
    if not sdp:
        raise DecodeError("SDP is empty")
    return SessionDescriptionMessage(sdp=sdp, target=_optional_str(js, "target"),
                                     sender=_optional_str(js, "from"))

def decode_ice_candidate(data: str | bytes) -> IceCandidateMessage:
    js = load_object(data)
    candidate = _optional_str(js, "candidate")
    if not candidate:
        raise DecodeError("candidate is empty")
    line_index = js.get("sdpMLineIndex")
    if line_index is not None and (isinstance(line_index, bool) or not isinstance(line_index, int)):
        raise DecodeError("'sdpMLineIndex' must be an integer")
    return IceCandidateMessage(
        candidate=candidate,
        sdpMid=_optional_str(js, "sdpMid"),
        sdpMLineIndex=line_index,
        target=_optional_str(js, "target"),
        sender=_optional_str(js, "from"),
    )

def decode_peer_notification(data: str | bytes) -> PeerNotification:
    js = load_object(data)
    username = _optional_str(js, "username")
    if not username:
        raise DecodeError("notification without username")
    timestamp = js.get("timestamp")
    if not isinstance(timestamp, int) or isinstance(timestamp, bool):
        timestamp = None
    return PeerNotification(username=username, role=_optional_str(js, "role"), timestamp=timestamp)
