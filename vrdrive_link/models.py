"""Telemetry samples and vehicle commands carried over the data channels.

Wire names are camelCase, attribute names snake_case; the mapping lives in
each field's ``wire`` metadata. Telemetry fields missing from a payload
decode to ``None`` rather than zero so a partial sample is never mistaken
for a real reading.
"""
from __future__ import annotations

import dataclasses
import typing

import orjson

from .errors import DecodeError
from .protocol import now_ms


def _wire(name: str, kind: str, default=None):
    return dataclasses.field(default=default, metadata={"wire": name, "kind": kind})

def _decode_value(path: str, kind: str, value):
    if value is None:
        return None
    match kind:
        case "number":
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise DecodeError(f"{path}: expected number, got {type(value).__name__}")
            return float(value)
        case "integer":
            if isinstance(value, bool) or not isinstance(value, int):
                raise DecodeError(f"{path}: expected integer, got {type(value).__name__}")
            return value
        case "text":
            if not isinstance(value, str):
                raise DecodeError(f"{path}: expected string, got {type(value).__name__}")
            return value
        case "vector":
            if not isinstance(value, list) or len(value) != 3:
                raise DecodeError(f"{path}: expected [x, y, z]")
            return tuple(_decode_value(path, "number", v) for v in value)
    raise DecodeError(f"{path}: unknown field kind {kind}")

def _decode_section(cls, path: str, js):
    if js is None:
        return None
    if not isinstance(js, dict):
        raise DecodeError(f"{path}: expected object")
    values = {}
    for f in dataclasses.fields(cls):
        wire = f.metadata["wire"]
        values[f.name] = _decode_value(f"{path}.{wire}", f.metadata["kind"], js.get(wire))
    return cls(**values)

def _encode_section(section) -> dict[str, typing.Any] | None:
    if section is None:
        return None
    out = {}
    for f in dataclasses.fields(section):
        value = getattr(section, f.name)
        if value is None:
            continue
        out[f.metadata["wire"]] = list(value) if isinstance(value, tuple) else value
    return out

# ======================= TELEMETRY ====================================================

@dataclasses.dataclass(frozen=True)
class BatteryData:
    voltage: float | None = _wire("voltage", "number")
    current: float | None = _wire("current", "number")
    percentage: float | None = _wire("percentage", "number")
    temperature: float | None = _wire("temperature", "number")
    status: str | None = _wire("status", "text")

@dataclasses.dataclass(frozen=True)
class GPSData:
    latitude: float | None = _wire("latitude", "number")
    longitude: float | None = _wire("longitude", "number")
    altitude: float | None = _wire("altitude", "number")
    speed: float | None = _wire("speed", "number")
    heading: float | None = _wire("heading", "number")
    satellites: int | None = _wire("satellites", "integer")
    accuracy: float | None = _wire("accuracy", "number")

@dataclasses.dataclass(frozen=True)
class SensorData:
    accelerometer: tuple[float, float, float] | None = _wire("accelerometer", "vector")
    gyroscope: tuple[float, float, float] | None = _wire("gyroscope", "vector")
    magnetometer: tuple[float, float, float] | None = _wire("magnetometer", "vector")
    temperature: float | None = _wire("temperature", "number")
    humidity: float | None = _wire("humidity", "number")

@dataclasses.dataclass(frozen=True)
class SystemData:
    cpu_usage: float | None = _wire("cpuUsage", "number")
    memory_usage: float | None = _wire("memoryUsage", "number")
    cpu_temperature: float | None = _wire("cpuTemperature", "number")
    signal_strength: int | None = _wire("signalStrength", "integer")
    network_type: str | None = _wire("networkType", "text")

@dataclasses.dataclass(frozen=True)
class TelemetrySample:
    timestamp: int
    battery: BatteryData | None = None
    gps: GPSData | None = None
    sensors: SensorData | None = None
    system: SystemData | None = None

_SECTIONS = (("battery", BatteryData), ("gps", GPSData), ("sensors", SensorData), ("system", SystemData))

def decode_telemetry(message: str | bytes) -> TelemetrySample:
    if isinstance(message, bytes):
        try:
            message = message.decode("utf-8")
        except UnicodeDecodeError as e:
            raise DecodeError(f"telemetry is not UTF-8: {e}") from e
    if not message:
        raise DecodeError("empty telemetry payload")
    try:
        js = orjson.loads(message)
    except orjson.JSONDecodeError as e:
        raise DecodeError(f"telemetry is not JSON: {e}") from e
    if not isinstance(js, dict):
        raise DecodeError("telemetry is not an object")
    timestamp = js.get("timestamp")
    if isinstance(timestamp, bool) or not isinstance(timestamp, int):
        raise DecodeError("telemetry without integer timestamp")
    sections = {name: _decode_section(cls, name, js.get(name)) for name, cls in _SECTIONS}
    return TelemetrySample(timestamp=timestamp, **sections)

def encode_telemetry(sample: TelemetrySample) -> bytes:
    body: dict[str, typing.Any] = {}
    for name, _ in _SECTIONS:
        section = _encode_section(getattr(sample, name))
        if section is not None:
            body[name] = section
    body["timestamp"] = sample.timestamp
    return orjson.dumps(body)

# ======================= COMMANDS =====================================================

@dataclasses.dataclass
class MovementData:
    throttle: float # 0..1
    steering: float # -1..1
    brake: float = 0.0 # 0..1

@dataclasses.dataclass
class CameraData:
    pan: float
    tilt: float

@dataclasses.dataclass
class VehicleCommand:
    type: str
    movement: MovementData | None = None
    camera: CameraData | None = None
    extra: dict[str, typing.Any] = dataclasses.field(default_factory=dict)

@dataclasses.dataclass
class EmergencyStopCommand:
    reason: str
    activate: bool = True

Command = VehicleCommand | EmergencyStopCommand

def encode_command(command: Command, timestamp: int | None = None) -> bytes:
    '''timestamp defaults to now: commands are stamped when sent, not when built'''
    stamp = now_ms() if timestamp is None else timestamp
    if isinstance(command, EmergencyStopCommand):
        return orjson.dumps({"activate": command.activate, "reason": command.reason, "timestamp": stamp})
    body: dict[str, typing.Any] = {**command.extra, "type": command.type}
    if command.movement is not None:
        body["movement"] = dataclasses.asdict(command.movement)
    if command.camera is not None:
        body["camera"] = dataclasses.asdict(command.camera)
    body["timestamp"] = stamp
    return orjson.dumps(body)

def movement(throttle: float, steering: float, brake: float = 0.0) -> VehicleCommand:
    return VehicleCommand(type="movement", movement=MovementData(throttle, steering, brake))

def camera(pan: float, tilt: float) -> VehicleCommand:
    return VehicleCommand(type="camera", camera=CameraData(pan, tilt))
