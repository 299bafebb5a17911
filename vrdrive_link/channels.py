from __future__ import annotations

import logging
import typing

from . import config
from . import models
from .errors import DecodeError
from .events import Signal, release
from .negotiation import PeerNegotiationEngine, Role

logger = logging.getLogger(__name__)

CHANNEL_IDS = (config.COMMAND_CHANNEL_ID, config.TELEMETRY_CHANNEL_ID)


class ChannelReadinessTracker:
    """Tracks the ``commands`` and ``telemetry`` data channels of one peer connection.

    The offerer creates both channels, the answerer receives them through
    ``datachannel``; either way they are bound by ``_bind``. ``ready`` fires
    once per peer connection, when the second of the two reports open.
    """
    def __init__(self, engine: PeerNegotiationEngine | None = None):
        self.ready = Signal("ready")
        self.ready_lost = Signal("ready_lost")
        self.telemetry_received = Signal("telemetry_received")

        self.latest_telemetry: models.TelemetrySample | None = None

        self._pc = None
        self._channels: dict[str, typing.Any] = {}
        self._open: set[str] = set()
        self._ready = False
        self._ready_fired = False
        self._subscriptions = []
        if engine is not None:
            self._subscriptions += [
                engine.peer_connection_created.connect(self.attach),
                engine.peer_connection_disposed.connect(self.detach),
            ]

    @property
    def is_ready(self) -> bool:
        return self._ready

    @property
    def command_channel(self):
        return self._channels.get(config.COMMAND_CHANNEL_ID)

    def close(self):
        release(self._subscriptions)
        if self._pc is not None:
            self.detach(self._pc)

    # ======================= LIFECYCLE ===================================

    def attach(self, pc, role: Role) -> None:
        if self._pc is not None and self._pc is not pc:
            self.detach(self._pc)
        self._pc = pc
        self._channels.clear()
        self._open.clear()
        self._ready = False
        self._ready_fired = False
        pc.on("datachannel", lambda channel: self._on_datachannel(pc, channel))
        if role is Role.OFFERER:
            self.open_channels()

    def detach(self, pc) -> None:
        if pc is not self._pc:
            return
        was_ready = self._ready
        self._pc = None
        self._channels.clear()
        self._open.clear()
        self._ready = False
        if was_ready:
            logger.info("DC: peer connection gone, channels not ready")
            self.ready_lost.emit()

    def open_channels(self) -> None:
        '''offerer side: create both channels on the attached peer connection'''
        if self._pc is None:
            logger.warning("DC: cannot open channels, no peer connection")
            return
        for label in CHANNEL_IDS:
            if label in self._channels:
                continue
            logger.debug("DC: creating channel %s", label)
            self._bind(self._pc, self._pc.createDataChannel(label))

    def _on_datachannel(self, pc, channel):
        if pc is not self._pc:
            channel.close()
            return
        logger.debug("DC: inbound channel %s (%s)", channel.label, channel.readyState)
        if channel.label not in CHANNEL_IDS:
            channel.close()
            logger.error("DC: got unknown channel %s", channel.label)
            return
        self._bind(pc, channel)

    def _bind(self, pc, channel):
        label = channel.label
        previous = self._channels.get(label)
        self._channels[label] = channel
        if previous is not None and previous is not channel:
            logger.warning("DC: channel %s replaced", label)
            self._open.discard(label)
            if self._ready:
                self._ready = False
                self.ready_lost.emit()

        def on_open():
            self._on_open(pc, channel)

        def on_close():
            self._on_close(pc, channel)

        channel.on("close", on_close)
        if label == config.TELEMETRY_CHANNEL_ID:
            channel.on("message", lambda message: self._on_telemetry(pc, message))
        else:
            channel.on("message", lambda message: logger.debug("DC: %s says %r", label, message))
        if channel.readyState == "open":
            on_open()
        else:
            channel.on("open", on_open)

    def _on_open(self, pc, channel):
        if pc is not self._pc or self._channels.get(channel.label) is not channel:
            return
        logger.info("DC: channel %s open", channel.label)
        self._open.add(channel.label)
        if self._open.issuperset(CHANNEL_IDS) and not self._ready:
            self._ready = True
            if not self._ready_fired:
                self._ready_fired = True
                logger.info("DC: data channels ready")
                self.ready.emit()

    def _on_close(self, pc, channel):
        if pc is not self._pc or self._channels.get(channel.label) is not channel:
            return
        logger.warning("DC: channel %s closed", channel.label)
        self._open.discard(channel.label)
        if self._ready:
            self._ready = False
            self.ready_lost.emit()

    # ======================= TELEMETRY ===================================

    def _on_telemetry(self, pc, message: str | bytes):
        if pc is not self._pc:
            return
        try:
            sample = models.decode_telemetry(message)
        except DecodeError as e:
            logger.warning("DC: dropping telemetry: %s", e)
            return
        self.latest_telemetry = sample
        self.telemetry_received.emit(sample)

    # ======================= COMMANDS ====================================

    def send_command(self, data: bytes | str) -> bool:
        channel = self.command_channel
        if not self._ready or channel is None or channel.readyState != "open":
            logger.warning("DC: channels not ready, dropping %d bytes", len(data))
            return False
        channel.send(data)
        return True

    def send_vehicle_command(self, command: models.Command) -> bool:
        # encoded here so the timestamp is the send time
        return self.send_command(models.encode_command(command).decode())

    def send_movement(self, throttle: float, steering: float, brake: float = 0.0) -> bool:
        return self.send_vehicle_command(models.movement(throttle, steering, brake))

    def send_camera(self, pan: float, tilt: float) -> bool:
        return self.send_vehicle_command(models.camera(pan, tilt))

    def send_emergency_stop(self, reason: str, activate: bool = True) -> bool:
        return self.send_vehicle_command(models.EmergencyStopCommand(reason=reason, activate=activate))
