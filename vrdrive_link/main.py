import argparse
import asyncio
import logging
import signal
import sys

from coloredlogs import install

logger = logging.getLogger(__name__)

if sys.platform != "win32":
    USE_WINLOOP = False
    try:
        import uvloop
        USE_UVLOOP = True
    except ImportError:
        USE_UVLOOP = False
else:
    USE_UVLOOP = False
    try:
        import winloop
        USE_WINLOOP = True
    except ImportError:
        USE_WINLOOP = False

from . import config
from .logic import SessionStatus, TeleopSession
from .models import TelemetrySample
from .negotiation import IceConfig
from .stats import StatsSample


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="vrdrive-link",
        description="Connect to a robot through the rendezvous server and keep the link up",
    )
    parser.add_argument("--server", default=config.SERVER_URI, help="signaling server websocket URI")
    parser.add_argument("--username", help="login name; without it the session stays anonymous")
    parser.add_argument("--password", help="login password")
    parser.add_argument("--device-id", help="device id sent with the login request")
    parser.add_argument("--robot", help="robot to connect to right after login")
    parser.add_argument("--stun", action="append", default=[], metavar="URI",
                        help="STUN/TURN server URI, may be repeated")
    parser.add_argument("--ice-policy", choices=("all", "relay"), default=config.ICE_TRANSPORT_POLICY)
    parser.add_argument("--stats-interval", type=float, default=config.STATS_INTERVAL, metavar="SECONDS")
    parser.add_argument("--no-auto-connect", action="store_true",
                        help="do not offer to robots announced by the server")
    parser.add_argument("--log-level", default="INFO",
                        choices=("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"))
    return parser


def setup_logging(level: str):
    install(level=getattr(logging, level))
    logging.getLogger("websockets.client").setLevel(logging.WARNING)
    logging.getLogger("aioice.ice").setLevel(logging.INFO)
    logging.getLogger("aiortc.rtcsctptransport").setLevel(logging.INFO)
    logging.getLogger("aiortc.rtcpeerconnection").setLevel(logging.INFO)


def log_telemetry(sample: TelemetrySample):
    parts = [f"t={sample.timestamp}"]
    if sample.battery and sample.battery.percentage is not None:
        parts.append(f"battery={sample.battery.percentage:.0f}%")
    if sample.gps and sample.gps.latitude is not None and sample.gps.longitude is not None:
        parts.append(f"gps={sample.gps.latitude:.5f},{sample.gps.longitude:.5f}")
    if sample.gps and sample.gps.speed is not None:
        parts.append(f"speed={sample.gps.speed:.1f}")
    if sample.system and sample.system.cpu_usage is not None:
        parts.append(f"cpu={sample.system.cpu_usage:.0f}%")
    logger.debug("CLI: telemetry %s", " ".join(parts))


def log_stats(sample: StatsSample):
    if sample.video_bitrate is not None:
        logger.info("CLI: video %.0f kbit/s (%d bytes total)", sample.video_bitrate / 1000,
                    sample.video_bytes_received or 0)


def log_status(status: SessionStatus):
    logger.info("CLI: %s", status.value)


def _loop_factory():
    if USE_UVLOOP:
        logger.info("Using uvloop as event loop")
        return uvloop.new_event_loop
    if USE_WINLOOP:
        logger.info("Using winloop as event loop")
        return winloop.new_event_loop
    logger.warning("%s not found, using default asyncio loop", "winloop" if sys.platform == "win32" else "uvloop")
    return None


async def run(args: argparse.Namespace):
    session = TeleopSession(
        server_uri=args.server,
        username=args.username,
        password=args.password,
        device_id=args.device_id,
        robot=args.robot,
        ice_config=IceConfig(urls=tuple(args.stun), transport_policy=args.ice_policy),
        stats_interval=args.stats_interval,
        auto_connect=not args.no_auto_connect,
    )
    session.status_changed.connect(log_status)
    session.channels.telemetry_received.connect(log_telemetry)
    session.poller.stats_updated.connect(log_stats)

    loop = asyncio.get_running_loop()
    if sys.platform != "win32":
        for signum in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(signum, session.shutdown)
    else:
        signal.signal(signal.SIGINT, lambda *a: loop.call_soon_threadsafe(session.shutdown))

    logger.info("CLI: shutting down with Ctrl+C")
    await session.run()


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(args.log_level)
    try:
        asyncio.run(run(args), loop_factory=_loop_factory())
    except KeyboardInterrupt:
        pass
    except Exception:
        logger.critical("CLI: session finished with exception", exc_info=True)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
