"""
WebSocket runtime for both ends of the PTZ link.

The actuator side serves simulated cameras over websockets. The operator side
connects with retry and exponential backoff, waits for capabilities and a
clock offset, then sends the requested moves, optionally follows an IMU feed
or tracks an ArUco marker in a video source, and writes evaluation CSVs to
results/run_*/.
"""

import argparse
import asyncio
import logging
import signal
from typing import Any, Dict, List, Optional, Sequence, Tuple

import websockets

from .actuator import SimulatedActuator
from .capabilities import Axis
from .channel import WebSocketChannel
from .config import (
    IMU_WS_URI,
    SIM_CAPABILITIES,
    SIM_SPEED_PER_MS,
    TERM_BLUE,
    TERM_ORANGE,
    TERM_RESET,
    WS_HOST,
    WS_MAX_RETRY_DELAY_SECONDS,
    WS_PORT,
    WS_READY_TIMEOUT_SECONDS,
    WS_RETRY_DELAY_SECONDS,
    WS_URI,
)
from .data_collector import EvaluationLog
from .node import ActuatorNode, OperatorNode
from .profiles import ControlProfile
from .scheduler import AsyncioScheduler
from .teleop import ImuTeleop, run_imu_feed

log = logging.getLogger(__name__)


class CustomFormatter(logging.Formatter):
    """Custom logging formatter that removes timestamps from INFO messages.

    This formatter provides clean console output by showing INFO messages without
    timestamps while preserving full context for WARNING, ERROR, and DEBUG messages.
    """

    def format(self, record: logging.LogRecord) -> str:
        if record.levelno == logging.INFO:
            return record.getMessage()
        else:
            return f"{self.formatTime(record, self.datefmt)} - {record.levelname} - {record.getMessage()}"


def setup_logging(verbose: bool = False) -> None:
    """Configure logging based on verbosity level.

    Args:
        verbose: If True, show all levels with timestamps. If False, show INFO
                 without timestamps and WARNING/ERROR with timestamps.
    """
    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(asctime)s - %(levelname)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    else:
        handler = logging.StreamHandler()
        formatter = CustomFormatter(datefmt="%Y-%m-%d %H:%M:%S")
        handler.setFormatter(formatter)
        logger = logging.getLogger()
        logger.setLevel(logging.INFO)
        logger.addHandler(handler)


def parse_move(text: str) -> Tuple[Axis, float]:
    """Parse an ``axis=value`` move such as ``pan=36000``."""
    try:
        axis, value = text.split("=", 1)
        return Axis(axis.strip().lower()), float(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"Invalid move '{text}', expected axis=value (pan, tilt, zoom)")


def build_simulated_actuators(targets: Sequence[str], scheduler: AsyncioScheduler) -> Dict[str, SimulatedActuator]:
    return {
        target: SimulatedActuator.from_config(scheduler, SIM_CAPABILITIES, SIM_SPEED_PER_MS)
        for target in targets
    }


async def serve_actuators(
    host: str = WS_HOST,
    port: int = WS_PORT,
    targets: Sequence[str] = ("camera1",),
    profile: Optional[ControlProfile] = None,
    stop_event: Optional[asyncio.Event] = None,
) -> None:
    """Serve simulated cameras until stop_event is set.

    Each connection gets its own ActuatorNode; the cameras are shared.
    """
    profile = profile or ControlProfile()
    stop_event = stop_event or asyncio.Event()
    scheduler = AsyncioScheduler()
    actuators = build_simulated_actuators(targets, scheduler)

    async def handle_connection(websocket: Any, *_: Any) -> None:
        log.info(f"{TERM_BLUE}✓ Operator connected{TERM_RESET}")
        channel = WebSocketChannel(websocket, label="actuator")
        ActuatorNode(channel, actuators, scheduler, profile)
        await channel.run()
        log.info("Operator disconnected")

    async with websockets.serve(handle_connection, host, port):
        log.info(f"{TERM_BLUE}✓ Actuator node listening on ws://{host}:{port} ({profile}){TERM_RESET}")
        await stop_event.wait()


class OperatorClient:
    """Operator runtime: connection management, moves, IMU and marker tracking.

    Attributes:
        uri: Actuator node URI.
        event_log: Evaluation log for this run.
        results: Latency records gathered from all sessions.
        should_stop: Flag indicating whether to stop the connection loop.
    """

    def __init__(
        self,
        uri: str,
        target: str = "camera1",
        moves: Optional[List[Tuple[Axis, float]]] = None,
        imu_uri: Optional[str] = None,
        video_source: Optional[str] = None,
        output_dir: str = ".",
        run_dir: Optional[str] = None,
        profile: Optional[ControlProfile] = None,
    ) -> None:
        if not uri or not uri.startswith(("ws://", "wss://")):
            raise ValueError(f"Invalid WebSocket URI: {uri}. Must start with 'ws://' or 'wss://'")

        self.uri = uri
        self.target = target
        self.moves = list(moves or [])
        self.imu_uri = imu_uri
        self.video_source = video_source
        self.profile = profile or ControlProfile()
        self.scheduler = AsyncioScheduler()
        self.event_log = EvaluationLog(
            self.scheduler,
            output_dir=output_dir,
            run_dir=run_dir,
            metadata={"target": target, "profile": self.profile.to_dict()},
        )
        self.results: List[Dict[str, Any]] = []
        self.should_stop = False
        self.stop_event = asyncio.Event()

    def stop(self) -> None:
        """Signal the client to stop."""
        self.should_stop = True
        self.stop_event.set()

    async def run_session(self, websocket: Any) -> None:
        channel = WebSocketChannel(websocket, label="operator")
        node = OperatorNode(channel, self.scheduler, event_log=self.event_log)
        pump = asyncio.get_running_loop().create_task(channel.run())
        try:
            try:
                await asyncio.wait_for(node.wait_ready(), timeout=WS_READY_TIMEOUT_SECONDS)
            except asyncio.TimeoutError:
                log.warning("Actuator node did not announce capabilities in time")
                return

            await self.send_moves(node)

            tasks = []
            if self.imu_uri is not None:
                teleop = ImuTeleop(node, self.target, self.scheduler, event_log=self.event_log)
                tasks.append(run_imu_feed(teleop, self.imu_uri, self.stop_event))
            if self.video_source is not None:
                tasks.append(self.track_video(node))
            if tasks:
                stopper = asyncio.ensure_future(self.stop_event.wait())
                done, pending = await asyncio.wait(
                    [asyncio.ensure_future(t) for t in tasks] + [pump, stopper],
                    return_when=asyncio.FIRST_COMPLETED,
                )
                for task in pending:
                    if task is not pump:
                        task.cancel()
                if pump not in done:
                    self.stop()
            else:
                self.stop()
        finally:
            self.results.extend(node.latency_records)
            await channel.close()
            await pump

    async def send_moves(self, node: OperatorNode) -> None:
        handles = []
        for axis, value in self.moves:
            handle = node.move(self.target, axis, value)
            if handle is not None:
                handles.append(handle)
        for handle in handles:
            outcome = await handle.wait()
            pending = handle.pending
            latency = outcome.resolved_at - pending.start_time
            color = TERM_ORANGE if outcome.timed_out else TERM_BLUE
            status = "timed out" if outcome.timed_out else "confirmed"
            log.info(
                f"{color}→ {pending.axis}={pending.target_value:.0f} {status} "
                f"in {latency:.1f} ms{TERM_RESET}"
            )

    async def track_video(self, node: OperatorNode) -> None:
        """Run marker tracking on frames from an OpenCV video source."""
        import cv2

        from .detector import ArucoMarkerDetector
        from .visual_servo import VisualServoController

        source: Any = int(self.video_source) if self.video_source.isdigit() else self.video_source
        capture = cv2.VideoCapture(source)
        if not capture.isOpened():
            log.error(f"Could not open video source {self.video_source}")
            return

        loop = asyncio.get_running_loop()
        servo = VisualServoController(
            ArucoMarkerDetector(),
            node.telemetry(self.target),
            node.dispatcher,
            self.target,
            self.scheduler,
            frame_interval=self.profile.frame_interval,
            event_log=self.event_log,
        )
        servo.start()
        try:
            while servo.tracking and not self.stop_event.is_set():
                ok, frame = await loop.run_in_executor(None, capture.read)
                if not ok:
                    log.info("Video source exhausted")
                    break
                servo.process_frame(frame)
        finally:
            servo.stop()
            capture.release()

    async def run_control_loop(self) -> None:
        """Connect to the actuator node and run sessions until stopped.

        Failed connections are retried with exponential backoff.
        """
        retry_delay = WS_RETRY_DELAY_SECONDS

        while not self.should_stop:
            try:
                async with websockets.connect(self.uri) as websocket:
                    log.info(f"{TERM_BLUE}✓ Connected to actuator node{TERM_RESET}")
                    retry_delay = WS_RETRY_DELAY_SECONDS
                    await self.run_session(websocket)
            except websockets.exceptions.ConnectionClosed:
                log.warning("Connection closed by actuator node")
            except (OSError, websockets.exceptions.WebSocketException) as e:
                if self.should_stop:
                    break
                log.error(f"Connection error: {e}")

            if self.should_stop:
                break
            log.info(f"Retrying in {retry_delay} seconds...")
            try:
                await asyncio.wait_for(self.stop_event.wait(), timeout=retry_delay)
            except asyncio.TimeoutError:
                pass
            retry_delay = min(retry_delay * 2, WS_MAX_RETRY_DELAY_SECONDS)

    def __enter__(self) -> "OperatorClient":
        self.event_log.start()
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.event_log.finalize()


def install_signal_handlers(callback) -> None:
    loop = asyncio.get_running_loop()

    def signal_handler() -> None:
        """Handle shutdown signals (SIGINT, SIGTERM)."""
        log.info("\nShutdown signal received...")
        callback()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, signal_handler)


async def run_actuator(args: argparse.Namespace, profile: ControlProfile) -> None:
    stop_event = asyncio.Event()
    install_signal_handlers(stop_event.set)
    await serve_actuators(args.host, args.port, args.targets, profile, stop_event)


async def run_operator(args: argparse.Namespace, profile: ControlProfile) -> List[Dict[str, Any]]:
    imu_uri = args.imu_uri if args.imu else None
    with OperatorClient(
        args.uri,
        target=args.target,
        moves=args.move,
        imu_uri=imu_uri,
        video_source=args.video,
        output_dir=args.output_dir,
        profile=profile,
    ) as client:
        install_signal_handlers(client.stop)
        await client.run_control_loop()
        await client.event_log.stop_and_wait()
        client.event_log.export_json()
    return client.results


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="python -m ptz_link",
        description="Remote PTZ camera control with latency evaluation",
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true", help="Enable verbose logging with timestamps"
    )
    subparsers = parser.add_subparsers(dest="role", required=True)

    actuator = subparsers.add_parser("actuator", help="Serve simulated cameras")
    actuator.add_argument("--host", default=WS_HOST, help=f"Listen address (default: {WS_HOST})")
    actuator.add_argument("--port", type=int, default=WS_PORT, help=f"Listen port (default: {WS_PORT})")
    actuator.add_argument(
        "--targets",
        type=lambda s: [t for t in s.split(",") if t],
        default=["camera1"],
        help="Comma-separated camera names (default: camera1)",
    )

    operator = subparsers.add_parser("operator", help="Connect to an actuator node and send moves")
    operator.add_argument("--uri", default=WS_URI, help=f"Actuator node URI (default: {WS_URI})")
    operator.add_argument("--target", default="camera1", help="Camera to control (default: camera1)")
    operator.add_argument(
        "--move", type=parse_move, action="append", default=[], help="Measured move, e.g. pan=36000"
    )
    operator.add_argument("--imu", action="store_true", help="Follow an IMU websocket feed")
    operator.add_argument("--imu-uri", default=IMU_WS_URI, help=f"IMU feed URI (default: {IMU_WS_URI})")
    operator.add_argument("--video", default=None, help="Video file or camera index for marker tracking")
    operator.add_argument("--output-dir", default=".", help="Base directory for results/")
    return parser
