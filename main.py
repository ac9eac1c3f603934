"""
Sensor log replay.

Feeds a recorded JSON-lines sensor log through the positioning pipeline
and prints the fused positions.

Log events (one JSON object per line, t_ns = monotonic nanoseconds):
    {"type": "rssi", "t_ns": 0, "anchor": "beacon-0", "rssi": -63.0}
    {"type": "inertial", "t_ns": 0, "accel": [0, 0, 9.8],
     "gyro": [0, 0, 0.1], "mag": [0, 20, -40], "rotvec": [0, 0, 0, 1]}
    {"type": "visual", "t_ns": 0, "v": 1.2, "w": 0.0}
    {"type": "tick", "t_ns": 0}

When the log carries no tick events, ticks are generated every
REPLAY_CONFIG["tick_interval_ms"] of log time.

Anchor file: JSON list of {"id", "x", "y", "tx_power"}.
"""

import sys
import json
import logging
import argparse
from pathlib import Path
from typing import Dict, List, Optional

import config
from ips_core.proto import (
    AnchorFix,
    InertialSample,
    MotionDelta,
    MotionSource,
    PositionEstimate,
    Reading,
    RotationVector,
    rssi_reading,
    vector_reading,
    NANOS_PER_MILLI,
)
from ips_core.fusion import PositioningPipeline
from ips_core.metrics import get_metrics

# Configure logging
logging.basicConfig(
    level=getattr(logging, config.LOGGING_CONFIG["level"]),
    format=config.LOGGING_CONFIG["format"]
)
logger = logging.getLogger(__name__)


class LogFormatError(ValueError):
    """Malformed sensor log line."""


def load_anchors(path: Optional[Path]) -> List[AnchorFix]:
    """
    Load anchors from a JSON file, or the demo layout when path is None.

    Raises:
        ValueError: On malformed anchor entries
    """
    if path is None:
        entries = config.DEFAULT_ANCHORS
    else:
        with open(path, 'r', encoding='utf-8') as f:
            entries = json.load(f)

    anchors = []
    for entry in entries:
        try:
            anchors.append(AnchorFix(
                anchor_id=str(entry["id"]),
                position=(float(entry["x"]), float(entry["y"])),
                tx_power_dbm=float(entry.get("tx_power", -59.0)),
            ))
        except (KeyError, TypeError) as e:
            raise ValueError(f"Malformed anchor entry {entry}: {e}") from e
    return anchors


def _vector(event: Dict, key: str, t_ns: int) -> Optional[Reading]:
    values = event.get(key)
    if values is None:
        return None
    if len(values) != 3:
        raise LogFormatError(f"'{key}' needs 3 components, got {len(values)}")
    return vector_reading(float(values[0]), float(values[1]), float(values[2]), t_ns)


def parse_inertial(event: Dict, t_ns: int) -> InertialSample:
    """Build an InertialSample from an 'inertial' log event."""
    accel = _vector(event, "accel", t_ns)
    if accel is None:
        raise LogFormatError("inertial event without 'accel'")

    rotation = None
    rotvec = event.get("rotvec")
    if rotvec is not None:
        if len(rotvec) not in (3, 4):
            raise LogFormatError(f"'rotvec' needs 3 or 4 components, got {len(rotvec)}")
        w = float(rotvec[3]) if len(rotvec) == 4 else None
        rotation = Reading(RotationVector(float(rotvec[0]), float(rotvec[1]), float(rotvec[2]), w), t_ns)

    return InertialSample(
        accelerometer=accel,
        gyroscope=_vector(event, "gyro", t_ns),
        magnetometer=_vector(event, "mag", t_ns),
        rotation_vector=rotation,
    )


class SensorLogReplay:
    """
    Replays a sensor log through a PositioningPipeline.

    Usage:
        replay = SensorLogReplay(pipeline)
        estimates = replay.run(Path("walk.jsonl"))
    """

    def __init__(self, pipeline: PositioningPipeline, tick_interval_ms: Optional[float] = None,
                 print_interval: Optional[int] = None):
        self.pipeline = pipeline
        self.tick_interval_ns = int(
            (tick_interval_ms or config.REPLAY_CONFIG["tick_interval_ms"]) * NANOS_PER_MILLI
        )
        self.print_interval = print_interval or config.REPLAY_CONFIG["print_interval"]

        self.event_count = 0
        self.error_count = 0
        self.tick_count = 0
        self.valid_count = 0

        self._explicit_ticks = False
        self._last_tick_ns: Optional[int] = None

    def run(self, log_path: Path) -> List[PositionEstimate]:
        """Replay a log file; returns every tick's estimate."""
        with open(log_path, 'r', encoding='utf-8') as f:
            return self.replay_lines(f)

    def replay_lines(self, lines) -> List[PositionEstimate]:
        estimates = []
        for line_no, line in enumerate(lines, start=1):
            line = line.strip()
            if not line or line.startswith('#'):
                continue

            try:
                estimate = self.handle_event(json.loads(line))
            except (json.JSONDecodeError, LogFormatError, KeyError, TypeError, ValueError) as e:
                self.error_count += 1
                logger.warning(f"Skipping line {line_no}: {e}")
                continue

            if estimate is not None:
                estimates.append(estimate)
        return estimates

    def handle_event(self, event: Dict) -> Optional[PositionEstimate]:
        """
        Dispatch one log event.

        Returns:
            The estimate if this event produced a tick
        """
        event_type = event.get("type")
        t_ns = int(event["t_ns"])
        self.event_count += 1

        if event_type == "tick":
            self._explicit_ticks = True
            return self._tick(t_ns)

        if event_type == "rssi":
            self.pipeline.on_radio_sample(str(event["anchor"]), rssi_reading(float(event["rssi"]), t_ns))
        elif event_type == "inertial":
            self.pipeline.on_inertial_sample(parse_inertial(event, t_ns))
        elif event_type == "visual":
            self.pipeline.on_visual_motion(MotionDelta(
                velocity_mps=float(event["v"]),
                angular_velocity_rps=float(event["w"]),
                timestamp_ns=t_ns,
                source=MotionSource.VISUAL,
            ))
        else:
            raise LogFormatError(f"Unknown event type '{event_type}'")

        if not self._explicit_ticks:
            if self._last_tick_ns is None:
                self._last_tick_ns = t_ns
            elif t_ns - self._last_tick_ns >= self.tick_interval_ns:
                return self._tick(t_ns)
        return None

    def _tick(self, t_ns: int) -> PositionEstimate:
        estimate = self.pipeline.tick(t_ns)
        self._last_tick_ns = t_ns
        self.tick_count += 1

        if estimate.is_valid:
            self.valid_count += 1

        if self.tick_count % self.print_interval == 0:
            print_estimate(estimate, self.pipeline)
        return estimate


def print_estimate(estimate: PositionEstimate, pipeline: PositioningPipeline):
    """Print one fused estimate."""
    heading = pipeline.current_heading()
    heading_text = f"{heading.heading_deg:6.1f} deg" if heading else "   n/a"
    t_s = estimate.timestamp_ns / 1e9

    if estimate.is_valid:
        print(f"[{t_s:9.3f}s] ({estimate.x:7.2f}, {estimate.y:7.2f}) m "
              f"+/- {estimate.accuracy_m:5.2f} m  conf={estimate.confidence:.2f}  "
              f"steps={pipeline.step_count()}  heading={heading_text}")
    else:
        print(f"[{t_s:9.3f}s] no fix  steps={pipeline.step_count()}  heading={heading_text}")


def main(argv: Optional[List[str]] = None) -> int:
    """Entry point."""
    parser = argparse.ArgumentParser(description='Replay a sensor log through the positioning pipeline')
    parser.add_argument('--log', '-l', type=Path, required=True,
                        help='JSON-lines sensor log')
    parser.add_argument('--anchors', '-a', type=Path, default=None,
                        help='JSON anchor file (defaults to the demo layout)')
    parser.add_argument('--heading', choices=('complementary', 'kalman'), default=None,
                        help='Heading estimation strategy')
    parser.add_argument('--advanced-steps', action='store_true',
                        help='Require gyroscope corroboration for steps')
    parser.add_argument('--debug', '-d', action='store_true',
                        help='Enable debug logging')

    args = parser.parse_args(argv)

    # Logging level
    if args.debug:
        logging.getLogger().setLevel(logging.DEBUG)

    overrides = {"pipeline": {}}
    if args.heading:
        overrides["pipeline"]["heading_strategy"] = args.heading
    if args.advanced_steps:
        overrides["pipeline"]["advanced_step_detection"] = True

    try:
        anchors = load_anchors(args.anchors)
        pipeline = PositioningPipeline(anchors, config.build_pipeline_config(overrides))
    except (OSError, ValueError) as e:
        logger.error(f"Configuration error: {e}")
        return 2

    replay = SensorLogReplay(pipeline)
    try:
        replay.run(args.log)
    except OSError as e:
        logger.error(f"Cannot read log: {e}")
        return 1

    print("=" * 60)
    print(f"Events: {replay.event_count}  (skipped {replay.error_count})")
    print(f"Ticks: {replay.tick_count}  valid fixes: {replay.valid_count}")
    print(f"Steps: {pipeline.step_count()}")
    print("=" * 60)

    if config.REPLAY_CONFIG["summary"]:
        get_metrics().print_summary()
    return 0


if __name__ == "__main__":
    sys.exit(main())
