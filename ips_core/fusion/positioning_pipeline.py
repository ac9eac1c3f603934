"""
Positioning Pipeline.

Top-level facade wiring the estimation core together:

    radio samples ──> AnchorTable ──> TrilaterationSolver ──┐ absolute fix
                                                            ├──> FusionEngine ──> PositionEstimate
    inertial samples ──> StepDetector + HeadingEstimator    │
                         ──> StepLength + MotionIntegrator ─┤ relative motion
    visual motion ──────────────────────────────────────────┘

Producers call on_radio_sample / on_inertial_sample / on_visual_motion from
any thread; these only touch their own feed. tick(now_ns) is the single
consumer: it drains the feeds, runs PDR, predicts and updates the engine,
and notifies subscribers. Each PDR step is predicted exactly once, over its
own step period.
"""

from typing import Callable, Iterable, List, Optional
from dataclasses import dataclass, field
import logging
import threading

from ips_core.proto.readings import Reading, InertialSample, NANOS_PER_SECOND
from ips_core.proto.radio import AnchorFix
from ips_core.proto.motion import MotionDelta, HeadingState
from ips_core.proto.position_estimate import PositionEstimate
from ips_core.localization.distance_estimator import (
    AnchorTable,
    DistanceEstimator,
    DistanceEstimatorConfig,
)
from ips_core.localization.trilateration import TrilaterationSolver, TrilaterationConfig
from ips_core.pdr.step_detector import (
    StepDetector,
    StepDetectorConfig,
    AdvancedStepDetector,
    AdvancedStepDetectorConfig,
)
from ips_core.pdr.heading_estimator import (
    HeadingEstimator,
    ComplementaryHeadingEstimator,
    KalmanHeadingEstimator,
    KalmanHeadingConfig,
)
from ips_core.pdr.step_length import StepLengthEstimator, StepLengthConfig
from ips_core.pdr.motion_integrator import (
    MotionIntegrator,
    MotionIntegratorConfig,
    heading_to_theta,
)
from ips_core.fusion.fusion_engine import FusionEngine, FusionConfig
from ips_core.fusion.feeds import LatestValueSlot, BoundedFeed
from ips_core.metrics import get_metrics


logger = logging.getLogger(__name__)

HEADING_STRATEGIES = ('complementary', 'kalman')

PositionCallback = Callable[[PositionEstimate], None]


@dataclass
class PipelineConfig:
    """
    Configuration for the positioning pipeline.

    Attributes:
        heading_strategy: 'complementary' or 'kalman'
        advanced_step_detection: Use the gyroscope-corroborated step detector
        gyro_weight: Complementary filter gyroscope weight
        complementary_alpha: Complementary filter blend coefficient
        pdr_motion_confidence: Trust in PDR motion for the predict step (0-1)
        visual_motion_confidence: Trust in visual motion for the predict step (0-1)
        inertial_queue_capacity: Inertial samples buffered between ticks
    """

    heading_strategy: str = 'complementary'
    advanced_step_detection: bool = False
    gyro_weight: float = 0.98
    complementary_alpha: float = 0.98
    pdr_motion_confidence: float = 0.6
    visual_motion_confidence: float = 0.9
    inertial_queue_capacity: int = 512

    distance: DistanceEstimatorConfig = field(default_factory=DistanceEstimatorConfig)
    trilateration: TrilaterationConfig = field(default_factory=TrilaterationConfig)
    step_detector: StepDetectorConfig = field(default_factory=StepDetectorConfig)
    kalman_heading: KalmanHeadingConfig = field(default_factory=KalmanHeadingConfig)
    step_length: StepLengthConfig = field(default_factory=StepLengthConfig)
    motion: MotionIntegratorConfig = field(default_factory=MotionIntegratorConfig)
    fusion: FusionConfig = field(default_factory=FusionConfig)

    def __post_init__(self):
        """Validate configuration."""
        if self.heading_strategy not in HEADING_STRATEGIES:
            raise ValueError(
                f"Unknown heading strategy '{self.heading_strategy}', "
                f"expected one of {HEADING_STRATEGIES}"
            )
        for name in ('pdr_motion_confidence', 'visual_motion_confidence'):
            if not 0 < getattr(self, name) <= 1:
                raise ValueError(f"{name} must be in (0, 1]")


class PositioningPipeline:
    """
    Indoor positioning facade.

    Usage:
        pipeline = PositioningPipeline(anchors, PipelineConfig(heading_strategy='kalman'))
        unsubscribe = pipeline.subscribe(lambda est: print(est.to_dict()))

        # Producer threads
        pipeline.on_radio_sample("beacon-1", rssi_reading(-63, t_ns))
        pipeline.on_inertial_sample(sample)

        # Consumer loop
        estimate = pipeline.tick(now_ns)
        if not estimate.is_valid:
            print("no fix")
    """

    def __init__(self, anchors: Iterable[AnchorFix], config: Optional[PipelineConfig] = None):
        """
        Build the pipeline.

        Args:
            anchors: Static anchor configuration
            config: Pipeline configuration (uses defaults if None)

        Raises:
            ValueError: On malformed configuration (duplicate anchors, bad ranges)
        """
        self.config = config or PipelineConfig()
        self.metrics = get_metrics()

        self.distance_estimator = DistanceEstimator(self.config.distance)
        self.anchor_table = AnchorTable(anchors, self.distance_estimator)
        self.solver = TrilaterationSolver(self.config.trilateration)
        self.step_detector = self._create_step_detector()
        self.heading_estimator = self._create_heading_estimator()
        self.step_length = StepLengthEstimator(self.config.step_length)
        self.motion_integrator = MotionIntegrator(self.config.motion)
        self.engine = FusionEngine(self.config.fusion)

        self._inertial_feed: BoundedFeed[InertialSample] = BoundedFeed(
            'inertial', self.config.inertial_queue_capacity
        )
        self._visual_slot: LatestValueSlot[MotionDelta] = LatestValueSlot('visual')

        self._tick_lock = threading.Lock()
        self._subscribers_lock = threading.Lock()
        self._subscribers: List[PositionCallback] = []

        self._last_tick_ns: Optional[int] = None

        logger.info(
            f"Positioning pipeline initialized: {len(self.anchor_table)} anchors, "
            f"heading={self.config.heading_strategy}, "
            f"advanced_steps={self.config.advanced_step_detection}"
        )

    def _create_step_detector(self) -> StepDetector:
        if not self.config.advanced_step_detection:
            return StepDetector(self.config.step_detector)

        step_config = self.config.step_detector
        if not isinstance(step_config, AdvancedStepDetectorConfig):
            step_config = AdvancedStepDetectorConfig(**vars(step_config))
        return AdvancedStepDetector(step_config)

    def _create_heading_estimator(self) -> HeadingEstimator:
        if self.config.heading_strategy == 'kalman':
            return KalmanHeadingEstimator(self.config.kalman_heading)
        return ComplementaryHeadingEstimator(self.config.gyro_weight, self.config.complementary_alpha)

    # =========================================================================
    # Producer entry points
    # =========================================================================

    def on_radio_sample(self, anchor_id: str, reading: Reading):
        """Radio feed: one RSSI reading for one anchor."""
        self.anchor_table.ingest(anchor_id, reading)

    def on_inertial_sample(self, sample: InertialSample):
        """Inertial feed: one accelerometer tick with optional gyro / compass."""
        self.metrics.increment('inertial_samples')
        self._inertial_feed.put(sample)

    def on_visual_motion(self, delta: MotionDelta):
        """Visual tracking feed: latest relative motion."""
        self.metrics.increment('visual_samples')
        self._visual_slot.put(delta)

    # =========================================================================
    # Consumer
    # =========================================================================

    def tick(self, now_ns: int) -> PositionEstimate:
        """
        Run one estimation cycle.

        Args:
            now_ns: Current monotonic time (ns)

        Returns:
            Fused PositionEstimate, or the invalid estimate when there is no fix
        """
        with self._tick_lock:
            self.metrics.increment('ticks')

            steps = self._run_pdr()

            was_initialized = self.engine.is_initialized()
            if was_initialized and self._last_tick_ns is not None:
                dt_s = (now_ns - self._last_tick_ns) / NANOS_PER_SECOND
                self._predict(steps, now_ns, dt_s)

            fix = self.solver.solve(self.anchor_table.estimates(now_ns), timestamp_ns=now_ns)
            estimate = self.engine.update(fix)

            if not was_initialized and self.engine.is_initialized():
                self._align_heading()

            self._last_tick_ns = now_ns

        self._notify(estimate)
        return estimate

    def _run_pdr(self) -> List[MotionDelta]:
        """Feed queued inertial samples through step and heading estimation."""
        steps = []
        for sample in self._inertial_feed.drain():
            if isinstance(self.step_detector, AdvancedStepDetector):
                event = self.step_detector.process_sample(sample)
            else:
                event = self.step_detector.process(sample.accelerometer)

            heading = self.heading_estimator.update(sample)

            if event.step_detected:
                length_m = self.step_length.estimate(event)
                delta = self.motion_integrator.on_step(event, length_m, heading)
                if delta is not None:
                    steps.append(delta)
        return steps

    def _predict(self, steps: List[MotionDelta], now_ns: int, dt_s: float):
        """
        Advance the engine with this tick's relative motion.

        Visual motion covers the whole tick and takes precedence. Otherwise
        every new PDR step is applied once over its step period, so a step
        moves the state by its own length. With no step for the idle
        timeout the walker is held stationary.
        """
        visual = self.motion_integrator.accept_external(self._visual_slot.take())
        if visual is not None:
            self.engine.predict(visual, visual.duration_s or dt_s, self.config.visual_motion_confidence)
            return

        if steps:
            for delta in steps:
                self.engine.predict(delta, delta.duration_s or dt_s, self.config.pdr_motion_confidence)
            return

        idle = self.motion_integrator.idle_delta(now_ns)
        if idle is not None:
            self.engine.predict(idle, dt_s, self.config.pdr_motion_confidence)

    def _align_heading(self):
        heading = self.heading_estimator.current
        if heading is not None:
            self.engine.set_heading(heading_to_theta(heading.heading_deg))

    # =========================================================================
    # Accessors
    # =========================================================================

    def current_position(self) -> PositionEstimate:
        return self.engine.current_position()

    def step_count(self) -> int:
        return self.step_detector.step_count

    def current_heading(self) -> Optional[HeadingState]:
        return self.heading_estimator.current

    def reset(self):
        """Administrative reset: clear every estimator and feed, keep configuration."""
        with self._tick_lock:
            self.engine.reset()
            self.step_detector.reset()
            self.heading_estimator.reset()
            self.step_length.reset()
            self.motion_integrator.reset()
            self.anchor_table.clear()
            self._inertial_feed.clear()
            self._visual_slot.clear()
            self._last_tick_ns = None
        logger.info("Positioning pipeline reset")

    # =========================================================================
    # Observers
    # =========================================================================

    def subscribe(self, callback: PositionCallback) -> Callable[[], None]:
        """
        Register a callback invoked with every tick's estimate.

        Returns:
            Function that removes the subscription
        """
        with self._subscribers_lock:
            self._subscribers.append(callback)

        def unsubscribe():
            with self._subscribers_lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def _notify(self, estimate: PositionEstimate):
        with self._subscribers_lock:
            subscribers = list(self._subscribers)

        for callback in subscribers:
            try:
                callback(estimate)
            except Exception:
                logger.exception("Position subscriber raised")
