"""
Vision Pipeline – Frames → FEN updates
======================================

Per-frame orchestration of the locator, the square classifier and the
change tracker.

Pipeline stages (per frame):
  1. Board location     – re-run only every ``board_refresh_interval``
                          seconds of frame time; the region is cached in
                          between.
  2. Crop + classify    – 64 labels and confidences.
  3. Smoothing          – squares below ``low_confidence_threshold`` keep
                          the label from the previous snapshot.
  4. Change tracking    – no-change / move / new-game.
  5. Delivery           – one ``PipelineUpdate`` to ``on_update``.

Scheduling:
  • ``submit`` hands the frame to a single worker thread and returns its
    request id.  Every submission cancels the previous outstanding id;
    ``wait`` blocks until the latest submission has been handled.
  • The worker checks for staleness before and between expensive stages
    and once more, under the state lock, right before it commits and
    emits.  Superseded work is dropped without touching any state.
  • Inference in flight is never interrupted; its result is discarded.
  • ``on_update`` runs after the commit.  A failing consumer is logged and
    does not turn a committed frame into a ``PipelineError``.
"""

from __future__ import annotations

import logging
import sys
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from chess_stream.capture import Frame, Region, crop_frame
from chess_stream.config import PipelineSettings
from chess_stream.inference.backends import load_backend
from chess_stream.inference.change_tracker import ChangeKind, PositionChangeTracker
from chess_stream.inference.fen_utils import pieces_to_fen, validate_fen
from chess_stream.inference.square_classifier import ClassifierOptions, SquareClassifier
from chess_stream.models.board_locator import BoardLocator

log = logging.getLogger(__name__)


# ── Result dataclasses ────────────────────────────────────────────────

@dataclass(frozen=True)
class PerformanceStats:
    fps: float
    total_ms: float
    detect_ms: float
    classify_ms: float
    avg_confidence: float
    low_confidence_count: int


@dataclass(frozen=True)
class PipelineUpdate:
    """One processed frame, as delivered to consumers."""
    request_id: int
    fen: str
    region: Region
    change: ChangeKind
    timestamp: float                               # frame time, seconds
    was_flipped: bool
    performance: PerformanceStats
    violations: List[str] = field(default_factory=list)

    def as_dict(self) -> Dict[str, Any]:
        p = self.performance
        return {
            "request_id": self.request_id,
            "fen": self.fen,
            "region": self.region.as_dict(),
            "change": self.change.value,
            "timestamp": self.timestamp,
            "was_flipped": self.was_flipped,
            "violations": list(self.violations),
            "performance": {
                "fps": round(p.fps, 3),
                "total_ms": round(p.total_ms, 2),
                "detect_ms": round(p.detect_ms, 2),
                "classify_ms": round(p.classify_ms, 2),
                "avg_confidence": round(p.avg_confidence, 4),
                "low_confidence_count": p.low_confidence_count,
            },
        }


@dataclass(frozen=True)
class PipelineError:
    request_id: int
    message: str


@dataclass
class PipelineState:
    """Everything the pipeline remembers between frames."""
    region: Optional[Region] = None
    last_detection_at: Optional[float] = None
    previous_pieces: Optional[List[str]] = None
    last_delivered_at: Optional[float] = None


UpdateCallback = Callable[[PipelineUpdate], None]
ErrorCallback = Callable[[PipelineError], None]


# ── Pipeline ───────────────────────────────────────────────────────────

class VisionPipeline:
    """Frame-to-FEN orchestration with region caching and cancellation.

    Parameters
    ----------
    settings : PipelineSettings, optional
        Intervals, thresholds and model location.
    locator, classifier, tracker : optional
        Collaborators; built from *settings* when omitted.
    on_update : callable, optional
        Receives every non-stale ``PipelineUpdate``.
    on_error : callable, optional
        Receives a ``PipelineError`` when processing a frame raised.
    clock : callable
        Monotonic seconds, used for timings and fps.
    """

    def __init__(
        self,
        settings: Optional[PipelineSettings] = None,
        locator: Optional[BoardLocator] = None,
        classifier: Optional[SquareClassifier] = None,
        tracker: Optional[PositionChangeTracker] = None,
        on_update: Optional[UpdateCallback] = None,
        on_error: Optional[ErrorCallback] = None,
        clock: Callable[[], float] = time.perf_counter,
    ) -> None:
        self.settings = settings or PipelineSettings()
        self.locator = locator or BoardLocator()
        self.classifier = classifier or SquareClassifier(
            backend_loader=lambda: load_backend(
                self.settings.model_path,
                self.settings.device,
                use_tta=self.settings.test_time_augmentation,
            ),
            options=ClassifierOptions(tile_size=self.settings.tile_size),
        )
        self.tracker = tracker or PositionChangeTracker()
        self.on_update = on_update
        self.on_error = on_error
        self.clock = clock

        self.state = PipelineState()
        self._force_flip = self.settings.force_flip
        self._lock = threading.RLock()
        self._latest_request_id = 0
        self._cancelled_through = 0
        self._closed = False
        self._last_future: Optional[Future] = None
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="vision")

        log.info(
            "Pipeline ready  refresh=%.2fs  low_conf=%.2f  force_flip=%s",
            self.settings.board_refresh_interval,
            self.settings.low_confidence_threshold,
            self._force_flip,
        )

    # ── Request bookkeeping ────────────────────────────────────────────

    @property
    def latest_request_id(self) -> int:
        return self._latest_request_id

    def is_stale(self, request_id: int) -> bool:
        with self._lock:
            return request_id <= self._cancelled_through or request_id != self._latest_request_id

    def _cancel(self, request_id: int) -> None:
        self._cancelled_through = max(self._cancelled_through, request_id)

    def _next_request_id(self) -> int:
        with self._lock:
            if self._closed:
                raise RuntimeError("Pipeline is closed")
            if self._latest_request_id:
                self._cancel(self._latest_request_id)
            self._latest_request_id += 1
            return self._latest_request_id

    # ── Public API ─────────────────────────────────────────────────────

    def submit(self, frame: Frame) -> int:
        """Queue *frame* for the worker, superseding any earlier request.

        Returns the request id; ``PipelineUpdate.request_id`` and
        ``PipelineError.request_id`` refer back to it.
        """
        with self._lock:
            request_id = self._next_request_id()
            self._last_future = self._executor.submit(self._handle, request_id, frame)
        log.debug("Submitted request %d (t=%.3f)", request_id, frame.timestamp)
        return request_id

    def wait(self, timeout: Optional[float] = None) -> Optional[PipelineUpdate]:
        """Block until the latest submission is handled and return its update.

        ``None`` when nothing was submitted, or when that frame was dropped
        or failed.  Raises ``concurrent.futures.TimeoutError`` on *timeout*.
        """
        with self._lock:
            future = self._last_future
        if future is None:
            return None
        return future.result(timeout=timeout)

    def process_frame(self, frame: Frame) -> Optional[PipelineUpdate]:
        """Process *frame* on the calling thread through the same path."""
        return self._handle(self._next_request_id(), frame)

    def set_force_flip(self, force_flip: bool) -> None:
        self._force_flip = bool(force_flip)

    def reset(self) -> None:
        """Forget cached region, snapshot and last position (new source)."""
        with self._lock:
            self._cancel(self._latest_request_id)
            self.state = PipelineState()
            self.tracker.reset()

    def close(self) -> None:
        """Cancel everything, stop the worker and release the model."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._cancelled_through = sys.maxsize
            self.state = PipelineState()
        self._executor.shutdown(wait=True)
        self.classifier.dispose()
        log.info("Pipeline closed")

    def __enter__(self) -> "VisionPipeline":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    # ── Worker ─────────────────────────────────────────────────────────

    def _handle(self, request_id: int, frame: Frame) -> Optional[PipelineUpdate]:
        try:
            update = self._process(request_id, frame)
        except Exception as exc:
            if self.is_stale(request_id):
                log.debug("Request %d failed after being superseded: %s", request_id, exc)
                return None
            log.exception("Failed to process request %d", request_id)
            if self.on_error is not None:
                self.on_error(PipelineError(request_id=request_id, message=str(exc)))
            return None

        if update is not None:
            self._deliver(update)
        return update

    def _deliver(self, update: PipelineUpdate) -> None:
        """Hand a committed update to ``on_update``; consumer errors are only logged."""
        if self.on_update is None:
            return
        with self._lock:
            try:
                self.on_update(update)
            except Exception:
                log.exception("Update consumer failed for request %d", update.request_id)

    def _process(self, request_id: int, frame: Frame) -> Optional[PipelineUpdate]:
        if self.is_stale(request_id):
            log.debug("Dropping stale request %d before start", request_id)
            return None

        start = self.clock()
        now = frame.timestamp
        snapshot = self.state

        # 1. Board location (cached between refreshes)
        region = snapshot.region
        detected_at = snapshot.last_detection_at
        detect_ms = 0.0
        refresh = self.settings.board_refresh_interval
        if region is None or detected_at is None or now - detected_at >= refresh:
            t0 = self.clock()
            region = self.locator.locate(frame)
            detect_ms = (self.clock() - t0) * 1000.0
            detected_at = now

        if region is None:
            self._commit_region(request_id, None, detected_at)
            return None
        if self.is_stale(request_id):
            log.debug("Dropping stale request %d after detection", request_id)
            return None

        # 2. Crop + classify
        t0 = self.clock()
        result = self.classifier.classify(crop_frame(frame, region), force_flip=self._force_flip)
        classify_ms = (self.clock() - t0) * 1000.0

        if self.is_stale(request_id):
            log.debug("Dropping stale request %d after classification", request_id)
            return None

        # 3. Low-confidence carry-over
        threshold = self.settings.low_confidence_threshold
        pieces = list(result.pieces)
        low_confidence = 0
        previous = snapshot.previous_pieces
        if previous is not None:
            for i, confidence in enumerate(result.confidences):
                if confidence < threshold:
                    pieces[i] = previous[i]
                    low_confidence += 1

        fen = pieces_to_fen(pieces)
        _, violations = validate_fen(fen)

        # 4-5. Commit state and track change atomically; delivery follows
        with self._lock:
            if self.is_stale(request_id):
                log.debug("Dropping stale request %d before delivery", request_id)
                return None

            delivered_at = self.clock()
            last = self.state.last_delivered_at
            fps = 1.0 / (delivered_at - last) if last is not None and delivered_at > last else 0.0

            change = self.tracker.observe(fen)
            self.state = PipelineState(
                region=region,
                last_detection_at=detected_at,
                previous_pieces=pieces,
                last_delivered_at=delivered_at,
            )

            update = PipelineUpdate(
                request_id=request_id,
                fen=fen,
                region=region,
                change=change,
                timestamp=now,
                was_flipped=result.was_flipped,
                performance=PerformanceStats(
                    fps=fps,
                    total_ms=(delivered_at - start) * 1000.0,
                    detect_ms=detect_ms,
                    classify_ms=classify_ms,
                    avg_confidence=result.avg_confidence,
                    low_confidence_count=low_confidence,
                ),
                violations=violations,
            )
            log.debug(
                "Request %d  %s  %s  detect=%.1fms classify=%.1fms low_conf=%d",
                request_id, change.value, fen, detect_ms, classify_ms, low_confidence,
            )
            return update

    def _commit_region(
        self, request_id: int, region: Optional[Region], detected_at: Optional[float],
    ) -> None:
        """Clear the cached region after a detection that found no board.

        A ``None`` region forces the next frame to run the locator again.
        """
        with self._lock:
            if self.is_stale(request_id):
                return
            self.state = PipelineState(
                region=region,
                last_detection_at=detected_at,
                previous_pieces=self.state.previous_pieces,
                last_delivered_at=self.state.last_delivered_at,
            )
