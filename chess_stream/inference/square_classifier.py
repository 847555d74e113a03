"""
Square Classification – Board image → 64 labels + confidences
==============================================================

Pipeline stages:
  1. Overlay suppression – saturated red / green / blue-cyan pixels (move
     highlights, arrows) are replaced by the mean luminance of their clean
     4-neighbours so they do not look like pieces.
  2. Tiling              – the cleaned board is area-resampled into an 8×8
     grid of ``tile_size × tile_size`` grayscale tiles in [0, 1].
  3. Scoring             – one batched forward pass through the inference
     backend, or the occupancy heuristic when no usable model exists.
  4. Orientation         – boards captured with black at the bottom (or on
     request) are rotated 180° before the FEN is assembled.

The model path never raises into the caller: a missing backend, a failing
forward pass or a malformed output all fall back to the heuristic.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future
from dataclasses import dataclass
from typing import Callable, List, Optional, Tuple

import cv2
import numpy as np

from chess_stream.inference.backends import InferenceBackend, ModelOutputError
from chess_stream.inference.fen_utils import (
    BLACK_BOTTOM,
    detect_board_perspective,
    pieces_to_fen,
    rotate_pieces_180,
)
from chess_stream.models.classifier import EMPTY, NUM_CLASSES, PIECE_LABELS

log = logging.getLogger(__name__)

BackendLoader = Callable[[], Optional[InferenceBackend]]

BACK_RANK_WHITE = ["R", "N", "B", "Q", "K", "B", "N", "R"]
BACK_RANK_BLACK = [p.lower() for p in BACK_RANK_WHITE]

# Hue bands (degrees) used by move highlights and arrows: red/orange, green, cyan/blue
OVERLAY_HUE_BANDS: List[Tuple[float, float]] = [(0.0, 60.0), (85.0, 145.0), (170.0, 240.0)]

_NEIGHBOUR_KERNEL = np.array([[0, 1, 0], [1, 0, 1], [0, 1, 0]], dtype=np.float32)


@dataclass(frozen=True)
class ClassifierOptions:
    tile_size: int = 32
    occupancy_threshold: float = 0.08
    overlay_min_saturation: float = 0.45
    overlay_min_value: float = 0.35
    overlay_min_chroma: float = 0.2
    force_heuristic: bool = False


@dataclass
class ClassificationResult:
    """Output of ``SquareClassifier.classify``."""
    fen: str
    pieces: List[str]                 # 64 labels, after orientation
    confidences: List[float]          # parallel to ``pieces``
    perspective: str                  # detected before any flip
    was_flipped: bool
    avg_confidence: float
    source: str                       # "model" | "heuristic"


# ── Preprocessing ──────────────────────────────────────────────────────

def overlay_mask(rgba: np.ndarray, options: ClassifierOptions) -> np.ndarray:
    """Boolean mask of pixels that look like UI overlay colours."""
    rgb = rgba[..., :3].astype(np.float32) / 255.0
    hsv = cv2.cvtColor(rgb, cv2.COLOR_RGB2HSV)     # float input: H∈[0,360), S,V∈[0,1]
    hue, sat, val = hsv[..., 0], hsv[..., 1], hsv[..., 2]
    chroma = sat * val

    in_band = np.zeros(hue.shape, dtype=bool)
    for lo, hi in OVERLAY_HUE_BANDS:
        in_band |= (hue >= lo) & (hue <= hi)

    return (
        in_band
        & (chroma >= options.overlay_min_chroma)
        & (val >= options.overlay_min_value)
        & (sat >= options.overlay_min_saturation)
    )


def overlay_safe_luminance(rgba: np.ndarray, options: ClassifierOptions) -> np.ndarray:
    """Grayscale in [0, 1] with overlay pixels replaced by their clean neighbours."""
    luma = cv2.cvtColor(np.ascontiguousarray(rgba), cv2.COLOR_RGBA2GRAY).astype(np.float32) / 255.0
    overlay = overlay_mask(rgba, options)
    if not overlay.any():
        return luma

    clean = (~overlay).astype(np.float32)
    neighbour_sum = cv2.filter2D(
        luma * clean, -1, _NEIGHBOUR_KERNEL, borderType=cv2.BORDER_CONSTANT,
    )
    neighbour_count = cv2.filter2D(
        clean, -1, _NEIGHBOUR_KERNEL, borderType=cv2.BORDER_CONSTANT,
    )

    # Fully surrounded by overlay → keep the pixel's own luminance
    replaced = np.where(
        neighbour_count > 0.5,
        neighbour_sum / np.maximum(neighbour_count, 1.0),
        luma,
    )
    return np.where(overlay, replaced, luma).astype(np.float32)


def board_to_tiles(rgba: np.ndarray, options: ClassifierOptions) -> np.ndarray:
    """Split a board image into ``(64, T, T)`` tiles, rank 8 first, file a first."""
    if rgba.ndim != 3 or rgba.shape[2] != 4 or rgba.shape[0] == 0 or rgba.shape[1] == 0:
        raise ValueError(f"Expected a non-empty (H, W, 4) board image, got {rgba.shape}")

    t = options.tile_size
    luma = overlay_safe_luminance(rgba, options)
    grid = cv2.resize(luma, (8 * t, 8 * t), interpolation=cv2.INTER_AREA)
    return grid.reshape(8, t, 8, t).transpose(0, 2, 1, 3).reshape(64, t, t)


# ── Scoring ────────────────────────────────────────────────────────────

def scores_to_pieces(scores: np.ndarray) -> Tuple[List[str], List[float]]:
    """Arg-max labels and confidences from a ``(64, 13)`` score matrix.

    Confidence is the larger of the softmax probability of the winner and
    ``sigmoid(top − runner_up)``.
    """
    scores = np.asarray(scores, dtype=np.float64)
    best = np.argmax(scores, axis=1)
    ordered = np.sort(scores, axis=1)
    top, second = ordered[:, -1], ordered[:, -2]

    exp_sum = np.exp(scores - top[:, None]).sum(axis=1)
    top_prob = 1.0 / exp_sum
    margin = 1.0 / (1.0 + np.exp(-(top - second)))
    confidences = np.maximum(top_prob, margin)

    pieces = [PIECE_LABELS[int(i)] for i in best]
    return pieces, [float(c) for c in confidences]


class OccupancyHeuristic:
    """Deterministic labelling from per-tile luminance variance.

    Occupied tiles are guessed from the starting position of their rank;
    the confidences are deliberately low so temporal smoothing prefers
    earlier, better evidence.
    """

    def __init__(self, threshold: float = 0.08) -> None:
        self.threshold = threshold

    def label(self, occupancy: np.ndarray) -> Tuple[List[str], List[float]]:
        pieces = [EMPTY] * 64
        confidences = [0.0] * 64

        for index, value in enumerate(occupancy):
            rank, file = divmod(index, 8)
            value = float(value)

            if value < self.threshold:
                confidences[index] = max(0.2, 1.0 - value / self.threshold)
                continue

            if rank == 0:
                pieces[index], confidences[index] = BACK_RANK_BLACK[file], 0.8
            elif rank == 1:
                pieces[index], confidences[index] = "p", 0.75
            elif rank == 6:
                pieces[index], confidences[index] = "P", 0.75
            elif rank == 7:
                pieces[index], confidences[index] = BACK_RANK_WHITE[file], 0.8
            else:
                pieces[index], confidences[index] = "P", 0.45

        return pieces, confidences


# ── Classifier ─────────────────────────────────────────────────────────

class SquareClassifier:
    """Board image → 64 labels, confidences and FEN.

    Parameters
    ----------
    backend_loader : callable, optional
        Zero-argument factory returning an ``InferenceBackend`` (or ``None``).
        Called lazily, at most once until ``dispose``.
    options : ClassifierOptions, optional
        Tiling, overlay and heuristic knobs.
    """

    def __init__(
        self,
        backend_loader: Optional[BackendLoader] = None,
        options: Optional[ClassifierOptions] = None,
    ) -> None:
        self.options = options or ClassifierOptions()
        self.heuristic = OccupancyHeuristic(self.options.occupancy_threshold)
        self._backend_loader = backend_loader
        self._backend_future: Optional[Future] = None
        self._lock = threading.Lock()

    # ── Backend lifecycle ──────────────────────────────────────────────

    def ensure_backend(self) -> Optional[InferenceBackend]:
        """Initialise the backend once; concurrent callers share the same load."""
        if self.options.force_heuristic or self._backend_loader is None:
            return None

        with self._lock:
            owner = self._backend_future is None
            if owner:
                self._backend_future = Future()
            future = self._backend_future

        if owner:
            try:
                backend = self._backend_loader()
            except Exception as exc:
                log.warning("Failed to load inference backend, using heuristic: %s", exc)
                backend = None
            future.set_result(backend)

        return future.result()

    def dispose(self) -> None:
        """Release the backend; the next ``classify`` loads it again."""
        with self._lock:
            future, self._backend_future = self._backend_future, None

        if future is None:
            return
        backend = future.result()
        if backend is None:
            return
        try:
            backend.close()
        except Exception as exc:
            log.warning("Failed to release inference backend: %s", exc)

    # ── Public API ─────────────────────────────────────────────────────

    def classify(self, board_image: np.ndarray, force_flip: bool = False) -> ClassificationResult:
        """Classify an RGBA board crop.

        Parameters
        ----------
        board_image : np.ndarray
            ``(H, W, 4)`` uint8 RGBA crop of the board.
        force_flip : bool
            Rotate the result 180° regardless of detected perspective.
        """
        tiles = board_to_tiles(board_image, self.options)
        occupancy = tiles.reshape(64, -1).var(axis=1)

        inferred = self._run_model(tiles)
        if inferred is not None:
            pieces, confidences = inferred
            source = "model"
        else:
            pieces, confidences = self.heuristic.label(occupancy)
            source = "heuristic"

        perspective = detect_board_perspective(pieces)
        should_flip = force_flip or perspective == BLACK_BOTTOM
        if should_flip:
            pieces = rotate_pieces_180(pieces)
            confidences = rotate_pieces_180(confidences)

        return ClassificationResult(
            fen=pieces_to_fen(pieces),
            pieces=pieces,
            confidences=confidences,
            perspective=perspective,
            was_flipped=should_flip,
            avg_confidence=sum(confidences) / len(confidences),
            source=source,
        )

    def _run_model(self, tiles: np.ndarray) -> Optional[Tuple[List[str], List[float]]]:
        backend = self.ensure_backend()
        if backend is None:
            return None

        batch = tiles[:, None, :, :].astype(np.float32)      # (64, 1, T, T)
        try:
            scores = np.asarray(backend.run(batch))
            if scores.shape != (64, NUM_CLASSES):
                raise ModelOutputError(
                    f"Expected scores of shape (64, {NUM_CLASSES}), got {scores.shape}"
                )
        except Exception as exc:
            log.warning("Model inference failed, using heuristic fallback: %s", exc)
            return None

        return scores_to_pieces(scores)
