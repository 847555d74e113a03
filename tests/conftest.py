"""Shared fixtures: synthetic boards, frames and fake collaborators."""

from typing import List, Optional

import cv2
import numpy as np
import pytest

from chess_stream.capture import Frame
from chess_stream.inference.fen_utils import fen_to_pieces
from chess_stream.models.classifier import NUM_CLASSES, PIECE_LABELS

START_BOARD = "rnbqkbnr/pppppppp/8/8/8/8/PPPPPPPP/RNBQKBNR"
START_FEN = f"{START_BOARD} w - - 0 1"

LIGHT = 200
DARK = 150
BACKGROUND = 30


def render_board(pieces: List[str], side: int = 256) -> np.ndarray:
    """Draw an RGBA grayscale board with ring-shaped pieces.

    White pieces are a white ring around a black core, black pieces the
    inverse; both give a tile luminance variance well above 0.08.
    """
    cell = side // 8
    board = np.zeros((side, side, 4), dtype=np.uint8)
    board[..., 3] = 255

    for index, piece in enumerate(pieces):
        rank, file = divmod(index, 8)
        y0, x0 = rank * cell, file * cell
        shade = LIGHT if (rank + file) % 2 == 0 else DARK
        board[y0:y0 + cell, x0:x0 + cell, :3] = shade

        if piece == "1":
            continue
        outer, inner = (255, 0) if piece.isupper() else (0, 255)
        centre = (x0 + cell // 2, y0 + cell // 2)
        cv2.circle(board, centre, int(cell * 0.45), (outer, outer, outer, 255), -1)
        cv2.circle(board, centre, int(cell * 0.28), (inner, inner, inner, 255), -1)

    return board


def one_hot_scores(pieces: List[str], confidence_logit: float = 10.0) -> np.ndarray:
    scores = np.zeros((64, NUM_CLASSES), dtype=np.float32)
    for index, piece in enumerate(pieces):
        scores[index, PIECE_LABELS.index(piece)] = confidence_logit
    return scores


class FakeBackend:
    """Inference backend returning pre-baked scores."""

    def __init__(self, scores: Optional[np.ndarray] = None, error: Optional[Exception] = None):
        self.scores = scores
        self.error = error
        self.calls = 0
        self.batch_shapes = []
        self.closed = False

    def run(self, batch: np.ndarray) -> np.ndarray:
        self.calls += 1
        self.batch_shapes.append(batch.shape)
        if self.error is not None:
            raise self.error
        return self.scores

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def start_pieces():
    return fen_to_pieces(START_FEN)


@pytest.fixture
def start_board(start_pieces):
    return render_board(start_pieces)


@pytest.fixture
def board_frame(start_board):
    """640×480 frame with the start position drawn at (200, 120)."""
    pixels = np.full((480, 640, 4), BACKGROUND, dtype=np.uint8)
    pixels[..., 3] = 255
    pixels[120:376, 200:456] = start_board
    return Frame(pixels=pixels, timestamp=0.0)
