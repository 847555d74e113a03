"""
Position change tracking.

Classifies each observed FEN relative to the previous one as *no change*,
*a move* or *a new game* (full reset / scene cut).
"""

from __future__ import annotations

from enum import Enum
from typing import Optional

from chess_stream.inference.fen_utils import board_part, expand_board

# More differing squares than this means a different game, not a move
NEW_GAME_THRESHOLD: int = 10


class ChangeKind(str, Enum):
    NO_CHANGE = "no-change"
    MOVE = "move"
    NEW_GAME = "new-game"


def count_differences(fen_a: str, fen_b: str) -> int:
    """Number of squares whose content differs between two FEN boards."""
    a = expand_board(fen_a).ljust(64, ".")
    b = expand_board(fen_b).ljust(64, ".")
    return sum(1 for i in range(64) if a[i] != b[i])


class PositionChangeTracker:
    """Remembers the last board and classifies the next one against it."""

    def __init__(self, new_game_threshold: int = NEW_GAME_THRESHOLD) -> None:
        self.new_game_threshold = new_game_threshold
        self._last_board: Optional[str] = None

    @property
    def last_fen(self) -> Optional[str]:
        return self._last_board

    def observe(self, fen: str) -> ChangeKind:
        board = board_part(fen)

        if self._last_board is None:
            self._last_board = board
            return ChangeKind.NEW_GAME

        if board == self._last_board:
            return ChangeKind.NO_CHANGE

        diff = count_differences(self._last_board, board)
        self._last_board = board

        if diff > self.new_game_threshold:
            return ChangeKind.NEW_GAME
        return ChangeKind.MOVE

    def reset(self) -> None:
        """Forget the last board (e.g. the video source changed)."""
        self._last_board = None
