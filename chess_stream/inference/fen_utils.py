"""
FEN Utilities – Assembly, Parsing & Orientation
================================================

Responsibilities:
  1. Convert a 64-element label list into a FEN string and back.
  2. Rotate a board 180° and guess which side sits at the bottom of the
     captured image.
  3. Validate the board part against basic legality rules (diagnostics
     only; the live pipeline never rewrites what it saw).

Label lists are rank-major from the top of the internal orientation
(index 0 = a8, index 63 = h1); an empty square is ``"1"``.
"""

from __future__ import annotations

import re
from typing import List, Sequence, Tuple

from chess_stream.models.classifier import EMPTY

PIECE_CHARS = frozenset("PNBRQKpnbrqk")

# Side-to-move / castling / en-passant / clocks are not observable from a
# board image, so every emitted FEN carries the same defaults.
FEN_SUFFIX = "w - - 0 1"

WHITE_BOTTOM = "white-bottom"
BLACK_BOTTOM = "black-bottom"

_DIGIT = re.compile(r"\d")


# ── FEN construction / parsing ─────────────────────────────────────────

def pieces_to_fen(pieces: Sequence[str]) -> str:
    """Run-length encode 64 labels into ``"<board> w - - 0 1"``."""
    if len(pieces) != 64:
        raise ValueError(f"Expected 64 squares, got {len(pieces)}")

    rows: List[str] = []
    for rank_start in range(0, 64, 8):
        row_chars: List[str] = []
        empty_count = 0

        for piece in pieces[rank_start:rank_start + 8]:
            if piece not in PIECE_CHARS:
                empty_count += 1
                continue
            if empty_count > 0:
                row_chars.append(str(empty_count))
                empty_count = 0
            row_chars.append(piece)

        if empty_count > 0:
            row_chars.append(str(empty_count))

        rows.append("".join(row_chars))

    return f"{'/'.join(rows)} {FEN_SUFFIX}"


def board_part(fen: str) -> str:
    """First space-delimited field of a FEN string."""
    parts = fen.strip().split()
    return parts[0] if parts else ""


def fen_to_pieces(fen: str) -> List[str]:
    """Decode a FEN (or its board part) into 64 labels.

    Ranks are validated: anything other than 8 ranks yields an empty board,
    unknown characters are skipped and overflowing squares are dropped.
    """
    pieces = [EMPTY] * 64
    ranks = board_part(fen).split("/")
    if len(ranks) != 8:
        return pieces

    for rank, row in enumerate(ranks):
        file = 0
        for token in row:
            if token in "12345678":
                file += int(token)
                continue
            if token not in PIECE_CHARS or file > 7:
                continue
            pieces[rank * 8 + file] = token
            file += 1

    return pieces


def expand_board(fen: str) -> str:
    """Flat 64-character board: digits become that many ``'.'``, ``'/'`` removed."""
    expanded = _DIGIT.sub(lambda m: "." * int(m.group()), board_part(fen))
    return expanded.replace("/", "")


# ── Orientation ────────────────────────────────────────────────────────

def rotate_pieces_180(values: Sequence) -> list:
    """Reflect rank and file simultaneously (works for labels and confidences)."""
    if len(values) != 64:
        raise ValueError(f"Expected 64 squares, got {len(values)}")
    return list(reversed(values))


def detect_board_perspective(pieces: Sequence[str]) -> str:
    """Guess which side's pieces sit at the bottom of the image.

    Pieces are weighted by their distance from the centre:
    ``max(0, 4 − rank)`` towards the top, ``max(0, rank − 3)`` towards the
    bottom.  White material near the bottom (or black near the top) votes
    for white-bottom; the mirror image votes for black-bottom.
    """
    white_bottom = 0
    black_bottom = 0

    for index, piece in enumerate(pieces):
        if piece not in PIECE_CHARS:
            continue
        rank = index // 8
        lean = max(0, rank - 3) - max(0, 4 - rank)   # > 0 → bottom half
        if piece.isupper():
            white_bottom += lean
            black_bottom -= lean
        else:
            white_bottom -= lean
            black_bottom += lean

    return BLACK_BOTTOM if black_bottom > white_bottom else WHITE_BOTTOM


# ── Validation ─────────────────────────────────────────────────────────

def validate_fen(fen: str) -> Tuple[bool, List[str]]:
    """Check basic legality of a FEN board.

    Returns ``(is_valid, list_of_violation_strings)``.
    """
    violations: List[str] = []
    rows = board_part(fen).split("/")

    if len(rows) != 8:
        violations.append(f"Expected 8 ranks, got {len(rows)}")
        return False, violations

    for rank_idx, row in enumerate(rows):
        squares = sum(int(ch) if ch.isdigit() else 1 for ch in row)
        if squares != 8:
            violations.append(
                f"Rank {8 - rank_idx} has {squares} squares (expected 8)"
            )

    all_pieces = [ch for ch in board_part(fen) if ch in PIECE_CHARS]

    # King counts
    wk = all_pieces.count("K")
    bk = all_pieces.count("k")
    if wk != 1:
        violations.append(f"White king count = {wk} (expected 1)")
    if bk != 1:
        violations.append(f"Black king count = {bk} (expected 1)")

    # Pawn counts
    wp = all_pieces.count("P")
    bp = all_pieces.count("p")
    if wp > 8:
        violations.append(f"White pawn count = {wp} (max 8)")
    if bp > 8:
        violations.append(f"Black pawn count = {bp} (max 8)")

    # Pawns on rank 1 or 8
    if any(ch in ("P", "p") for ch in rows[0] + rows[7]):
        violations.append("Pawn found on rank 1 or 8 (illegal)")

    return len(violations) == 0, violations
