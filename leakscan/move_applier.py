"""
Move application on FEN positions.

Accepts UCI coordinate tokens (e2e4, e7e8q) and SAN tokens (Nf3, exd5, O-O).
Bad input is an expected outcome: truncated move lists and export quirks
resolve to Rejected instead of raising.
"""

import re
from dataclasses import dataclass

import chess

from models import PlayerColor

UCI_MOVE_RE = re.compile(r"^[a-h][1-8][a-h][1-8][qrbn]?$")


@dataclass(frozen=True)
class Applied:
    fen: str


@dataclass(frozen=True)
class Rejected:
    token: str
    reason: str


def is_uci_move(token: str) -> bool:
    return bool(UCI_MOVE_RE.match(token))


def parse_move_token(board: chess.Board, token: str) -> chess.Move:
    """Parse a UCI or SAN token against board. Raises ValueError if not legal."""
    if is_uci_move(token):
        move = board.parse_uci(token)
    else:
        move = board.parse_san(token)
    if not move:
        # parse_san accepts "--" as a null move
        raise chess.IllegalMoveError(f"null move: {token!r}")
    return move


def apply_move(fen: str, token: str) -> Applied | Rejected:
    """Apply token to the position fen. The input position is left untouched."""
    try:
        board = chess.Board(fen)
    except ValueError as e:
        return Rejected(token, f"invalid fen: {e}")
    try:
        move = parse_move_token(board, token)
    except ValueError as e:
        # InvalidMoveError, IllegalMoveError and AmbiguousMoveError are ValueErrors
        return Rejected(token, str(e) or type(e).__name__)
    board.push(move)
    return Applied(board.fen())


def side_to_move(fen: str) -> PlayerColor:
    """Side to move encoded in a FEN string."""
    fields = fen.split()
    return "black" if len(fields) > 1 and fields[1] == "b" else "white"
