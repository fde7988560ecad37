"""
Leak classification for repeated opening positions.

A repeated position is a leak when the player's habitual move drops the
oracle's evaluation, from the mover's point of view, by more than the
centipawn threshold.
"""

import asyncio
import logging
from dataclasses import replace
from typing import Iterable, Protocol

import chess

from cloud_eval import score_to_cp
from models import AggregatedPosition, CloudEval, LeakRecord, PositionTrace
from move_applier import Applied, apply_move, parse_move_token, side_to_move
from position_aggregator import MIN_POSITION_REPEATS

logger = logging.getLogger(__name__)

CP_LOSS_THRESHOLD = 100
MAJOR_BLUNDER_CP = 250
TACTICAL_MISS_CP = 150
HABIT_RATIO = 0.7
MAX_TAGS = 3
CENTER_SQUARES = frozenset([chess.D4, chess.E4, chess.D5, chess.E5])


class Evaluator(Protocol):
    async def evaluate(self, fen: str) -> CloudEval | None: ...


def is_leak(cp_loss: int, threshold_cp: int) -> bool:
    """Strictly above the threshold; equal loss is not a leak."""
    return cp_loss > threshold_cp


def _resolve_move(board: chess.Board, token: str | None) -> chess.Move | None:
    if not token:
        return None
    try:
        return parse_move_token(board, token)
    except ValueError:
        return None


def derive_leak_tags(
    fen_before: str,
    user_move: str,
    best_move: str | None,
    cp_loss: int,
    reach_count: int,
    move_count: int,
) -> tuple[str, ...]:
    """
    Short labels describing what kind of mistake a leak is.

    Move-shape labels compare the oracle's move with the played one.
    At most MAX_TAGS labels; "Inaccuracy" when nothing else fits.
    """
    tags = []

    def add(tag):
        if tag not in tags:
            tags.append(tag)

    if cp_loss >= MAJOR_BLUNDER_CP:
        add("Major Blunder")
    elif cp_loss >= TACTICAL_MISS_CP:
        add("Tactical Miss")

    if reach_count > 0 and move_count / reach_count >= HABIT_RATIO:
        add("Repeated Habit")

    board = chess.Board(fen_before)
    user = _resolve_move(board, user_move)
    best = _resolve_move(board, best_move)
    user_san = board.san(user) if user else ""
    best_san = board.san(best) if best else ""

    if "O-O" in best_san and "O-O" not in user_san:
        add("King Safety")
    if "+" in best_san and "+" not in user_san:
        add("Missed Check")
    if "x" in best_san and "x" not in user_san:
        add("Missed Capture")
    if user and best and best.to_square in CENTER_SQUARES and user.to_square not in CENTER_SQUARES:
        add("Center Control")

    if user and board.fullmove_number <= 10 and not board.is_castling(user):
        piece = board.piece_at(user.from_square)
        if piece and piece.piece_type in (chess.QUEEN, chess.KING):
            add("Opening Development")

    if not tags:
        add("Inaccuracy")
    return tuple(tags[:MAX_TAGS])


async def classify_position(
    position: AggregatedPosition,
    evaluator: Evaluator,
    threshold_cp: int,
    min_repeats: int = MIN_POSITION_REPEATS,
) -> tuple[LeakRecord | None, PositionTrace]:
    """Classify one aggregated position. Returns (leak or None, trace)."""
    trace = PositionTrace(
        fen_before=position.fen_before,
        user_move=position.chosen_move,
        reach_count=position.total_reach_count,
        move_count=position.chosen_move_count,
    )
    if position.total_reach_count < min_repeats:
        return None, replace(trace, skipped_reason="below_floor")

    applied = apply_move(position.fen_before, position.chosen_move)
    if not isinstance(applied, Applied):
        logger.debug("Cannot replay %s in %s: %s", position.chosen_move, position.fen_before, applied.reason)
        return None, replace(trace, skipped_reason="invalid_move")
    fen_after = applied.fen

    before = await evaluator.evaluate(position.fen_before)
    after = await evaluator.evaluate(fen_after) if before is not None else None
    if before is None or after is None or before.top_line is None or after.top_line is None:
        return None, replace(trace, skipped_reason="missing_eval", best_move=before.best_move if before else None)

    side = side_to_move(position.fen_before)
    eval_before = score_to_cp(before.top_line, side)
    eval_after = score_to_cp(after.top_line, side)
    cp_loss = eval_before - eval_after
    flagged = is_leak(cp_loss, threshold_cp)
    trace = replace(
        trace,
        best_move=before.best_move,
        eval_before=eval_before,
        eval_after=eval_after,
        cp_loss=cp_loss,
        flagged=flagged,
    )
    if not flagged:
        return None, trace

    leak = LeakRecord(
        fen_before=position.fen_before,
        fen_after=fen_after,
        user_move=position.chosen_move,
        best_move=before.best_move,
        reach_count=position.total_reach_count,
        move_count=position.chosen_move_count,
        cp_loss=cp_loss,
        eval_before=eval_before,
        eval_after=eval_after,
        side_to_move=side,
        tags=derive_leak_tags(
            position.fen_before, position.chosen_move, before.best_move,
            cp_loss, position.total_reach_count, position.chosen_move_count,
        ),
    )
    return leak, trace


def sort_leaks(leaks: Iterable[LeakRecord]) -> list[LeakRecord]:
    """Worst first. sorted() is stable, so equal losses keep their input order."""
    return sorted(leaks, key=lambda leak: -leak.cp_loss)


async def classify_positions(
    positions: Iterable[AggregatedPosition],
    evaluator: Evaluator,
    threshold_cp: int = CP_LOSS_THRESHOLD,
    min_repeats: int = MIN_POSITION_REPEATS,
    position_traces: list[PositionTrace] | None = None,
) -> list[LeakRecord]:
    """Classify every position concurrently and return leaks sorted by cp loss."""
    positions = list(positions)
    results = await asyncio.gather(
        *(classify_position(p, evaluator, threshold_cp, min_repeats) for p in positions)
    )

    leaks = []
    for leak, trace in results:
        if position_traces is not None:
            position_traces.append(trace)
        if leak is not None:
            leaks.append(leak)

    logger.info("%d of %d repeated positions are leaks", len(leaks), len(positions))
    return sort_leaks(leaks)
