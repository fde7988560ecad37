"""
Opening position aggregation.

Replays the opening plies of every game and, each time the target player is
on move, counts the position reached and the move they played there.
"""

import logging
from collections import defaultdict
from typing import Iterable

import chess

from models import AggregatedPosition, GameRecord, GameTrace, PlayerColor, PositionStats
from move_applier import Applied, apply_move

logger = logging.getLogger(__name__)

MIN_POSITION_REPEATS = 3


def normalize_name(name: str) -> str:
    return name.strip().lower()


def color_for_user(game: GameRecord, username: str) -> PlayerColor | None:
    """Which side username played in game, or None if neither."""
    target = normalize_name(username)
    if game.white_name and normalize_name(game.white_name) == target:
        return "white"
    if game.black_name and normalize_name(game.black_name) == target:
        return "black"
    return None


def aggregate_positions(
    games: Iterable[GameRecord],
    username: str,
    max_plies: int,
    game_traces: list[GameTrace] | None = None,
) -> tuple[dict[str, PositionStats], int]:
    """
    Count pre-move positions and chosen moves for username across games.

    Returns (stats keyed by FEN, number of games the player took part in).
    Replay of a game stops at the first token that cannot be applied.
    """
    by_fen: dict[str, PositionStats] = defaultdict(PositionStats)
    games_analyzed = 0

    for game_index, game in enumerate(games):
        if not game.moves:
            continue
        user_color = color_for_user(game, username)
        if user_color is None:
            continue
        games_analyzed += 1

        fen = chess.STARTING_FEN
        replayed = []
        for ply, token in enumerate(game.moves[:max_plies]):
            mover = "white" if ply % 2 == 0 else "black"
            if mover == user_color:
                by_fen[fen].record(token)

            result = apply_move(fen, token)
            if not isinstance(result, Applied):
                logger.debug(
                    "Game %s: stopping replay at ply %d (%s)",
                    game.game_id or game_index, ply, result.reason,
                )
                break
            fen = result.fen
            replayed.append(token)

        if game_traces is not None:
            game_traces.append(GameTrace(game_index, user_color, tuple(replayed)))

    return dict(by_fen), games_analyzed


def choose_move(move_counts: dict[str, int]) -> tuple[str, int]:
    """Most frequent move; ties go to the lexicographically smallest token."""
    move, count = min(move_counts.items(), key=lambda item: (-item[1], item[0]))
    return move, count


def select_repeated(
    stats: dict[str, PositionStats], min_repeats: int = MIN_POSITION_REPEATS
) -> list[AggregatedPosition]:
    """Freeze the positions reached at least min_repeats times."""
    repeated = []
    for fen, data in stats.items():
        if data.reach_count < min_repeats or not data.move_counts:
            continue
        chosen_move, chosen_count = choose_move(data.move_counts)
        repeated.append(
            AggregatedPosition(
                fen_before=fen,
                total_reach_count=data.reach_count,
                move_counts=data.move_counts,
                chosen_move=chosen_move,
                chosen_move_count=chosen_count,
            )
        )
    return repeated
