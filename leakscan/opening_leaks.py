#!/usr/bin/env python3
"""
Opening Leak Scan

Downloads a player's recent Lichess games, finds the opening positions they
keep reaching, and reports the habitual moves the cloud evaluation says lose
more than a centipawn threshold.

Usage:
  python opening_leaks.py DrNykterstein --max-games 200 --max-moves 10
  python opening_leaks.py alice --threshold 60 --json --diagnostics
  LICHESS_TOKEN=xxx python opening_leaks.py alice --save
"""

import argparse
import asyncio
import json
import logging
import math
import sys
from pathlib import Path

import httpx

sys.path.insert(0, str(Path(__file__).resolve().parent))
from cloud_eval import CloudEvalClient, EvalCache
from game_source import PlayerNotFoundError, fetch_recent_games
from http_retry import FetchError
from leak_classifier import CP_LOSS_THRESHOLD, classify_positions
from models import AnalysisResult, GameTrace, PositionTrace
from position_aggregator import MIN_POSITION_REPEATS, aggregate_positions, select_repeated

DEFAULT_MAX_GAMES = 100
DEFAULT_MAX_OPENING_MOVES = 12
MAX_GAMES_RANGE = (1, 1000)
OPENING_MOVES_RANGE = (1, 30)
THRESHOLD_RANGE = (1, 1000)
# transport ceiling; the per-attempt asyncio.wait_for limits (12-15s) are the real cap
CLIENT_TIMEOUT = 30.0


def clamp_int(value, fallback: int, lo: int, hi: int) -> int:
    """Floor value into [lo, hi]; anything non-numeric falls back to fallback."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return fallback
    if math.isnan(value):
        return fallback
    if math.isinf(value):
        return hi if value > 0 else lo
    return min(hi, max(lo, math.floor(value)))


def resolve_options(max_games, max_opening_moves, cp_loss_threshold) -> tuple[int, int, int]:
    """Clamped (max_games, max_opening_moves, cp_loss_threshold)."""
    return (
        clamp_int(max_games, DEFAULT_MAX_GAMES, *MAX_GAMES_RANGE),
        clamp_int(max_opening_moves, DEFAULT_MAX_OPENING_MOVES, *OPENING_MOVES_RANGE),
        clamp_int(cp_loss_threshold, CP_LOSS_THRESHOLD, *THRESHOLD_RANGE),
    )


async def analyze(
    username: str,
    max_games=None,
    max_opening_moves=None,
    cp_loss_threshold=None,
    *,
    client: httpx.AsyncClient | None = None,
    token: str | None = None,
    diagnostics: bool = False,
) -> AnalysisResult:
    """
    Full leak scan for one player.

    Options are clamped to safe bounds rather than rejected. Raises
    PlayerNotFoundError for unknown players and FetchError when the game
    history cannot be downloaded.
    """
    max_games, max_opening_moves, threshold = resolve_options(max_games, max_opening_moves, cp_loss_threshold)

    if client is None:
        async with httpx.AsyncClient(timeout=CLIENT_TIMEOUT) as own_client:
            return await analyze(
                username, max_games, max_opening_moves, threshold,
                client=own_client, token=token, diagnostics=diagnostics,
            )

    games = await fetch_recent_games(client, username, max_games, token)

    game_traces: list[GameTrace] | None = [] if diagnostics else None
    position_traces: list[PositionTrace] | None = [] if diagnostics else None

    stats, games_analyzed = aggregate_positions(games, username, max_opening_moves * 2, game_traces)
    repeated = select_repeated(stats, MIN_POSITION_REPEATS)

    evaluator = CloudEvalClient(client, EvalCache())
    leaks = await classify_positions(
        repeated, evaluator, threshold, MIN_POSITION_REPEATS, position_traces
    )

    return AnalysisResult(
        username=username,
        games_analyzed=games_analyzed,
        repeated_positions=len(repeated),
        leaks=leaks,
        max_games=max_games,
        max_opening_moves=max_opening_moves,
        cp_loss_threshold=threshold,
        game_traces=game_traces,
        position_traces=position_traces,
    )


def format_eval(cp: int) -> str:
    if abs(cp) >= 90_000:
        return "#" if cp > 0 else "-#"
    return f"{cp / 100:+.2f}"


def print_report(result: AnalysisResult) -> None:
    print(f"{result.username}: {result.games_analyzed} games, "
          f"{result.repeated_positions} repeated positions, {len(result.leaks)} leaks")
    for leak in result.leaks:
        best = leak.best_move or "?"
        print(
            f"  {leak.cp_loss:6d} cp | played {leak.user_move} {leak.move_count}/{leak.reach_count}x "
            f"| best {best} | {format_eval(leak.eval_before)} -> {format_eval(leak.eval_after)} "
            f"| {leak.fen_before}"
        )


async def main_async(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Find repeated opening mistakes in Lichess games")
    parser.add_argument("username")
    parser.add_argument("--max-games", type=int, default=DEFAULT_MAX_GAMES)
    parser.add_argument("--max-moves", type=int, default=DEFAULT_MAX_OPENING_MOVES,
                        help="Opening length in full moves")
    parser.add_argument("--threshold", type=int, default=CP_LOSS_THRESHOLD, help="Centipawn loss threshold")
    parser.add_argument("--json", action="store_true", help="Print the result as JSON")
    parser.add_argument("--diagnostics", action="store_true", help="Include per-game and per-position traces")
    parser.add_argument("--save", action="store_true", help="Store the report in the database")
    parser.add_argument("--verbose", action="store_true")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING, stream=sys.stderr)

    try:
        result = await analyze(
            args.username, args.max_games, args.max_moves, args.threshold,
            diagnostics=args.diagnostics,
        )
    except PlayerNotFoundError as e:
        print(str(e), file=sys.stderr)
        return 1
    except FetchError as e:
        print(f"Could not download games: {e}", file=sys.stderr)
        return 2

    if args.json:
        print(json.dumps(result.to_dict(), indent=2))
    else:
        print_report(result)

    if args.save:
        from db import ensure_schema, get_connection, save_report

        with get_connection() as conn:
            ensure_schema(conn)
            report_id, created = save_report(conn, result, result.options())
        status = "Saved" if created else "Already stored"
        print(f"{status} report {report_id}.", file=sys.stderr)
    return 0


def main():
    sys.exit(asyncio.run(main_async()))


if __name__ == "__main__":
    main()
