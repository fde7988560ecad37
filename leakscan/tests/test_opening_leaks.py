"""Tests for opening_leaks.py: full scans against mocked Lichess endpoints."""

import json
import sys
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import chess
import httpx
import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from cloud_eval import CLOUD_EVAL_TIMEOUT
from game_source import GAMES_TIMEOUT, PlayerNotFoundError
from models import AnalysisResult
from opening_leaks import analyze, clamp_int, main_async, resolve_options


def fen_after(*sans: str) -> str:
    board = chess.Board()
    for san in sans:
        board.push_san(san)
    return board.fen()


def lichess_game(moves: str, white: str, black: str) -> dict:
    return {
        "id": "x",
        "moves": moves,
        "players": {"white": {"user": {"name": white}}, "black": {"user": {"name": black}}},
    }


def mock_lichess(games_payload: str, cloud_scores: dict, games_status: int = 200):
    """Transport serving the games export and cloud-eval (White-relative cp per FEN)."""
    calls = {"games": 0, "cloud": []}

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.startswith("/api/games/user/"):
            calls["games"] += 1
            return httpx.Response(games_status, text=games_payload)
        if request.url.path == "/api/cloud-eval":
            fen = request.url.params["fen"]
            calls["cloud"].append(fen)
            if fen not in cloud_scores:
                return httpx.Response(404, json={"error": "Not found"})
            return httpx.Response(200, json={"fen": fen, "depth": 30,
                                             "pvs": [{"cp": cloud_scores[fen], "moves": "g8f6 e1g1"}]})
        return httpx.Response(500)

    return httpx.MockTransport(handler), calls


def alice_games() -> str:
    lines = ["e4 e5 Nf3 Nc6 Bb5 a6"] * 3 + ["e4 e5 Nf3 Nc6 Bb5 Nf6"]
    return "\n".join(json.dumps(lichess_game(m, "bob", "alice")) for m in lines)


@pytest.mark.asyncio
async def test_alice_repeats_a_losing_reply():
    """Four games, a6 three times and Nf6 once after Bb5; a6 drops 70cp for Alice."""
    bb5 = fen_after("e4", "e5", "Nf3", "Nc6", "Bb5")
    a6 = fen_after("e4", "e5", "Nf3", "Nc6", "Bb5", "a6")
    scores = {
        # Alice is Black, so +40 / -30 for her is -40 / +30 White-relative
        bb5: -40,
        a6: 30,
        fen_after("e4"): 30,
        fen_after("e4", "e5"): 30,
        fen_after("e4", "e5", "Nf3"): 25,
        fen_after("e4", "e5", "Nf3", "Nc6"): 25,
    }
    transport, calls = mock_lichess(alice_games(), scores)

    async with httpx.AsyncClient(transport=transport) as client:
        result = await analyze("alice", max_opening_moves=3, cp_loss_threshold=50, client=client)

    assert result.games_analyzed == 4
    assert result.repeated_positions == 3
    assert len(result.leaks) == 1
    leak = result.leaks[0]
    assert leak.cp_loss == 70
    assert leak.reach_count == 4
    assert leak.user_move == "a6"
    assert leak.move_count == 3
    assert leak.fen_before == bb5
    assert leak.best_move == "g8f6"
    assert leak.tags == ("Repeated Habit",)
    # every FEN is requested once even though positions share neighbours
    assert len(calls["cloud"]) == len(set(calls["cloud"]))


@pytest.mark.asyncio
async def test_empty_wrapped_payload_is_not_an_error():
    transport, calls = mock_lichess('{"games": []}', {})
    async with httpx.AsyncClient(transport=transport) as client:
        result = await analyze("alice", client=client)

    assert result.games_analyzed == 0
    assert result.repeated_positions == 0
    assert result.leaks == []
    assert calls["cloud"] == []


@pytest.mark.asyncio
async def test_positions_without_cloud_eval_are_dropped():
    transport, _ = mock_lichess(alice_games(), {})
    async with httpx.AsyncClient(transport=transport) as client:
        result = await analyze("alice", max_opening_moves=3, cp_loss_threshold=1, client=client, diagnostics=True)

    assert result.repeated_positions == 3
    assert result.leaks == []
    assert {t.skipped_reason for t in result.position_traces} == {"missing_eval"}
    assert len(result.game_traces) == 4


@pytest.mark.asyncio
async def test_unknown_player_propagates():
    transport, _ = mock_lichess("", {}, games_status=404)
    async with httpx.AsyncClient(transport=transport) as client:
        with pytest.raises(PlayerNotFoundError):
            await analyze("ghost", client=client)


@pytest.mark.asyncio
async def test_opening_length_is_measured_in_full_moves():
    transport, calls = mock_lichess(alice_games(), {})
    async with httpx.AsyncClient(transport=transport) as client:
        result = await analyze("alice", max_opening_moves=1, client=client)
    # one full move: only the position after 1.e4 is Alice's
    assert result.repeated_positions == 1


def test_clamp_int():
    assert clamp_int(None, 100, 1, 1000) == 100
    assert clamp_int("12", 100, 1, 1000) == 100
    assert clamp_int(float("nan"), 100, 1, 1000) == 100
    assert clamp_int(5000, 100, 1, 1000) == 1000
    assert clamp_int(0, 100, 1, 1000) == 1
    assert clamp_int(-3, 100, 1, 1000) == 1
    assert clamp_int(12.9, 100, 1, 1000) == 12


def test_resolve_options_defaults_and_bounds():
    assert resolve_options(None, None, None) == (100, 12, 100)
    assert resolve_options(10_000, 99, 0) == (1000, 30, 1)


@pytest.mark.asyncio
async def test_cli_prints_json(capsys):
    fake = AsyncMock(return_value=AnalysisResult(username="alice", games_analyzed=2))
    with patch("opening_leaks.analyze", fake):
        code = await main_async(["alice", "--json", "--max-games", "20"])

    assert code == 0
    out = json.loads(capsys.readouterr().out)
    assert out["gamesAnalyzed"] == 2
    assert fake.await_args.args[:2] == ("alice", 20)


@pytest.mark.asyncio
async def test_cli_exit_code_for_unknown_player(capsys):
    with patch("opening_leaks.analyze", AsyncMock(side_effect=PlayerNotFoundError("ghost"))):
        code = await main_async(["ghost"])
    assert code == 1
    assert "ghost" in capsys.readouterr().err


@pytest.mark.asyncio
async def test_own_client_outlasts_per_attempt_limits():
    transport, calls = mock_lichess('{"games": []}', {})
    real_client = httpx.AsyncClient
    made = []

    def make_client(**kwargs):
        client = real_client(transport=transport, **kwargs)
        made.append(client)
        return client

    with patch("httpx.AsyncClient", side_effect=make_client):
        await analyze("alice")

    assert calls["games"] == 1
    limit = max(GAMES_TIMEOUT, CLOUD_EVAL_TIMEOUT)
    timeout = made[0].timeout
    for value in (timeout.connect, timeout.read, timeout.write, timeout.pool):
        assert value is None or value >= limit


@pytest.mark.asyncio
async def test_result_carries_the_clamped_options():
    transport, _ = mock_lichess('{"games": []}', {})
    async with httpx.AsyncClient(transport=transport) as client:
        result = await analyze("alice", 5000, "twelve", 75.9, client=client)

    assert result.options() == {"max_games": 1000, "max_moves": 12, "cp_threshold": 75}


@pytest.mark.asyncio
async def test_cli_save_stores_the_options_the_scan_used(capsys):
    ran = AnalysisResult(username="alice", max_games=1000, max_opening_moves=30, cp_loss_threshold=1)
    conn = MagicMock()
    conn.__enter__ = MagicMock(return_value=conn)
    conn.__exit__ = MagicMock(return_value=False)

    with patch("opening_leaks.analyze", AsyncMock(return_value=ran)), \
         patch("db.get_connection", return_value=conn), \
         patch("db.ensure_schema"), \
         patch("db.save_report", return_value=("r1", True)) as save:
        code = await main_async(["alice", "--save", "--max-games", "9999", "--max-moves", "99", "--threshold", "0"])

    assert code == 0
    assert save.call_args.args[2] == {"max_games": 1000, "max_moves": 30, "cp_threshold": 1}
    assert "Saved report r1" in capsys.readouterr().err
