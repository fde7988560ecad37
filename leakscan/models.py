"""Data models for the opening leak scanner."""

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Literal, Mapping

PlayerColor = Literal["white", "black"]
SkipReason = Literal["below_floor", "invalid_move", "missing_eval"]


@dataclass(frozen=True)
class GameRecord:
    """One played game as exported by the game-history source."""

    moves: tuple[str, ...] = ()
    white_name: str | None = None
    black_name: str | None = None
    game_id: str | None = None


@dataclass
class PositionStats:
    """Running counters for one FEN while games are replayed."""

    reach_count: int = 0
    move_counts: dict[str, int] = field(default_factory=dict)

    def record(self, move: str) -> None:
        self.reach_count += 1
        self.move_counts[move] = self.move_counts.get(move, 0) + 1


@dataclass(frozen=True)
class AggregatedPosition:
    """A position the player reached repeatedly, with the move they usually chose."""

    fen_before: str
    total_reach_count: int
    move_counts: Mapping[str, int]
    chosen_move: str
    chosen_move_count: int

    def __post_init__(self):
        # read-only snapshot, detached from the aggregator's counters
        object.__setattr__(self, "move_counts", MappingProxyType(dict(self.move_counts)))

    def to_dict(self) -> dict:
        return {
            "fenBefore": self.fen_before,
            "totalReachCount": self.total_reach_count,
            "moveCounts": dict(self.move_counts),
            "chosenMove": self.chosen_move,
            "chosenMoveCount": self.chosen_move_count,
        }


@dataclass(frozen=True)
class EvalLine:
    """One principal variation from the cloud evaluation. cp/mate are White-relative."""

    cp: int | None = None
    mate: int | None = None
    moves: str = ""


@dataclass(frozen=True)
class CloudEval:
    fen: str
    lines: tuple[EvalLine, ...]
    depth: int | None = None

    @property
    def top_line(self) -> EvalLine | None:
        return self.lines[0] if self.lines else None

    @property
    def best_move(self) -> str | None:
        top = self.top_line
        if top is None or not top.moves:
            return None
        tokens = top.moves.split()
        return tokens[0] if tokens else None


@dataclass(frozen=True)
class LeakRecord:
    """A repeated position where the habitual move loses more than the threshold."""

    fen_before: str
    fen_after: str
    user_move: str
    best_move: str | None
    reach_count: int
    move_count: int
    cp_loss: int
    eval_before: int
    eval_after: int
    side_to_move: PlayerColor
    tags: tuple[str, ...] = ()

    def to_dict(self) -> dict:
        return {
            "fenBefore": self.fen_before,
            "fenAfter": self.fen_after,
            "userMove": self.user_move,
            "bestMove": self.best_move,
            "reachCount": self.reach_count,
            "moveCount": self.move_count,
            "cpLoss": self.cp_loss,
            "evalBefore": self.eval_before,
            "evalAfter": self.eval_after,
            "sideToMove": self.side_to_move,
            "userColor": self.side_to_move,
            "tags": list(self.tags),
        }


@dataclass(frozen=True)
class GameTrace:
    game_index: int
    user_color: PlayerColor
    opening_moves: tuple[str, ...]

    def to_dict(self) -> dict:
        return {
            "gameIndex": self.game_index,
            "userColor": self.user_color,
            "openingMoves": list(self.opening_moves),
        }


@dataclass(frozen=True)
class PositionTrace:
    """Outcome of classifying one aggregated position."""

    fen_before: str
    user_move: str
    reach_count: int
    move_count: int
    best_move: str | None = None
    eval_before: int | None = None
    eval_after: int | None = None
    cp_loss: int | None = None
    flagged: bool = False
    skipped_reason: SkipReason | None = None

    def to_dict(self) -> dict:
        out = {
            "fenBefore": self.fen_before,
            "userMove": self.user_move,
            "bestMove": self.best_move,
            "reachCount": self.reach_count,
            "moveCount": self.move_count,
            "evalBefore": self.eval_before,
            "evalAfter": self.eval_after,
            "cpLoss": self.cp_loss,
            "flagged": self.flagged,
        }
        if self.skipped_reason:
            out["skippedReason"] = self.skipped_reason
        return out


@dataclass
class AnalysisResult:
    """Everything one analysis run produced for a player."""

    username: str
    games_analyzed: int = 0
    repeated_positions: int = 0
    leaks: list[LeakRecord] = field(default_factory=list)
    max_games: int | None = None
    max_opening_moves: int | None = None
    cp_loss_threshold: int | None = None
    game_traces: list[GameTrace] | None = None
    position_traces: list[PositionTrace] | None = None

    def options(self) -> dict:
        """The clamped options this run used, keyed the way reports store them."""
        return {
            "max_games": self.max_games,
            "max_moves": self.max_opening_moves,
            "cp_threshold": self.cp_loss_threshold,
        }

    def to_dict(self) -> dict:
        out = {
            "username": self.username,
            "gamesAnalyzed": self.games_analyzed,
            "repeatedPositions": self.repeated_positions,
            "leaks": [leak.to_dict() for leak in self.leaks],
        }
        if self.game_traces is not None or self.position_traces is not None:
            out["diagnostics"] = {
                "gameTraces": [t.to_dict() for t in self.game_traces or []],
                "positionTraces": [t.to_dict() for t in self.position_traces or []],
            }
        return out
