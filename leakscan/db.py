"""Database layer for stored leak reports."""

import hashlib
import json
import os
from contextlib import contextmanager
from uuid import UUID

import psycopg
from psycopg.types.json import Jsonb

from models import AnalysisResult

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS leak_reports (
    report_id UUID PRIMARY KEY DEFAULT gen_random_uuid(),
    chess_username TEXT NOT NULL,
    max_games INTEGER,
    max_moves INTEGER,
    cp_threshold INTEGER,
    games_analyzed INTEGER NOT NULL DEFAULT 0,
    repeated_positions INTEGER NOT NULL DEFAULT 0,
    leaks JSONB NOT NULL DEFAULT '[]'::jsonb,
    content_hash TEXT NOT NULL,
    created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    UNIQUE (chess_username, content_hash)
);
CREATE INDEX IF NOT EXISTS leak_reports_user_created
    ON leak_reports (chess_username, created_at DESC);
"""

REPORT_COLUMNS = """
    report_id, chess_username, max_games, max_moves, cp_threshold,
    games_analyzed, repeated_positions, leaks, content_hash, created_at
"""


def get_connection_string() -> str:
    """Get database connection string from environment."""
    return os.environ.get(
        "DATABASE_URL",
        "postgresql://localhost:5432/leakscan?user=postgres&password=postgres",
    )


@contextmanager
def get_connection():
    """Context manager for database connections."""
    conn = psycopg.connect(get_connection_string())
    try:
        yield conn
        conn.commit()
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def ensure_schema(conn: psycopg.Connection) -> None:
    with conn.cursor() as cur:
        cur.execute(SCHEMA_SQL)


def normalize_username(username: str) -> str:
    return username.strip().lower()


def content_hash(leaks: list[dict]) -> str:
    """SHA-256 over the canonical JSON of a leak list."""
    canonical = json.dumps(leaks, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def save_report(conn: psycopg.Connection, result: AnalysisResult, options: dict) -> tuple[UUID, bool]:
    """
    Store a report unless an identical one exists for the same player.
    Returns (report_id, created).
    """
    username = normalize_username(result.username)
    leaks = [leak.to_dict() for leak in result.leaks]
    digest = content_hash(leaks)

    with conn.cursor() as cur:
        cur.execute(
            "SELECT report_id FROM leak_reports WHERE chess_username = %s AND content_hash = %s",
            (username, digest),
        )
        row = cur.fetchone()
        if row:
            return row[0], False

        cur.execute(
            """
            INSERT INTO leak_reports (
                chess_username, max_games, max_moves, cp_threshold,
                games_analyzed, repeated_positions, leaks, content_hash
            ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (chess_username, content_hash) DO UPDATE SET
                created_at = leak_reports.created_at
            RETURNING report_id
            """,
            (
                username,
                options.get("max_games"),
                options.get("max_moves"),
                options.get("cp_threshold"),
                result.games_analyzed,
                result.repeated_positions,
                Jsonb(leaks),
                digest,
            ),
        )
        row = cur.fetchone()
    if not row:
        raise RuntimeError("save_report failed to return row")
    return row[0], True


def _row_to_report(row) -> dict:
    return {
        "reportId": str(row[0]),
        "username": row[1],
        "maxGames": row[2],
        "maxMoves": row[3],
        "cpThreshold": row[4],
        "gamesAnalyzed": row[5] or 0,
        "repeatedPositions": row[6] or 0,
        "leaks": row[7] or [],
        "contentHash": row[8],
        "createdAt": row[9].isoformat() if row[9] else None,
    }


def get_latest_report(conn: psycopg.Connection, username: str) -> dict | None:
    """Most recent stored report for a player."""
    with conn.cursor() as cur:
        cur.execute(
            f"SELECT {REPORT_COLUMNS} FROM leak_reports WHERE chess_username = %s "
            "ORDER BY created_at DESC LIMIT 1",
            (normalize_username(username),),
        )
        row = cur.fetchone()
    return _row_to_report(row) if row else None


def list_reports(conn: psycopg.Connection, username: str, limit: int = 20) -> list[dict]:
    """Stored reports for a player, newest first."""
    with conn.cursor() as cur:
        cur.execute(
            f"SELECT {REPORT_COLUMNS} FROM leak_reports WHERE chess_username = %s "
            "ORDER BY created_at DESC LIMIT %s",
            (normalize_username(username), limit),
        )
        return [_row_to_report(r) for r in cur.fetchall()]
