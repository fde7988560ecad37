"""
FastAPI Query API for the Opening Leak Scanner

Endpoints:
  GET  /analyze?username=...&maxGames=&maxMoves=&cpThreshold=  - Run a leak scan
  POST /analyze/jobs  - Queue a leak scan on the Celery worker
  GET  /reports/{username}  - Latest stored report
  GET  /health
"""

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from fastapi import FastAPI, HTTPException, Query
from pydantic import BaseModel

from db import get_connection, get_latest_report
from game_source import PlayerNotFoundError
from http_retry import FetchError
from opening_leaks import analyze

app = FastAPI(title="Opening Leak Scanner API", version="1.0.0")


class AnalyzeJobRequest(BaseModel):
    username: str
    maxGames: int | None = None
    maxMoves: int | None = None
    cpThreshold: int | None = None
    save: bool = True


def parse_number(value: str | None) -> float | None:
    """Lenient numeric query parsing; garbage becomes None so defaults apply."""
    if value is None or not value.strip():
        return None
    try:
        return float(value)
    except ValueError:
        return None


@app.get("/analyze")
async def analyze_endpoint(
    username: str | None = Query(None),
    maxGames: str | None = Query(None),
    maxMoves: str | None = Query(None),
    cpThreshold: str | None = Query(None),
    diagnostics: bool = Query(False),
):
    """Scan a player's recent games for repeated opening leaks."""
    username = (username or "").strip()
    if not username:
        raise HTTPException(status_code=400, detail="Missing username")

    try:
        result = await analyze(
            username,
            parse_number(maxGames),
            parse_number(maxMoves),
            parse_number(cpThreshold),
            diagnostics=diagnostics,
        )
    except PlayerNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except FetchError as e:
        raise HTTPException(status_code=502, detail=str(e))

    return result.to_dict()


@app.post("/analyze/jobs", status_code=202)
def queue_analysis(body: AnalyzeJobRequest):
    """Queue a scan; poll the Celery result backend with the returned task id."""
    username = body.username.strip()
    if not username:
        raise HTTPException(status_code=400, detail="Missing username")
    from celery_app import analyze_user_task

    task = analyze_user_task.delay(username, body.maxGames, body.maxMoves, body.cpThreshold, body.save)
    return {"task_id": task.id, "username": username}


@app.get("/reports/{username}")
def latest_report(username: str):
    """Latest stored report for a player."""
    with get_connection() as conn:
        report = get_latest_report(conn, username)
    if not report:
        raise HTTPException(status_code=404, detail="No report stored for this player")
    return report


@app.get("/health")
def health():
    return {"status": "ok"}
