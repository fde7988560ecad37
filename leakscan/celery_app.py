"""Celery application for background leak scans."""

import os
from celery import Celery

REDIS_URL = os.environ.get("REDIS_URL", "redis://localhost:6379/0")

app = Celery("leakscan", broker=REDIS_URL, backend=REDIS_URL)
app.conf.update(
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    task_acks_late=True,
    worker_prefetch_multiplier=1,
)


@app.task(bind=True, max_retries=3)
def analyze_user_task(
    self,
    username: str,
    max_games: int | None = None,
    max_moves: int | None = None,
    cp_threshold: int | None = None,
    save: bool = True,
):
    """Celery task: run a leak scan for one player and optionally store it."""
    import asyncio
    from game_source import PlayerNotFoundError
    from http_retry import FetchError, TransientError
    from opening_leaks import analyze

    try:
        result = asyncio.run(analyze(username, max_games, max_moves, cp_threshold))
    except PlayerNotFoundError as exc:
        return {"error": str(exc), "status": 404}
    except TransientError as exc:
        raise self.retry(exc=exc, countdown=30)
    except FetchError as exc:
        return {"error": str(exc), "status": exc.status or 502}

    payload = result.to_dict()
    if save:
        from db import ensure_schema, get_connection, save_report

        with get_connection() as conn:
            ensure_schema(conn)
            report_id, _ = save_report(conn, result, result.options())
        payload["reportId"] = str(report_id)
    return payload
