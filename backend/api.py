"""
FastAPI backend for the Control Panel task state engine.

Exposes one ``TaskSession`` over HTTP: the host posts lifecycle messages and
drains outbound commands; views read the reconciled snapshot, progress and
segment states. Supports CORS for local development.
"""

import logging
from typing import Any, Dict, List, Optional, Union

from fastapi import Body, FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware

from controlpanel.config import load_settings
from controlpanel.core.session import PANEL_STATE_FIELDS, TASK_COMMANDS, TaskSession
from controlpanel.logging_setup import get_log_buffer, setup_logging

logger = logging.getLogger(__name__)

settings = load_settings()

# Initialize FastAPI app
app = FastAPI(
    title="Control Panel API",
    description="Reconciled task lifecycle state for the Control Panel views",
    version="1.0.0",
)

# Configure CORS - allow all localhost origins in development
app.add_middleware(
    CORSMiddleware,
    allow_origin_regex=r"http://(localhost|127\.0\.0\.1):\d+",
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# One session per backend process; replaced wholesale by tests
session = TaskSession(settings=settings)


def get_session() -> TaskSession:
    return session


def _require_key(key: str) -> str:
    key = key.strip()
    if not key:
        raise HTTPException(status_code=422, detail="Task key must not be empty")
    return key


@app.on_event("startup")
async def startup_event() -> None:
    """Install logging and queue the initial host requests."""
    setup_logging(settings.log_level, settings.log_buffer_size, settings.log_buffer_level)
    commands = get_session().bootstrap()
    logger.info(f"Queued {len(commands)} bootstrap requests for the host")


@app.on_event("shutdown")
async def shutdown_event() -> None:
    """Cancel tickers and log polling."""
    get_session().close()


@app.get("/")  # type: ignore[misc]
async def root() -> Dict[str, Any]:
    """
    Root endpoint with API information.

    Returns
    -------
    dict
        API information and status
    """
    return {
        "name": "Control Panel API",
        "version": "1.0.0",
        "status": "running",
        "endpoints": {
            "/api/events": "Apply host lifecycle messages (POST)",
            "/api/snapshot": "Get the reconciled task snapshot",
            "/api/tasks/{key}/progress": "Get progress of one task",
            "/api/tasks/{key}/segments": "Get derived dependency segment states",
            "/api/history": "Get the execution history call tree",
            "/api/commands": "Drain queued host commands",
            "/api/logs": "Get recent log entries",
            "/health": "Health check",
        },
    }


@app.get("/health")  # type: ignore[misc]
async def health() -> Dict[str, str]:
    """Health check endpoint."""
    return {"status": "healthy"}


@app.post("/api/events")  # type: ignore[misc]
async def post_events(
    payload: Union[Dict[str, Any], List[Dict[str, Any]]] = Body(...),
) -> Dict[str, Any]:
    """
    Apply one host message or a list of messages, in order.

    Unknown message types are ignored, never rejected.

    Returns
    -------
    dict
        Counts of received/applied messages and the resulting store version
    """
    messages = payload if isinstance(payload, list) else [payload]
    current = get_session()
    applied = current.handle_messages(messages)
    if applied < len(messages):
        logger.debug(f"Ignored {len(messages) - applied}/{len(messages)} host messages")
    return {
        "received": len(messages),
        "applied": applied,
        "version": current.store.version,
    }


@app.get("/api/snapshot")  # type: ignore[misc]
async def get_snapshot(running_only: bool = False) -> Dict[str, Any]:
    """
    Get the reconciled snapshot.

    Parameters
    ----------
    running_only : bool
        Only include entries that are currently running

    Returns
    -------
    dict
        Store entries, history averages, catalog, mirrors and panel state
    """
    snapshot = get_session().snapshot()
    if running_only:
        snapshot["store"]["tasks"] = {
            key: state for key, state in snapshot["store"]["tasks"].items() if state["running"]
        }
    return snapshot


@app.get("/api/tasks/{key:path}/progress")  # type: ignore[misc]
async def get_progress(key: str) -> Dict[str, Any]:
    """Progress of one task plus its runtime and duration estimate."""
    key = _require_key(key)
    current = get_session()
    tick = current.tick(key)
    return {
        "key": tick.key,
        "runtime": tick.runtime_ms,
        "runtimeText": tick.runtime_text,
        "avgDuration": current.avg_duration(key),
        **tick.progress.to_dict(),
    }


@app.get("/api/tasks/{key:path}/segments")  # type: ignore[misc]
async def get_segments(key: str) -> Dict[str, Any]:
    """Derived state of every segment in a task's dependency tree."""
    key = _require_key(key)
    current = get_session()
    states = current.aggregate_states(key)
    root_key = current.resolver.resolve(key) or key
    return {
        "key": root_key,
        "state": states.get(root_key, "idle"),
        "dependencies": current.dependency_keys(key),
        "segments": states,
    }


@app.get("/api/history")  # type: ignore[misc]
async def get_history() -> Dict[str, Any]:
    """Execution history as a parent/child call tree."""
    current = get_session()
    return {
        "roots": [node.to_dict() for node in current.history_tree()],
        "taskHistoryMap": dict(current.history_map),
    }


@app.post("/api/commands/{command}/{key:path}")  # type: ignore[misc]
async def post_task_command(command: str, key: str) -> Dict[str, Any]:
    """
    Queue a per-task command for the host (fire-and-forget).

    Raises
    ------
    HTTPException
        404 for an unknown command, 422 for an empty key
    """
    if command not in TASK_COMMANDS:
        raise HTTPException(status_code=404, detail=f"Unknown command: {command}")
    key = _require_key(key)
    return get_session().send_task_command(command, key)


@app.put("/api/panel-state")  # type: ignore[misc]
async def put_panel_state(state: Dict[str, bool] = Body(...)) -> Dict[str, Any]:
    """Update panel preferences and mirror them to the host."""
    unknown = sorted(set(state) - set(PANEL_STATE_FIELDS))
    if unknown:
        raise HTTPException(status_code=422, detail=f"Unknown panel fields: {unknown}")
    return get_session().set_panel_state(**state)


@app.get("/api/commands")  # type: ignore[misc]
async def drain_commands() -> Dict[str, Any]:
    """Hand queued commands to the host; each is delivered once."""
    return {"commands": get_session().drain_commands()}


@app.post("/api/debug-view")  # type: ignore[misc]
async def set_debug_view(
    open_view: bool = Body(..., embed=True, alias="open"),
) -> Dict[str, bool]:
    """Start or stop polling the host for its log buffer."""
    current = get_session()
    if open_view:
        current.open_debug_view()
    else:
        current.close_debug_view()
    return {"open": current.debug_view_open}


@app.get("/api/logs")  # type: ignore[misc]
async def get_logs(limit: Optional[int] = None) -> Dict[str, Any]:
    """Recent log entries from this process and the last host log buffer."""
    entries = get_log_buffer()
    if limit is not None and limit >= 0:
        entries = entries[-limit:] if limit else []
    return {"entries": entries, "host": get_session().host_logs}


if __name__ == "__main__":
    import uvicorn

    setup_logging(settings.log_level, settings.log_buffer_size, settings.log_buffer_level)
    logger.info(f"Starting Control Panel API on http://0.0.0.0:{settings.port}")
    uvicorn.run(app, host="0.0.0.0", port=settings.port, log_level="info")  # nosec B104
