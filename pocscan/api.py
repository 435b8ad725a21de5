"""
pocscan - FastAPI Backend
REST API for task management plus a per-task WebSocket event stream.
"""

import asyncio
import dataclasses
import json
import shutil
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Dict, List, Optional

from fastapi import FastAPI, WebSocket, WebSocketDisconnect, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from loguru import logger
from pydantic import BaseModel

from pocscan.config import EngineConfig, NucleiOptions, config_to_dict, get_config, save_user_config
from pocscan.errors import PocscanError, TaskNotFoundError, TaskStateError
from pocscan.models import ScanEvent
from pocscan.tasks import TaskManager


VERSION = "0.1.0"
JANITOR_INTERVAL_S = 3600.0

# ── Globals ─────────────────────────────────────────────────────

config: EngineConfig = get_config()
manager: Optional[TaskManager] = None


def get_manager() -> TaskManager:
    if manager is None:
        raise HTTPException(status_code=503, detail="Task manager not started")
    return manager


def _http_error(e: PocscanError) -> HTTPException:
    """Map engine errors onto status codes."""
    if isinstance(e, TaskNotFoundError):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, TaskStateError):
        return HTTPException(status_code=409, detail=str(e))
    return HTTPException(status_code=500, detail=str(e))


def _clean(values: List[str]) -> List[str]:
    return [v.strip() for v in values if v and v.strip()]


# ── Lifespan ────────────────────────────────────────────────────

async def staging_janitor(interval_s: float = JANITOR_INTERVAL_S):
    """Remove abandoned staging directories while the backend runs."""
    while True:
        await asyncio.sleep(interval_s)
        if manager is None:
            continue
        try:
            manager.temp_manager.cleanup_stale(config.stale_temp_age_s)
        except OSError as e:
            logger.warning(f"[API] Staging cleanup failed: {e}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown."""
    global manager
    manager = TaskManager(config)
    janitor = asyncio.create_task(staging_janitor())
    logger.info(f"[API] Backend running on {config.api.host}:{config.api.port}")
    logger.info(f"[API] nuclei: {config.nuclei_path}, templates: {config.templates_dir}")
    yield
    janitor.cancel()
    try:
        await janitor
    except asyncio.CancelledError:
        pass
    await manager.cancel_all()
    manager = None


# ── FastAPI App ─────────────────────────────────────────────────

app = FastAPI(
    title="pocscan API",
    version=VERSION,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origin_regex=config.api.origin_regex(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ── Pydantic Models ────────────────────────────────────────────

class TaskCreate(BaseModel):
    templates: List[str]
    targets: List[str]
    name: str = ""

class TaskUpdate(BaseModel):
    templates: Optional[List[str]] = None
    targets: Optional[List[str]] = None
    name: Optional[str] = None

class ConfigUpdate(BaseModel):
    nuclei_path: Optional[str] = None
    templates_dir: Optional[str] = None
    scan_timeout_s: Optional[float] = None
    staging_threshold: Optional[int] = None
    options: Optional[Dict] = None


# ── WebSocket ───────────────────────────────────────────────────

@app.websocket("/ws/tasks/{task_id}")
async def task_events(ws: WebSocket, task_id: int):
    """Stream one task's events as {"type", "data"} frames."""
    mgr = get_manager()
    await ws.accept()

    async def forward(event: ScanEvent):
        await ws.send_text(json.dumps({"type": event.event_type, "data": event.data}))

    try:
        progress = mgr.get_progress(task_id)
    except PocscanError as e:
        await ws.send_text(json.dumps({"type": "error", "data": {"message": str(e)}}))
        await ws.close(code=4404)
        return

    mgr.register_handler(task_id, forward)
    logger.debug(f"[WS] Subscriber attached to task {task_id}")
    try:
        await ws.send_text(json.dumps({"type": "connected", "data": progress.to_dict()}))
        while True:
            data = await ws.receive_text()
            try:
                msg = json.loads(data)
            except ValueError:
                continue
            if isinstance(msg, dict) and msg.get("type") == "ping":
                await ws.send_text(json.dumps({"type": "pong", "data": {}}))
    except WebSocketDisconnect:
        pass
    finally:
        mgr.unregister_handler(task_id)
        logger.debug(f"[WS] Subscriber detached from task {task_id}")


# ── Task Endpoints ─────────────────────────────────────────────

@app.post("/api/tasks")
async def create_task(req: TaskCreate):
    """Create a pending task."""
    templates = _clean(req.templates)
    targets = _clean(req.targets)
    if not templates:
        raise HTTPException(status_code=400, detail="At least one template is required")
    if not targets:
        raise HTTPException(status_code=400, detail="At least one target is required")
    task = get_manager().create_task(templates, targets, req.name)
    return task.to_dict()


@app.get("/api/tasks")
async def list_tasks():
    return [t.to_dict() for t in get_manager().get_all_tasks()]


@app.get("/api/tasks/{task_id}")
async def get_task(task_id: int):
    try:
        return get_manager().get_task(task_id).to_dict()
    except PocscanError as e:
        raise _http_error(e)


@app.put("/api/tasks/{task_id}")
async def update_task(task_id: int, req: TaskUpdate):
    """Replace templates, targets or name of a task that is not running."""
    templates = _clean(req.templates) if req.templates is not None else None
    targets = _clean(req.targets) if req.targets is not None else None
    if templates is not None and not templates:
        raise HTTPException(status_code=400, detail="templates cannot be empty")
    if targets is not None and not targets:
        raise HTTPException(status_code=400, detail="targets cannot be empty")
    try:
        task = get_manager().update_task(task_id, templates=templates, targets=targets, name=req.name)
    except PocscanError as e:
        raise _http_error(e)
    return task.to_dict()


@app.delete("/api/tasks/{task_id}")
async def delete_task(task_id: int):
    try:
        get_manager().delete_task(task_id)
    except PocscanError as e:
        raise _http_error(e)
    return {"status": "deleted", "id": task_id}


@app.post("/api/tasks/{task_id}/start")
async def start_task(task_id: int):
    try:
        task = await get_manager().start_task(task_id)
    except PocscanError as e:
        raise _http_error(e)
    return task.to_dict()


@app.post("/api/tasks/{task_id}/rescan")
async def rescan_task(task_id: int):
    try:
        task = await get_manager().rescan_task(task_id)
    except PocscanError as e:
        raise _http_error(e)
    return task.to_dict()


@app.post("/api/tasks/{task_id}/stop")
async def stop_task(task_id: int):
    try:
        stopped = await get_manager().stop_task(task_id)
    except PocscanError as e:
        raise _http_error(e)
    return {"status": "stopped" if stopped else "stopping", "id": task_id}


@app.get("/api/tasks/{task_id}/progress")
async def get_progress(task_id: int):
    try:
        return get_manager().get_progress(task_id).to_dict()
    except PocscanError as e:
        raise _http_error(e)


@app.get("/api/tasks/{task_id}/result")
async def get_result(task_id: int):
    try:
        result = get_manager().get_task_result(task_id)
    except PocscanError as e:
        raise _http_error(e)
    if result is None:
        raise HTTPException(status_code=404, detail=f"No result for task {task_id} yet")
    return result.to_dict()


@app.get("/api/tasks/{task_id}/http-logs")
async def get_http_logs(
    task_id: int,
    offset: int = Query(0, ge=0),
    limit: int = Query(0, ge=0),
    vuln_only: bool = False,
):
    """Captured request/response pairs. limit=0 returns everything after offset."""
    mgr = get_manager()
    try:
        mgr.get_task(task_id)
    except PocscanError as e:
        raise _http_error(e)
    logs = mgr.get_http_logs(task_id)
    if vuln_only:
        logs = [entry for entry in logs if entry.is_vuln_found]
    total = len(logs)
    logs = logs[offset:offset + limit] if limit else logs[offset:]
    return {"total": total, "items": [entry.to_dict() for entry in logs]}


@app.get("/api/tasks/{task_id}/logs")
async def get_task_log(task_id: int, tail: int = Query(0, ge=0)):
    """Raw nuclei transcript of the latest run."""
    try:
        lines = get_manager().get_task_log(task_id, tail)
    except PocscanError as e:
        raise _http_error(e)
    return {"task_id": task_id, "lines": lines}


@app.get("/api/tasks/{task_id}/export")
async def export_task(task_id: int):
    """Result plus HTTP exchanges, served as a downloadable JSON file."""
    try:
        data = get_manager().export_task(task_id)
    except PocscanError as e:
        raise _http_error(e)
    if data is None:
        raise HTTPException(status_code=404, detail=f"No result for task {task_id} yet")
    return JSONResponse(
        content=data,
        headers={"Content-Disposition": f'attachment; filename="task_{task_id}_result.json"'},
    )


@app.get("/api/results")
async def list_results():
    """Finished tasks with at least one finding."""
    return [r.to_dict() for r in get_manager().get_all_task_results()]


# ── Config ──────────────────────────────────────────────────────

@app.get("/api/config")
async def get_app_config():
    return config_to_dict(config)


@app.post("/api/config")
async def update_app_config(req: ConfigUpdate):
    """Update engine configuration. Applies to scans started afterwards."""
    global config
    changes = {}
    updated = dataclasses.replace(config, options=dataclasses.replace(config.options))

    if req.nuclei_path is not None:
        path = req.nuclei_path.strip()
        if not path:
            raise HTTPException(status_code=400, detail="nuclei_path cannot be empty")
        updated.nuclei_path = path
        changes["nuclei_path"] = path

    if req.templates_dir is not None:
        templates_dir = Path(req.templates_dir).expanduser()
        if not templates_dir.is_dir():
            raise HTTPException(status_code=400, detail=f"Not a directory: {templates_dir}")
        updated.templates_dir = templates_dir
        changes["templates_dir"] = str(templates_dir)

    if req.scan_timeout_s is not None:
        if req.scan_timeout_s <= 0:
            raise HTTPException(status_code=400, detail="scan_timeout_s must be positive")
        updated.scan_timeout_s = req.scan_timeout_s
        changes["scan_timeout_s"] = req.scan_timeout_s

    if req.staging_threshold is not None:
        if req.staging_threshold < 1:
            raise HTTPException(status_code=400, detail="staging_threshold must be at least 1")
        updated.staging_threshold = req.staging_threshold
        changes["staging_threshold"] = req.staging_threshold

    if req.options is not None:
        merged = dataclasses.asdict(updated.options)
        merged.update(req.options)
        try:
            updated.options = NucleiOptions.from_dict(merged)
        except TypeError as e:
            raise HTTPException(status_code=400, detail=str(e))
        changes["options"] = dataclasses.asdict(updated.options)

    if changes:
        save_user_config(changes, Path(updated.data_dir) / "config.json")
        config = updated
        if manager is not None:
            manager.update_config(updated)
        logger.info(f"[API] Config updated: {', '.join(changes)}")

    return {"status": "ok", "changes": changes}


# ── Health ──────────────────────────────────────────────────────

@app.get("/api/health")
async def health():
    """Health check endpoint."""
    return {
        "status": "ok",
        "version": VERSION,
        "nuclei_path": config.nuclei_path,
        "nuclei_available": shutil.which(config.nuclei_path) is not None,
        "running_tasks": manager.running_task_ids() if manager is not None else [],
        "event_queues": {
            str(task_id): manager.bus.stats(task_id) for task_id in manager.running_task_ids()
        } if manager is not None else {},
    }
