# app.py: HomeReader API
# - Reading log: entries, daily goal progress, monthly leaderboard
# - Homework log: submissions, encouragement feedback
# - Photo uploads via a two-step key handshake

import hmac
import logging
import os
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response

import blob_store
import db
import feedback
from engines.caching import MemoryTTLCache, build_cache
from engines.progress_stats import DEFAULT_WINDOW_DAYS, StatsAggregator
from entry_writer import EntryWriter
from env_validation import get_env_bool, get_env_int
from errors import ConfigurationMissing, Forbidden, HomeReaderError
from schemas import (
    DailyStat,
    DeleteResult,
    GoalIn,
    HomeworkAnalyzeIn,
    HomeworkEntryIn,
    LeaderboardRow,
    ReadingEntryIn,
    SchemaStatusOut,
)

logger = logging.getLogger(__name__)

STATS = StatsAggregator(cache=MemoryTTLCache())
WRITER = EntryWriter(STATS)

MAX_LIST_LIMIT = 200
MAX_WINDOW_DAYS = 90


@asynccontextmanager
async def _lifespan(_: FastAPI):
    try:
        # Validate environment variables first
        from env_validation import validate_environment
        validate_environment()

        db.init()
        STATS.cache = build_cache(
            os.getenv("STATS_CACHE_BACKEND", "memory"), os.getenv("REDIS_URL")
        )
        STATS.ttl_seconds = get_env_int("STATS_CACHE_TTL", 300)
        logger.info("HomeReader ready (db=%s)", db.DB_PATH)
        yield
    except Exception as e:
        logger.error("Failed to initialize application: %s", str(e), exc_info=True)
        raise


app = FastAPI(title="HomeReader", version="1.0.0", lifespan=_lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Admin"],
)


# ---------- Helpers ----------
def _http_error(exc: HomeReaderError) -> HTTPException:
    return HTTPException(status_code=exc.status_code, detail=str(exc))


def _require_admin(request: Request) -> None:
    required = os.getenv("ADMIN_TOKEN", "")
    # Either the header or the query token may carry the secret.
    supplied = (request.headers.get("x-admin") or "", request.query_params.get("admin") or "")
    if not required or not any(
        hmac.compare_digest(token.encode(), required.encode()) for token in supplied
    ):
        raise _http_error(Forbidden("forbidden"))


def _require_dev_routes() -> None:
    if not get_env_bool("ENABLE_DEV_ROUTES", True):
        raise HTTPException(status_code=404, detail="Not Found")


def _clamp(value: Optional[int], default: int, upper: int) -> int:
    if value is None:
        return default
    return max(1, min(upper, int(value)))


def _blob_store() -> blob_store.FileBlobStore:
    try:
        return blob_store.get_blob_store()
    except ConfigurationMissing as exc:
        raise _http_error(exc) from exc


# ---------- Service ----------
@app.get("/")
def root():
    return {"ok": True, "service": "homereader"}


@app.get("/health")
def health():
    return {"ok": True}


@app.get("/debug/env")
def debug_env():
    _require_dev_routes()
    return {
        "has_DB": bool(db.DB_PATH),
        "has_PHOTOS": bool(os.getenv("PHOTOS_DIR", "photos")),
        "has_ADMIN_TOKEN": bool(os.getenv("ADMIN_TOKEN")),
        "cache_backend": type(STATS.cache).__name__,
    }


@app.get("/debug/schema")
def debug_schema():
    _require_dev_routes()
    return db.describe_schema()


@app.get("/dev/seed")
def dev_seed():
    _require_dev_routes()
    try:
        seeded = db.seed_demo_data()
    except HomeReaderError as exc:
        raise _http_error(exc) from exc
    for child_id, _ in db.DEMO_CHILDREN:
        STATS.invalidate(child_id)
    return {"ok": True, "seeded": seeded}


@app.api_route("/dev/migrate", methods=["GET", "POST"])
def dev_migrate():
    _require_dev_routes()
    try:
        statuses = [db.ensure_entry_schema(kind) for kind in db.ENTRY_SCHEMAS]
    except HomeReaderError as exc:
        raise _http_error(exc) from exc
    columns = db.describe_schema()
    return {
        "ok": all(status.conformant for status in statuses),
        "tables": [SchemaStatusOut(**status.as_dict()) for status in statuses],
        "columns": {status.table: columns.get(status.table, []) for status in statuses},
    }


# ---------- Photos ----------
@app.post("/v1/uploads")
def create_upload():
    _blob_store()
    return {"key": blob_store.new_photo_key()}


@app.post("/v1/upload-file")
async def upload_file(request: Request, key: Optional[str] = None):
    store = _blob_store()
    if not key:
        raise HTTPException(status_code=400, detail="missing key")

    content_type = request.headers.get("content-type") or ""
    if content_type.startswith("multipart/form-data"):
        form = await request.form()
        upload = form.get("file")
        if upload is None or isinstance(upload, str):
            raise HTTPException(status_code=400, detail="missing file")
        data = await upload.read()
        content_type = upload.content_type or blob_store.DEFAULT_CONTENT_TYPE
    else:
        data = await request.body()
        if not data:
            raise HTTPException(status_code=400, detail="empty body")
        content_type = content_type or blob_store.DEFAULT_CONTENT_TYPE

    try:
        store.put(key, data, content_type)
    except HomeReaderError as exc:
        raise _http_error(exc) from exc
    return {"ok": True, "key": key}


@app.get("/v1/photo")
def get_photo(key: Optional[str] = None):
    store = _blob_store()
    if not key:
        raise HTTPException(status_code=400, detail="missing key")
    try:
        blob = store.get(key)
    except HomeReaderError as exc:
        raise _http_error(exc) from exc
    if blob is None:
        return Response(content="Not found", status_code=404, media_type="text/plain")
    return Response(
        content=blob.data,
        media_type=blob.content_type,
        headers={"cache-control": "public, max-age=86400"},
    )


# ---------- Reading ----------
@app.get("/v1/children")
def list_children():
    return db.list_children()


@app.post("/v1/children/{child_id}/entries")
def create_reading_entry(child_id: str, payload: ReadingEntryIn):
    try:
        entry_id = WRITER.record_reading(child_id, payload.model_dump())
    except HomeReaderError as exc:
        raise _http_error(exc) from exc
    return {"id": entry_id}


@app.get("/v1/children/{child_id}/entries")
def list_reading_entries(child_id: str, limit: Optional[int] = None):
    try:
        return db.list_reading_entries(child_id, _clamp(limit, 100, MAX_LIST_LIMIT))
    except HomeReaderError as exc:
        raise _http_error(exc) from exc


@app.get("/v1/children/{child_id}/daily-stats", response_model=List[DailyStat])
def daily_stats(child_id: str, days: Optional[int] = None):
    window = _clamp(days, DEFAULT_WINDOW_DAYS, MAX_WINDOW_DAYS)
    try:
        return STATS.daily_stats(child_id, window)
    except HomeReaderError as exc:
        raise _http_error(exc) from exc


@app.get("/v1/children/{child_id}/goals")
def list_goals(child_id: str):
    return db.list_goals(child_id)


@app.post("/v1/children/{child_id}/goals")
def create_goal(child_id: str, payload: GoalIn, request: Request):
    _require_admin(request)
    try:
        goal_id = WRITER.create_goal(child_id, payload.model_dump())
    except HomeReaderError as exc:
        raise _http_error(exc) from exc
    return {"id": goal_id}


@app.delete("/v1/entries/{entry_id}", response_model=DeleteResult)
def delete_reading_entry(entry_id: str, request: Request):
    _require_admin(request)
    try:
        return WRITER.soft_delete("reading", entry_id)
    except HomeReaderError as exc:
        raise _http_error(exc) from exc


@app.get("/v1/leaderboard", response_model=List[LeaderboardRow])
def leaderboard(month: Optional[str] = None):
    try:
        return db.leaderboard(month)
    except HomeReaderError as exc:
        raise _http_error(exc) from exc


# ---------- Homework ----------
@app.post("/v1/homework/submit")
def submit_homework(payload: HomeworkEntryIn):
    try:
        entry_id = WRITER.record_homework(payload.model_dump())
    except HomeReaderError as exc:
        raise _http_error(exc) from exc
    return {"ok": True, "id": entry_id}


@app.get("/v1/homework/list")
def list_homework(limit: Optional[int] = None, child_id: Optional[str] = None):
    try:
        return db.list_homework_entries(_clamp(limit, 100, MAX_LIST_LIMIT), child_id=child_id)
    except HomeReaderError as exc:
        raise _http_error(exc) from exc


@app.post("/v1/homework/analyze")
def analyze_homework(payload: HomeworkAnalyzeIn):
    if not payload.photo_key:
        raise HTTPException(status_code=400, detail="photo_key required")
    try:
        message = feedback.encourage(payload.notes, payload.child_name)
    except HomeReaderError as exc:
        raise _http_error(exc) from exc
    return {"ok": True, "feedback": message}


@app.delete("/v1/homework/{entry_id}", response_model=DeleteResult)
def delete_homework_entry(entry_id: str, request: Request):
    _require_admin(request)
    try:
        return WRITER.soft_delete("homework", entry_id)
    except HomeReaderError as exc:
        raise _http_error(exc) from exc
