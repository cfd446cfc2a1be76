from __future__ import annotations

import tempfile
import threading
import time
import uuid
from argparse import ArgumentParser
from contextlib import asynccontextmanager
from pathlib import Path
from typing import *

from fastapi import FastAPI, File, HTTPException, Query, Request, UploadFile
from fastapi.responses import JSONResponse, Response
from fastapi.staticfiles import StaticFiles
from fastapi.templating import Jinja2Templates

from palsave import CompressionMode, PalSave, PalSaveError, read_savefile

UPLOAD_ROOT = Path(tempfile.gettempdir()) / "palsave_uploads"
UPLOAD_ROOT.mkdir(parents=True, exist_ok=True)
CLEAN_INTERVAL_SECONDS = 300  # every 5 minutes
FILE_TTL_SECONDS = 1800  # 30 minutes
CHUNK_SIZE = 1024 * 1024


def _clean_once(now: Optional[float] = None) -> int:
    """Delete stored uploads older than FILE_TTL_SECONDS; returns how many went."""
    now = time.time() if now is None else now
    removed = 0
    for p in UPLOAD_ROOT.glob("*"):
        try:
            if not p.is_file():
                continue
            if now - p.stat().st_mtime > FILE_TTL_SECONDS:
                p.unlink(missing_ok=True)
                removed += 1
        except OSError:
            # file vanished or is locked; next sweep retries
            continue
    return removed


def _clean_loop() -> None:
    while True:
        _clean_once()
        time.sleep(CLEAN_INTERVAL_SECONDS)


def _ensure_cleaner_started(app: FastAPI) -> None:
    # start a background daemon thread once
    if not getattr(app.state, "_cleaner_started", False):
        t = threading.Thread(target=_clean_loop,
                             name="palsave-cleaner", daemon=True)
        t.start()
        app.state._cleaner_started = True


BASE_DIR = Path(__file__).resolve().parent
TEMPLATES_DIR = BASE_DIR / "templates"
STATIC_DIR = BASE_DIR / "static"


@asynccontextmanager
async def _lifespan(app: FastAPI):
    _ensure_cleaner_started(app)
    yield


app = FastAPI(title="PlZ Save Inspector", version="0.1.0", lifespan=_lifespan)
app.mount("/static", StaticFiles(directory=str(STATIC_DIR)), name="static")
templates = Jinja2Templates(directory=str(TEMPLATES_DIR))


def _sanitize_filename(name: str) -> str:
    keep = [c for c in name if c.isalnum() or c in (".", "_", "-")]
    sanitized = "".join(keep) or "upload.sav"
    return sanitized[-100:]


async def _read_upload(file: UploadFile) -> bytes:
    try:
        return await file.read()
    finally:
        await file.close()


def _codec_error(e: PalSaveError) -> HTTPException:
    err_type = e.__class__.__name__
    err_msg = str(e) or repr(e)
    return HTTPException(status_code=400, detail=f"Parse error ({err_type}): {err_msg}")


def _parse_mode(mode: str) -> CompressionMode:
    try:
        return CompressionMode.parse(mode)
    except PalSaveError as e:
        raise HTTPException(status_code=400, detail=str(e))


@app.get("/")
def index(request: Request):
    return templates.TemplateResponse(request, "index.html", {"request": request})


@app.post("/api/upload")
async def api_upload(file: UploadFile = File(...)) -> JSONResponse:
    if not file.filename:
        raise HTTPException(status_code=400, detail="Missing filename")
    if not file.filename.lower().endswith(".sav"):
        raise HTTPException(
            status_code=400, detail="Please upload a .sav file")

    safe_name = _sanitize_filename(file.filename)
    unique = f"{int(time.time())}_{uuid.uuid4().hex}_{safe_name}"
    dest = UPLOAD_ROOT / unique

    try:
        with dest.open('wb') as f:
            while True:
                chunk = await file.read(CHUNK_SIZE)
                if not chunk:
                    break
                f.write(chunk)
    except OSError as e:
        raise HTTPException(
            status_code=500, detail=f"Failed to save file: {e}")
    finally:
        await file.close()

    try:
        save = read_savefile(dest)
    except PalSaveError as e:
        # cleaner will purge the stored file later
        raise _codec_error(e)

    # header parsed fine; report separately whether the body itself is sound
    payload_error = None
    try:
        save.decompressed_body()
    except PalSaveError as e:
        payload_error = f"{e.__class__.__name__}: {e}"

    return JSONResponse({
        "header": save.header,
        "payload_ok": payload_error is None,
        "payload_error": payload_error,
        "uploaded_path": str(dest),
    })


@app.post("/api/decompress")
async def api_decompress(file: UploadFile = File(...)) -> Response:
    data = await _read_upload(file)
    try:
        payload = PalSave.from_bytes(data).decompressed_body()
    except PalSaveError as e:
        raise _codec_error(e)
    name = Path(_sanitize_filename(file.filename or "upload.sav")).stem + ".bin"
    return Response(content=payload, media_type="application/octet-stream",
                    headers={"Content-Disposition": f'attachment; filename="{name}"'})


@app.post("/api/compress")
async def api_compress(file: UploadFile = File(...), mode: str = Query("2")) -> Response:
    compression_mode = _parse_mode(mode)
    data = await _read_upload(file)
    try:
        save = PalSave.from_raw_payload(data, compression_mode)
    except PalSaveError as e:
        raise _codec_error(e)
    name = Path(_sanitize_filename(file.filename or "payload.bin")).stem + ".sav"
    return Response(content=save.to_bytes(), media_type="application/octet-stream",
                    headers={"Content-Disposition": f'attachment; filename="{name}"'})


def main() -> None:
    parser = ArgumentParser(prog="palsave_webapp",
                            description="palsave Web App")
    parser.add_argument("--host", default="127.0.0.1",
                        help="Host to bind (default: 127.0.0.1)")
    parser.add_argument("--port", type=int, default=8000,
                        help="Port to bind (default: 8000)")
    args = parser.parse_args()

    import uvicorn  # imported here so fastapi/uvicorn stay optional unless webapp is used
    uvicorn.run("palsave.webapp:app", host=args.host,
                port=args.port, reload=False, log_level="info")


if __name__ == "__main__":
    main()
