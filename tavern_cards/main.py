import logging
from typing import Any, Dict, List
from urllib.parse import quote

import uvicorn
from fastapi import Body, FastAPI, File, HTTPException, Query, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response
from pydantic import BaseModel, Field

from .cards import apply_edits, blank_character
from .config import get_settings
from .errors import CardError
from .exporter import CardExporter, ExportFormat
from .importer import import_files
from .library import CharacterLibrary
from .models import CharacterRecord
from .quick_replies import attach_quick_replies, clear_quick_replies, export_qr_file

settings = get_settings()
logging.basicConfig(level=settings.log_level)
library = CharacterLibrary(settings.data_dir)
exporter = CardExporter(settings, store=library)
logger = logging.getLogger(__name__)

MEDIA_TYPES = {
    "png": "image/png",
    "json": "application/json",
    "zip": "application/zip",
}

app = FastAPI(title="Tavern 角色卡管理", version="0.3.0")
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


class BulkExportRequest(BaseModel):
    ids: List[str] = Field(default_factory=list)
    collections: List[str] = Field(default_factory=list)


def _get_record(character_id: str) -> CharacterRecord:
    try:
        return library.get(character_id)
    except FileNotFoundError as exc:
        raise HTTPException(status_code=404, detail="找不到指定角色") from exc


def _download(filename: str, content: bytes) -> Response:
    extension = filename.rsplit(".", 1)[-1].lower()
    return Response(
        content=content,
        media_type=MEDIA_TYPES.get(extension, "application/octet-stream"),
        headers={"Content-Disposition": f"attachment; filename*=UTF-8''{quote(filename)}"},
    )


@app.get("/health")
async def health_check():
    return {"status": "ok"}


@app.get("/api/characters")
async def list_characters():
    return [record.to_storage() for record in library.list()]


@app.post("/api/characters")
async def create_character():
    record = library.save(blank_character())
    return record.to_storage()


@app.post("/api/characters/import")
async def import_characters(files: List[UploadFile] = File(...)):
    uploads = [(upload.filename or "", await upload.read()) for upload in files]
    existing_names = [record.name for record in library.list()]
    summary = import_files(uploads, existing_names=existing_names, store=library)
    for record in summary.characters:
        library.save(record)
    return summary.to_dict()


@app.post("/api/characters/export")
async def export_characters(request: BulkExportRequest):
    if request.ids:
        records = [_get_record(character_id) for character_id in request.ids]
    else:
        records = library.list()
    if not records:
        raise HTTPException(status_code=400, detail="沒有可匯出的角色")
    filename, content = await exporter.export_bulk(records, request.collections)
    return _download(filename, content)


@app.get("/api/characters/{character_id}")
async def character_detail(character_id: str):
    return _get_record(character_id).to_storage()


@app.put("/api/characters/{character_id}")
async def update_character(character_id: str, changes: Dict[str, Any] = Body(...)):
    record = _get_record(character_id)
    try:
        updated = apply_edits(record, changes)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    library.save(updated)
    return updated.to_storage()


@app.delete("/api/characters/{character_id}")
async def delete_character(character_id: str):
    try:
        library.remove(character_id)
    except FileNotFoundError as exc:
        raise HTTPException(status_code=404, detail="找不到指定角色") from exc
    return {"deleted": character_id}


@app.put("/api/characters/{character_id}/avatar")
async def replace_avatar(character_id: str, file: UploadFile = File(...)):
    record = _get_record(character_id)
    library.store(record.id, await file.read())
    return {"id": record.id}


@app.delete("/api/characters/{character_id}/avatar")
async def delete_avatar(character_id: str):
    record = _get_record(character_id)
    library.delete(record.id)
    return {"id": record.id}


@app.post("/api/characters/{character_id}/quick-replies")
async def upload_quick_replies(character_id: str, file: UploadFile = File(...)):
    record = _get_record(character_id)
    try:
        attach_quick_replies(record, await file.read(), file.filename)
    except CardError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    library.save(record)
    return record.to_storage()


@app.delete("/api/characters/{character_id}/quick-replies")
async def remove_quick_replies(character_id: str):
    record = _get_record(character_id)
    library.save(clear_quick_replies(record))
    return record.to_storage()


@app.get("/api/characters/{character_id}/quick-replies/export")
async def export_quick_replies(character_id: str):
    record = _get_record(character_id)
    if not record.qr_list:
        raise HTTPException(status_code=400, detail="沒有可匯出的 QR 資料")
    filename, content = export_qr_file(record.qr_list, record.extra_qr_data)
    return _download(filename, content)


@app.get("/api/characters/{character_id}/export")
async def export_character(
    character_id: str,
    format: ExportFormat = Query(ExportFormat.PNG),
    bundle: bool = False,
):
    record = _get_record(character_id)
    try:
        filename, content = await exporter.export_character(record, format, bundle=bundle)
    except CardError as exc:
        logger.warning("匯出角色失敗 id=%s error=%s", character_id, exc)
        raise HTTPException(status_code=400, detail=f"匯出失敗：{exc}") from exc
    return _download(filename, content)


@app.post("/api/characters/delete")
async def delete_characters(ids: List[str] = Body(..., embed=True)):
    removed = library.remove_many(ids)
    return {"deleted": removed}


def run() -> None:
    logger.info("啟動 Tavern 角色卡服務 %s:%s", settings.host, settings.port)
    uvicorn.run(app, host=settings.host, port=settings.port, log_config=None)


if __name__ == "__main__":
    run()
