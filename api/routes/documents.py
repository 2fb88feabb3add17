from __future__ import annotations

from dataclasses import asdict

from fastapi import APIRouter, Depends, HTTPException, Request

from note_tasks.indexing import IndexingWorker, PublishFailure, ReadFailure, Record, UpdateResult

from api.dependencies import get_worker

router = APIRouter(prefix="/documents", tags=["documents"])


def _record_payload(record: Record) -> dict:
    payload = asdict(record)
    payload["kind"] = record.kind.value
    return payload


def _update_payload(update: UpdateResult) -> dict:
    return {
        "key": update.key,
        "generation": update.generation,
        "accepted": update.accepted,
        "published": update.published,
        "warnings": [{"line_number": w.line_number, "message": w.message} for w in update.warnings],
    }


@router.get("")
def list_documents(worker: IndexingWorker = Depends(get_worker)):
    return [
        {
            "key": doc.key,
            "generation": doc.generation,
            "record_count": doc.record_count,
            "status": doc.status,
        }
        for doc in worker.repo.list_documents()
    ]


@router.get("/{key:path}")
def get_document(key: str, worker: IndexingWorker = Depends(get_worker)):
    records = worker.repo.get_records(key)
    if records is None:
        raise HTTPException(status_code=404, detail=f"Document not indexed: {key}")
    return {"key": key, "status": worker.status(key), "records": [_record_payload(r) for r in records]}


@router.put("/{key:path}")
async def document_changed(key: str, request: Request, worker: IndexingWorker = Depends(get_worker)):
    payload = await request.body()
    try:
        text = payload.decode("utf-8")
    except UnicodeDecodeError:
        raise HTTPException(status_code=400, detail="Document body must be UTF-8 text")
    try:
        update = worker.on_document_changed(key, text)
    except PublishFailure as exc:
        raise HTTPException(status_code=503, detail=str(exc))
    return _update_payload(update)


@router.post("/{key:path}/refresh")
def refresh_document(key: str, worker: IndexingWorker = Depends(get_worker)):
    try:
        update = worker.on_document_changed(key)
    except ReadFailure as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    except PublishFailure as exc:
        raise HTTPException(status_code=503, detail=str(exc))
    return _update_payload(update)


@router.delete("/{key:path}")
def document_deleted(key: str, worker: IndexingWorker = Depends(get_worker)):
    if worker.repo.get_records(key) is None:
        raise HTTPException(status_code=404, detail=f"Document not indexed: {key}")
    try:
        update = worker.on_document_deleted(key)
    except PublishFailure as exc:
        raise HTTPException(status_code=503, detail=str(exc))
    return _update_payload(update)
