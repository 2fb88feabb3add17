from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import PlainTextResponse

from note_tasks.indexing import IndexingWorker, PublishFailure, RecordKind

from api.dependencies import get_worker

router = APIRouter(prefix="/index", tags=["index"])


@router.post("/initialize")
def initialize(worker: IndexingWorker = Depends(get_worker)):
    worker.initialize()
    return {"status": "initialized"}


@router.post("/rescan")
def rescan(worker: IndexingWorker = Depends(get_worker)):
    try:
        result = worker.full_rescan()
    except PublishFailure as exc:
        raise HTTPException(status_code=503, detail=str(exc))
    return {
        "documents": result.documents,
        "records": result.records,
        "published": result.published,
        "read_failures": result.read_failures,
        "warnings": [
            {"document_key": w.document_key, "line_number": w.line_number, "message": w.message}
            for w in result.warnings
        ],
    }


@router.get("/output", response_class=PlainTextResponse)
def get_output(worker: IndexingWorker = Depends(get_worker)):
    return PlainTextResponse(worker.render(), media_type="text/markdown")


@router.get("/search")
def search(query: str, limit: int = 20, kind: Optional[RecordKind] = None, worker: IndexingWorker = Depends(get_worker)):
    if not query or not query.strip():
        raise HTTPException(status_code=400, detail="Query must not be empty")
    if not hasattr(worker.indexer, "search"):
        raise HTTPException(status_code=501, detail="Search index is not configured")
    return {"hits": worker.indexer.search(query, limit=limit, kind=kind)}
