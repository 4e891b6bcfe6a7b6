import json
import time
from typing import Optional

from fastapi import Depends, FastAPI, File, Header, HTTPException, Query, Request, UploadFile
from fastapi.responses import JSONResponse, StreamingResponse

from . import models, schemas, tasks, utils
from .config import settings
from .database import engine
from .errors import (
    JobNotFoundError,
    JobStateError,
    ProductNotFoundError,
    RateLimitedError,
    SearchFailedError,
    SubmissionError,
    TransportError,
)
from .log_config import setup_logging
from .pipeline import ImportPipeline

setup_logging(settings.log_level)
models.Base.metadata.create_all(bind=engine)

app = FastAPI(title="Catalog Importer")

ERROR_STATUS = [
    (SubmissionError, 400),
    (JobNotFoundError, 404),
    (ProductNotFoundError, 404),
    (JobStateError, 409),
    (RateLimitedError, 429),
    (SearchFailedError, 503),
    (TransportError, 503),
]


def _error_handler(status_code: int):
    async def handler(request: Request, exc: Exception):
        return JSONResponse(status_code=status_code, content={"detail": str(exc), "kind": exc.kind})
    return handler


for exc_class, code in ERROR_STATUS:
    app.add_exception_handler(exc_class, _error_handler(code))


def get_pipeline() -> ImportPipeline:
    return tasks.get_pipeline()


def get_progress_store():
    return tasks.r


def get_current_user(x_user_id: Optional[str] = Header(None)) -> str:
    # identity is verified upstream; the header is trusted here
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Missing caller identity")
    return x_user_id


def get_rate_store():
    return tasks.r


def import_rate_limit(user_id: str = Depends(get_current_user), store=Depends(get_rate_store)) -> str:
    if not tasks.allow_import(store, user_id, settings.import_rate_limit, settings.import_rate_window):
        raise RateLimitedError("Too many import requests. Please try again later.")
    return user_id


@app.get("/healthz")
def healthz():
    return {"status": "ok"}


# -------------------- IMPORT --------------------
@app.post(
    "/api/{store_id}/products/bulk-import",
    response_model=schemas.ImportAccepted,
    status_code=202,
)
def bulk_import(
    store_id: str,
    payload: schemas.BulkImportRequest,
    user_id: str = Depends(import_rate_limit),
    pipeline: ImportPipeline = Depends(get_pipeline),
):
    return pipeline.submit_import(
        store_id, payload.items, user_id=user_id, file_name=payload.file_name
    )


@app.post(
    "/api/{store_id}/products/import",
    response_model=schemas.ImportAccepted,
    status_code=202,
)
def upload_csv(
    store_id: str,
    file: UploadFile = File(...),
    user_id: str = Depends(import_rate_limit),
    pipeline: ImportPipeline = Depends(get_pipeline),
):
    if not file.filename or not file.filename.lower().endswith(".csv"):
        raise HTTPException(status_code=400, detail="Only CSV files allowed")
    data = utils.read_upload(file.file, settings.max_upload_bytes)
    rows = utils.parse_csv_rows(data, max_rows=settings.max_import_rows)
    return pipeline.submit_import(store_id, rows, user_id=user_id, file_name=file.filename)


@app.get("/api/{store_id}/import-status/{job_id}", response_model=schemas.ImportStatusOut)
def import_status(store_id: str, job_id: str, pipeline: ImportPipeline = Depends(get_pipeline)):
    return pipeline.get_import_status(job_id, store_id=store_id)


@app.post("/api/{store_id}/import-status/{job_id}/abort", response_model=schemas.ImportStatusOut)
def abort_import(
    store_id: str,
    job_id: str,
    user_id: str = Depends(get_current_user),
    pipeline: ImportPipeline = Depends(get_pipeline),
):
    return pipeline.abort(job_id, store_id=store_id)


@app.get("/sse/progress/{job_id}")
def sse_progress(job_id: str, store=Depends(get_progress_store)):
    def event_stream():
        key = tasks.progress_key(job_id)
        last = None
        while True:
            val = store.get(key)
            if val != last:
                last = val
                yield f"data: {val}\n\n"
                if val:
                    try:
                        snapshot = json.loads(val)
                    except ValueError:
                        snapshot = {}
                    if tasks.is_finished(snapshot):
                        break
            time.sleep(0.5)
    return StreamingResponse(event_stream(), media_type="text/event-stream")


# -------------------- PRODUCTS --------------------
@app.get("/api/{store_id}/products/search", response_model=schemas.SearchResponse)
def search_products(
    store_id: str,
    q: str = Query(..., min_length=1),
    category_id: Optional[str] = None,
    page: int = Query(1, ge=1),
    page_size: int = Query(48, ge=1, le=100),
    pipeline: ImportPipeline = Depends(get_pipeline),
):
    result = pipeline.search(store_id, q, category_id=category_id, page=page, page_size=page_size)
    return {
        "results": result.results,
        "total": result.total,
        "page": result.page,
        "page_size": result.page_size,
        "page_count": result.page_count,
        "source": result.source,
    }


@app.get("/api/{store_id}/products/search/autocomplete", response_model=schemas.AutocompleteResponse)
def autocomplete(
    store_id: str,
    q: str = "",
    limit: int = Query(10, ge=1, le=50),
    category_id: Optional[str] = None,
    pipeline: ImportPipeline = Depends(get_pipeline),
):
    return {"suggestions": pipeline.autocomplete(store_id, q, limit=limit, category_id=category_id)}


@app.patch("/api/{store_id}/products/{product_id}/archive", response_model=schemas.ProductOut)
def archive_product(
    store_id: str,
    product_id: str,
    archived: bool = Query(True),
    user_id: str = Depends(get_current_user),
    pipeline: ImportPipeline = Depends(get_pipeline),
):
    return pipeline.archive_product(store_id, product_id, archived=archived)


@app.delete("/api/{store_id}/products/{product_id}")
def delete_product(
    store_id: str,
    product_id: str,
    user_id: str = Depends(get_current_user),
    pipeline: ImportPipeline = Depends(get_pipeline),
):
    pipeline.delete_product(store_id, product_id)
    return {"deleted": 1}


# -------------------- ADMIN --------------------
@app.post("/api/admin/search/rebuild", response_model=schemas.RebuildQueued, status_code=202)
def rebuild_search(user_id: str = Depends(get_current_user)):
    return {"task_id": tasks.queue_rebuild()}
