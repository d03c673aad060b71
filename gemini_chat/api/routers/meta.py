from typing import List

import anyio
from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from google.cloud import firestore

from ...models.catalog import MODEL_OPTIONS, ModelOption
from ...services.firestore import check_firestore_connection
from ..deps import get_firestore_client

router = APIRouter(tags=["meta"])


@router.get("/models", response_model=List[ModelOption])
async def list_models():
    return MODEL_OPTIONS


@router.get("/health")
async def health():
    return {"status": "ok"}


@router.get("/health/firestore")
async def firestore_health(db: firestore.Client = Depends(get_firestore_client)):
    """Round-trip a diagnostics document; 503 when Firestore is unreachable."""
    result = await anyio.to_thread.run_sync(check_firestore_connection, db)
    return JSONResponse(result, status_code=200 if result["connected"] else 503)
