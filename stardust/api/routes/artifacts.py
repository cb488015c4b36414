"""Download of stored artifacts, and the throttled fallback for unknown paths.

    GET /api/get/csv:{uid}.{index}    CSV table of an operation output
    GET /{anything else}              {"error": 404}, after DISCOVERY_API_DELAY_MS

Each request is delayed by (pending requests x delay), so a client hammering
the API or probing for paths waits longer and longer.
"""

import asyncio
import logging
import os
from contextlib import asynccontextmanager

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import JSONResponse, Response

from stardust.api.routes.operations import get_service
from stardust.cache.artifacts import CSV_KEY_PREFIX, parse_operation_uid
from stardust.executor.schemas import AnalysisRequest

logger = logging.getLogger(__name__)

router = APIRouter(tags=["artifacts"])

# Must be included after every other route: it matches any GET path
fallback_router = APIRouter(include_in_schema=False)

ARTIFACT_API_DELAY_MS = int(os.environ.get("ARTIFACT_API_DELAY_MS", "500"))
DISCOVERY_API_DELAY_MS = int(os.environ.get("DISCOVERY_API_DELAY_MS", "1000"))
MIN_KEY_LENGTH = 20
MAX_KEY_LENGTH = 30

_pending_requests = 0


@asynccontextmanager
async def _api_delay(delay_ms: int):
    global _pending_requests
    _pending_requests += 1
    try:
        await asyncio.sleep(_pending_requests * delay_ms / 1000)
        yield
    finally:
        _pending_requests -= 1


def csv_filename(request: AnalysisRequest) -> str:
    query = request.op_query.replace("/", "_")
    return f"kpis-{query}-{int(request.op_code)}-{request.limit_stars_per_user}spu.csv"


@router.get("/get/csv:{suffix}")
async def download_csv(suffix: str, request: Request):
    """Return a stored CSV output as a file download."""
    async with _api_delay(ARTIFACT_API_DELAY_MS):
        key = f"{CSV_KEY_PREFIX}{suffix}"
        if not MIN_KEY_LENGTH <= len(key) <= MAX_KEY_LENGTH:
            logger.error(f"download_csv: wrong key '{key}'")
            raise HTTPException(status_code=400, detail="Wrong key")

        service = get_service(request)
        uid = parse_operation_uid(key)
        operation = service.queue.find(uid) if uid else None
        if operation is None:
            logger.error(
                f"download_csv: no operation '{uid}' among {len(service.queue)} operations"
            )
            raise HTTPException(status_code=400, detail="Unknown operation")

        content = await service.artifacts.load(key)
        if not content:
            logger.error(f"download_csv: nothing stored for op {operation.uid}, key '{key}'")
            raise HTTPException(status_code=400, detail="Artifact not found")

        if isinstance(content, str) and "\n" in content:
            return Response(
                content=content,
                media_type="text/csv",
                headers={
                    "Content-Disposition": f'attachment; filename="{csv_filename(operation.request)}"'
                },
            )
        return JSONResponse(content)


@fallback_router.get("/{path:path}")
async def unknown_path(path: str):
    """Slow down path discovery."""
    async with _api_delay(DISCOVERY_API_DELAY_MS):
        logger.info(f"unknown_path: GET /{path}")
        return JSONResponse({"error": 404}, status_code=404)
