"""Read-only REST views of the operation queue.

Endpoints:
    GET /api/operations          All operations, newest first
    GET /api/operations/{uid}    One operation
    GET /api/status              Current server status

Mutations only happen over the WebSocket channels.
"""

from fastapi import APIRouter, HTTPException, Request

from stardust.executor.service import OperationService

router = APIRouter(tags=["operations"])


def get_service(request: Request) -> OperationService:
    service = getattr(request.app.state, "service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Operation service not started")
    return service


@router.get("/operations")
async def list_operations(request: Request):
    operations = get_service(request).queue.operations
    return {"operations": [op.to_wire() for op in operations], "count": len(operations)}


@router.get("/operations/{uid}")
async def get_operation(uid: str, request: Request):
    operation = get_service(request).queue.find(uid)
    if operation is None:
        raise HTTPException(status_code=404, detail=f"Operation not found: {uid}")
    return operation.to_wire()


@router.get("/status")
async def get_status(request: Request):
    return get_service(request).notifier.status.to_wire()
