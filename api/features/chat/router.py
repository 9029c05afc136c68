"""Router for the Chat feature."""
from dependency_injector.wiring import Provide, inject
from fastapi import APIRouter, Depends, Request
from fastapi.responses import StreamingResponse

from api.features.chat.controller import ChatController
from api.features.chat.dtos import StreamQueryRequest
from api.shared.dtos import HealthCheckResponse
from api.shared.response import ResponseModel
from di.container import ApplicationContainer as DependencyContainer

router = APIRouter()


@router.get("/health", response_model=ResponseModel[HealthCheckResponse])
async def health_check():
    """Health check endpoint for chat service."""
    return ResponseModel.success(
        data=HealthCheckResponse(status="healthy", dependencies={"pipeline": "ok"}),
        message="Chat service is healthy",
    )


@router.post("/stream")
@inject
async def stream_query(
    request: StreamQueryRequest,
    http_request: Request,
    controller: ChatController = Depends(
        Provide[DependencyContainer.controllers.chat_controller]
    ),
):
    """Answer a query as a stream of `chunk` events ending in `complete` or `error`."""
    return StreamingResponse(
        controller.stream_query(request, is_disconnected=http_request.is_disconnected),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "X-Accel-Buffering": "no",
        },
    )
