"""API route definitions."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Literal

from fastapi import APIRouter, HTTPException, Request, Response, UploadFile, status

from embryolens.api.schemas import (
    ErrorResponse,
    HealthResponse,
    LabelsResponse,
    ModelInfo,
    ModelsResponse,
    SessionResponse,
)
from embryolens.errors import NotReadyError
from embryolens.labels import LABELS
from embryolens.ml.model_manager import MODEL_REGISTRY
from embryolens.ml.preprocessing import render_view

if TYPE_CHECKING:
    from embryolens.factory import Services
    from embryolens.session.controller import SessionController
    from embryolens.session.registry import SessionRegistry

router = APIRouter(prefix="/api/v1")

_LABELS: list[str] = [str(label) for label in LABELS]


def _get_services(request: Request) -> Services:
    services: Services = request.app.state.services
    return services


def _get_registry(request: Request) -> SessionRegistry:
    registry: SessionRegistry = request.app.state.sessions
    return registry


def _get_controller(request: Request, session_id: str) -> SessionController:
    try:
        return _get_registry(request).get(session_id)
    except KeyError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Unknown session: {session_id}") from None


def _respond(controller: SessionController) -> SessionResponse:
    return SessionResponse.from_snapshot(
        controller.session_id,
        controller.snapshot,
        _LABELS,
        classification_pending=controller.classification_pending,
    )


@router.post(
    "/sessions",
    response_model=SessionResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Open a new analysis session",
)
async def create_session(request: Request) -> SessionResponse:
    controller = _get_registry(request).create()
    return _respond(controller)


@router.get(
    "/sessions/{session_id}",
    response_model=SessionResponse,
    responses={status.HTTP_404_NOT_FOUND: {"model": ErrorResponse}},
    summary="Current session snapshot",
)
async def get_session(request: Request, session_id: str) -> SessionResponse:
    return _respond(_get_controller(request, session_id))


@router.delete(
    "/sessions/{session_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    responses={status.HTTP_404_NOT_FOUND: {"model": ErrorResponse}},
    summary="Close a session and cancel in-flight work",
)
async def delete_session(request: Request, session_id: str) -> Response:
    try:
        await _get_registry(request).close(session_id)
    except KeyError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Unknown session: {session_id}") from None
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post(
    "/sessions/{session_id}/upload",
    response_model=SessionResponse,
    responses={
        status.HTTP_404_NOT_FOUND: {"model": ErrorResponse},
        status.HTTP_413_CONTENT_TOO_LARGE: {"model": ErrorResponse},
    },
    summary="Upload an embryo image for classification",
)
async def upload_image(request: Request, session_id: str, file: UploadFile, wait: bool = True) -> SessionResponse:
    """Validate and classify an uploaded image.

    Ingest and classification failures are reported on the session snapshot,
    not as HTTP errors. With ``wait=false`` the response is returned as soon as
    validation finishes.
    """
    controller = _get_controller(request, session_id)
    limit = _get_services(request).settings.max_file_size
    raw = await file.read(limit + 1)
    if len(raw) > limit:
        raise HTTPException(
            status_code=status.HTTP_413_CONTENT_TOO_LARGE,
            detail=f"Upload exceeds the {limit} byte limit",
        )
    await controller.upload(raw, file.content_type or "application/octet-stream", wait=wait)
    return _respond(controller)


@router.post(
    "/sessions/{session_id}/analysis",
    response_model=SessionResponse,
    responses={
        status.HTTP_404_NOT_FOUND: {"model": ErrorResponse},
        status.HTTP_409_CONFLICT: {"model": ErrorResponse},
    },
    summary="Show model-quality analysis",
)
async def show_analysis(request: Request, session_id: str) -> SessionResponse:
    controller = _get_controller(request, session_id)
    try:
        await controller.show_analysis()
    except NotReadyError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=exc.message) from None
    return _respond(controller)


@router.get(
    "/sessions/{session_id}/preprocessing/{stage}",
    response_class=Response,
    responses={
        status.HTTP_200_OK: {"content": {"image/png": {}}},
        status.HTTP_404_NOT_FOUND: {"model": ErrorResponse},
        status.HTTP_409_CONFLICT: {"model": ErrorResponse},
    },
    summary="Intermediate preprocessing view of the current image",
)
async def preprocessing_view(
    request: Request,
    session_id: str,
    stage: Literal["grayscale", "edges", "threshold"],
) -> Response:
    image = _get_controller(request, session_id).snapshot.image
    if image is None:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Session has no image")
    content = await asyncio.to_thread(render_view, image.pixels, stage)
    return Response(content=content, media_type="image/png")


@router.get(
    "/labels",
    response_model=LabelsResponse,
    summary="Embryo stage labels",
)
async def list_labels() -> LabelsResponse:
    return LabelsResponse(labels=_LABELS)


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
)
async def health(request: Request) -> HealthResponse:
    """Return service health status."""
    services = _get_services(request)
    manager = services.model_manager
    return HealthResponse(
        status="ok",
        gpu=services.settings.device == "cuda",
        classifier=services.engine.strategy.name,
        models_loaded=manager.get_loaded_models() if manager is not None else [],
        sessions=len(_get_registry(request)),
        concurrent_requests=services.pool.active_count,
        queue_depth=services.pool.queue_depth,
    )


@router.get(
    "/models",
    response_model=ModelsResponse,
    summary="List available models",
)
async def list_models(request: Request) -> ModelsResponse:
    """Return registered classifiers and which one is configured."""
    settings = _get_services(request).settings
    models = [
        ModelInfo(
            name=spec.name,
            input_size=spec.input_size,
            status="active" if settings.classifier == "onnx" and spec.name == settings.model_name else "available",
            license=spec.license,
        )
        for spec in MODEL_REGISTRY.values()
    ]
    return ModelsResponse(models=models)
