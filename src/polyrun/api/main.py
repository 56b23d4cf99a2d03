"""
FastAPI application for the execution service.

This module configures the FastAPI application, registers the execution
routes and enforces authentication via an API key.  All blocking work is
done on the coordinator's worker pool; request handlers only await the
future it returns.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Dict

from fastapi import FastAPI, HTTPException
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from ..config import Config
from ..engine import ExecutionCoordinator, ExecutionRequest
from ..errors import Busy, UnsupportedLanguage
from ..models import CancelResponse, ExecuteRequest, ExecuteResponse, LanguageInfo, LanguagesResponse


logger = logging.getLogger("polyrun")

if not logger.handlers:
    handler = logging.StreamHandler()
    formatter = logging.Formatter("[polyrun] %(levelname)s - %(message)s")
    handler.setFormatter(formatter)
    logger.addHandler(handler)


config = Config.from_env()

logger.setLevel(config.log_level)

coordinator = ExecutionCoordinator.from_config(config)

logger.info(
    "Loaded config: languages=%s, workers=%s, admission=%s, isolation=%s, workspace_root=%s",
    coordinator.registry.ids(),
    config.max_workers,
    config.admission,
    coordinator.provisioner.isolation,
    config.workspace_root,
)


app = FastAPI(title="Code Execution Service", version="0.1.0")


@app.middleware("http")
async def authenticate(request, call_next):
    """Middleware to enforce API key authentication on all requests."""
    path = request.url.path
    method = request.method
    client = getattr(request.client, "host", "unknown")
    logger.info("Incoming request: %s %s from %s", method, path, client)

    if config.api_key and path != "/health":
        provided_key = request.headers.get("x-api-key")
        if provided_key != config.api_key:
            logger.warning("Invalid API key for %s %s from %s", method, path, client)
            return JSONResponse(status_code=401, content={"detail": "Invalid API key"})

    response = await call_next(request)
    logger.info("Response: %s %s -> %s", method, path, response.status_code)
    return response


@app.exception_handler(RequestValidationError)
async def validation_error(request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(status_code=400, content={"detail": jsonable_encoder(exc.errors())})


@app.get("/health")
async def health() -> Dict[str, str]:
    """Return a simple health check response."""
    return {"status": "ok"}


@app.get("/v1/languages", response_model=LanguagesResponse, response_model_by_alias=True)
async def list_languages() -> LanguagesResponse:
    """List the toolchains this instance accepts."""
    return LanguagesResponse(
        languages=[LanguageInfo.from_toolchain(toolchain) for toolchain in coordinator.registry]
    )


@app.post("/v1/execute", response_model=ExecuteResponse, response_model_exclude_none=True)
async def execute(req: ExecuteRequest) -> ExecuteResponse:
    """Run a program to completion and return its captured output."""
    limits = req.limits.model_dump(exclude_none=True) if req.limits else {}
    request = ExecutionRequest(
        language=req.language,
        source=req.source,
        stdin=req.stdin,
        limits=limits,
        execution_id=req.execution_id,
    )
    try:
        future = coordinator.submit(request)
    except UnsupportedLanguage as exc:
        logger.warning("[/v1/execute] %s", exc.message)
        raise HTTPException(status_code=400, detail=exc.message)
    except Busy as exc:
        raise HTTPException(status_code=503, detail=exc.message)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))

    try:
        result = await asyncio.wrap_future(future)
    except Exception as exc:
        logger.exception("[/v1/execute] Unhandled error during execution: %s", exc)
        raise HTTPException(status_code=500, detail="Execution error")
    return ExecuteResponse.from_result(result)


@app.post("/v1/executions/{execution_id}/cancel", response_model=CancelResponse)
async def cancel_execution(execution_id: str) -> CancelResponse:
    """Cancel an execution that was submitted with ``executionId``."""
    if not coordinator.cancel(execution_id):
        raise HTTPException(status_code=404, detail="Execution not found")
    return CancelResponse(execution_id=execution_id, cancelled=True)
