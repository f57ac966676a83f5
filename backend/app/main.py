"""FastAPI application for PixelFlow.

Endpoints:
    GET  /health          liveness
    GET  /capabilities    every registered provider schema
    POST /execute/sync    run a pipeline, return the aggregated result
    POST /execute/stream  run a pipeline, stream lifecycle events (SSE)
    POST /export/yaml     render a pipeline as YAML
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse, StreamingResponse

from app.config import get_config
from app.models import ExecuteRequest, ExecuteResponse, PipelineRequest
from pipeline.errors import ErrorCategory, PixelFlowError
from pipeline.events import error_payload
from pipeline.executor import ExecutionStream, PipelineExecutor
from pipeline.spec_parser import export_yaml
from providers.registry import build_registry

logger = logging.getLogger(__name__)

_STATUS_CODES = {
    ErrorCategory.VALIDATION: 400,
    ErrorCategory.NOT_FOUND: 404,
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan - build the registry once, before any request."""
    config = get_config()
    registry = build_registry(config)
    app.state.registry = registry
    app.state.executor = PipelineExecutor.from_config(config, registry)
    yield


app = FastAPI(
    title="PixelFlow",
    description="Image workflow pipeline execution",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS for the graph editor frontend
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def get_executor(request: Request) -> PipelineExecutor:
    """The executor built at startup (built lazily when lifespan didn't run)."""
    executor = getattr(request.app.state, "executor", None)
    if executor is None:
        executor = PipelineExecutor.from_config()
        request.app.state.executor = executor
    return executor


@app.exception_handler(PixelFlowError)
async def pixelflow_error_handler(request: Request, exc: PixelFlowError):
    status_code = _STATUS_CODES.get(exc.category, 500)
    return JSONResponse(status_code=status_code, content={"status": "error", **error_payload(exc)})


# --- Health & Discovery ---

@app.get("/health")
async def health():
    """Health check endpoint."""
    return {"status": "healthy"}


@app.get("/capabilities")
async def capabilities(request: Request):
    """List every registered capability with its parameter schema."""
    return get_executor(request).get_registry().capabilities()


# --- Execution ---

@app.post("/execute/sync", response_model=ExecuteResponse, response_model_exclude_none=True)
async def execute_sync(body: ExecuteRequest, request: Request):
    """Run a pipeline to completion.

    Malformed pipelines get a 400 before anything runs. Step failures get a
    500 that still carries every output produced before the failure.
    """
    executor = get_executor(request)
    result = await executor.run(body.to_definition(), body.decode_variables())
    response = ExecuteResponse(**result.to_response())
    if not result.success:
        return JSONResponse(status_code=500, content=response.model_dump(exclude_none=True))
    return response


async def _sse(stream: ExecutionStream) -> AsyncIterator[str]:
    async with stream:
        async for event in stream:
            yield event.to_sse()


@app.post("/execute/stream")
async def execute_stream(body: ExecuteRequest, request: Request):
    """Run a pipeline, streaming one SSE frame per lifecycle event.

    Validation runs before the response starts, so a malformed pipeline
    gets a plain 400 instead of a stream.
    """
    executor = get_executor(request)
    stream = executor.stream(body.to_definition(), body.decode_variables())
    return StreamingResponse(
        _sse(stream),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


# --- Export ---

@app.post("/export/yaml", response_class=PlainTextResponse)
async def export_pipeline_yaml(body: PipelineRequest):
    """Render a pipeline document as YAML."""
    return PlainTextResponse(export_yaml(body.to_definition()), media_type="application/x-yaml")


if __name__ == "__main__":
    import argparse
    import uvicorn
    from app.config import reload_config

    parser = argparse.ArgumentParser(description="PixelFlow Server")
    parser.add_argument(
        "--env", "-e",
        help="Path to .env file (can also set PIXELFLOW_ENV_FILE)",
        default=None,
    )
    parser.add_argument(
        "--port", "-p",
        type=int,
        default=None,
        help="Port to run on (default: 8000)",
    )
    parser.add_argument(
        "--host",
        default=None,
        help="Host to bind to (default: 0.0.0.0)",
    )

    args = parser.parse_args()

    # Reload config with explicit env path if provided
    if args.env:
        reload_config(args.env)

    config = get_config()
    uvicorn.run(app, host=args.host or config.host, port=args.port or config.port)
