from __future__ import annotations

import logging
from typing import Any
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response

from llm_balancer.config import BalancerConfig, load_balancer_config
from llm_balancer.envelope import MalformedRequestBodyError, parse_chat_request
from llm_balancer.proxy import BackendProxy, ProxyRequestExecutor
from llm_balancer.selector import BackendSelector
from llm_balancer.settings import get_settings

CORS_ALLOW_METHODS = ["POST", "OPTIONS"]
CORS_ALLOW_HEADERS = ["Content-Type", "Authorization"]
# Sent on every chat-completions response, with or without an Origin header.
CHAT_CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": ", ".join(CORS_ALLOW_METHODS),
    "Access-Control-Allow-Headers": ", ".join(CORS_ALLOW_HEADERS),
}

app = FastAPI(
    title="LLM Balancer",
    description="Load-balancing reverse proxy for OpenAI-compatible chat completions.",
    version="0.1.0",
)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=CORS_ALLOW_METHODS,
    allow_headers=CORS_ALLOW_HEADERS,
)

logger = logging.getLogger("uvicorn.error")


def log_backends(config: BalancerConfig) -> None:
    for index, backend in enumerate(config.backends, start=1):
        logger.info(
            "backend_loaded index=%d name=%s url=%s weight=%d default_model=%s models=%s",
            index,
            backend.name,
            backend.url,
            backend.effective_weight,
            backend.resolved_default_model() or "-",
            ",".join(backend.models),
        )


def build_executor(config: BalancerConfig) -> ProxyRequestExecutor:
    return ProxyRequestExecutor(
        selector=BackendSelector(config.backends, config.selection_mode),
        proxy=BackendProxy(timeout_seconds=config.timeout),
        max_attempts=config.retry,
    )


def _build_models_response(config: BalancerConfig) -> dict[str, Any]:
    seen: set[str] = set()
    data: list[dict[str, Any]] = []
    for backend in config.backends:
        for model_id in backend.models:
            if model_id in seen:
                continue
            seen.add(model_id)
            data.append({"id": model_id, "object": "model", "owned_by": backend.name})
    return {"object": "list", "data": data}


@app.on_event("startup")
async def startup() -> None:
    settings = get_settings()
    config = load_balancer_config(settings.balancer_config_path)
    log_backends(config)
    app.state.settings = settings
    app.state.balancer_config = config
    app.state.executor = build_executor(config)
    logger.info(
        "startup complete config_path=%s mode=%s backends=%d retry=%d timeout_s=%g",
        settings.balancer_config_path,
        config.mode,
        len(config.backends),
        config.retry,
        config.timeout,
    )


@app.on_event("shutdown")
async def shutdown() -> None:
    executor: ProxyRequestExecutor | None = getattr(app.state, "executor", None)
    if executor is not None:
        await executor.proxy.close()
    logger.info("shutdown complete")


@app.get("/health")
async def health() -> dict[str, Any]:
    config: BalancerConfig = app.state.balancer_config
    return {"status": "ok", "backends": len(config.backends), "mode": config.mode}


@app.get("/v1/models")
async def models() -> dict[str, Any]:
    config: BalancerConfig = app.state.balancer_config
    return _build_models_response(config)


@app.options("/v1/chat/completions")
async def chat_completions_preflight() -> Response:
    return Response(status_code=200, headers=CHAT_CORS_HEADERS)


@app.post("/v1/chat/completions")
async def chat_completions(request: Request) -> Response:
    body = await request.body()
    try:
        envelope = parse_chat_request(body)
    except MalformedRequestBodyError as exc:
        raise HTTPException(
            status_code=400, detail=str(exc), headers=CHAT_CORS_HEADERS
        ) from exc

    request_id = (
        request.headers.get("x-request-id")
        or request.headers.get("x-correlation-id")
        or uuid4().hex[:12]
    )
    executor: ProxyRequestExecutor = app.state.executor
    response = await executor.execute(envelope, request_id=request_id)
    response.headers.update(CHAT_CORS_HEADERS)
    return response


def run(host: str | None = None, port: int | None = None, log_level: str | None = None) -> None:
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        app,
        host=host or settings.balancer_host,
        port=port or settings.balancer_port or 8080,
        log_level=log_level or settings.balancer_log_level,
    )
