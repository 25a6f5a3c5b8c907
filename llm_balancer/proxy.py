from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any
from uuid import uuid4

import httpx
from fastapi import status
from fastapi.responses import JSONResponse, Response, StreamingResponse

from llm_balancer.envelope import ChatRequestEnvelope
from llm_balancer.errors import (
    NoUsableModelError,
    UpstreamError,
    UpstreamHTTPError,
    UpstreamTransportError,
)
from llm_balancer.relay import StreamRelay, copy_body, streaming_headers
from llm_balancer.selector import BackendSelector, RoutingDecision

MAX_LOGGED_ERROR_BODY_CHARS = 2000

logger = logging.getLogger("uvicorn.error")


def _request_error_details(exc: Exception) -> tuple[str, str]:
    error_type = exc.__class__.__name__.strip() or "RequestError"
    error_message = str(exc).strip() or repr(exc)
    return error_type, error_message


@dataclass(slots=True)
class ProxyRequestContext:
    envelope: ChatRequestEnvelope
    request_id: str
    request_started: float = field(default_factory=time.perf_counter)
    attempted_backends: list[str] = field(default_factory=list)

    @property
    def tried(self) -> set[str]:
        return set(self.attempted_backends)


class BackendProxy:
    """Sends one chat-completion call to one backend and classifies the result."""

    def __init__(
        self,
        timeout_seconds: float,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.timeout_seconds = max(0.1, float(timeout_seconds))
        self.client = httpx.AsyncClient(
            timeout=httpx.Timeout(self.timeout_seconds),
            limits=httpx.Limits(max_connections=512, max_keepalive_connections=128),
            follow_redirects=True,
            transport=transport,
        )

    async def close(self) -> None:
        await self.client.aclose()

    @staticmethod
    def build_headers(decision: RoutingDecision) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        api_key = decision.backend.resolved_api_key()
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        return headers

    async def dispatch(
        self,
        decision: RoutingDecision,
        envelope: ChatRequestEnvelope,
        *,
        request_id: str = "-",
        deadline: float | None = None,
    ) -> httpx.Response:
        backend_name = decision.backend.name
        try:
            request = self.client.build_request(
                method="POST",
                url=decision.backend.chat_completions_url,
                content=envelope.render(decision.model),
                headers=self.build_headers(decision),
            )
        except (httpx.InvalidURL, UnicodeEncodeError) as exc:
            # Unusable backend url or non-ASCII credential.
            error_type, error_message = _request_error_details(exc)
            raise UpstreamTransportError(
                backend_name, error_message, error_type=error_type
            ) from exc

        try:
            async with asyncio.timeout_at(deadline):
                upstream = await self.client.send(request, stream=True)
        except TimeoutError as exc:
            raise UpstreamTransportError(
                backend_name,
                f"no response within {self.timeout_seconds:g}s",
                error_type="Timeout",
            ) from exc
        except httpx.RequestError as exc:
            error_type, error_message = _request_error_details(exc)
            raise UpstreamTransportError(
                backend_name, error_message, error_type=error_type
            ) from exc

        if upstream.status_code >= 400:
            body = await self._read_error_body(upstream)
            logger.warning(
                "proxy_upstream_http_error request_id=%s backend=%s status=%d body=%s",
                request_id,
                backend_name,
                upstream.status_code,
                body[:MAX_LOGGED_ERROR_BODY_CHARS],
            )
            raise UpstreamHTTPError(backend_name, upstream.status_code, body)
        return upstream

    @staticmethod
    async def _read_error_body(upstream: httpx.Response) -> str:
        try:
            raw = await upstream.aread()
        except httpx.HTTPError as exc:
            return f"<unreadable: {exc.__class__.__name__}>"
        finally:
            await upstream.aclose()
        return raw.decode("utf-8", errors="replace")


class ProxyRequestExecutor:
    """Retry loop: select, dispatch, relay; exclude failed backends on retry."""

    def __init__(
        self,
        *,
        selector: BackendSelector,
        proxy: BackendProxy,
        max_attempts: int,
    ) -> None:
        self._selector = selector
        self._proxy = proxy
        self._max_attempts = max(1, int(max_attempts))

    @property
    def proxy(self) -> BackendProxy:
        return self._proxy

    async def execute(
        self,
        envelope: ChatRequestEnvelope,
        request_id: str | None = None,
    ) -> Response:
        context = ProxyRequestContext(
            envelope=envelope,
            request_id=request_id or uuid4().hex[:12],
        )
        decision: RoutingDecision | None = None
        last_error: UpstreamError | None = None

        for attempt in range(1, self._max_attempts + 1):
            decision = self._select(context=context, attempt=attempt, previous=decision)
            if decision is None:
                return self._no_backends_response(context)

            context.attempted_backends.append(decision.backend.name)
            logger.info(
                "proxy_attempt request_id=%s attempt=%d/%d requested_model=%s backend=%s model=%s stream=%s",
                context.request_id,
                attempt,
                self._max_attempts,
                envelope.model or "-",
                decision.backend.name,
                decision.model or "-",
                envelope.stream,
            )
            try:
                return await self._attempt(decision=decision, context=context)
            except UpstreamError as exc:
                last_error = exc
                logger.warning(
                    "proxy_attempt_failed request_id=%s attempt=%d/%d backend=%s retryable=%s error=%s",
                    context.request_id,
                    attempt,
                    self._max_attempts,
                    exc.backend_name,
                    exc.retryable,
                    exc,
                )
                if not exc.retryable:
                    break

        return self._failure_response(context, last_error)

    def _select(
        self,
        *,
        context: ProxyRequestContext,
        attempt: int,
        previous: RoutingDecision | None,
    ) -> RoutingDecision | None:
        if attempt == 1 or previous is None:
            return self._selector.route(context.envelope.model)

        decision = self._selector.select_next(excluding=context.tried)
        if decision is not None:
            return decision

        # Every backend has been tried: repeat the last one as-is.
        logger.info(
            "proxy_retry_repeat request_id=%s attempt=%d backend=%s model=%s",
            context.request_id,
            attempt,
            previous.backend.name,
            previous.model,
        )
        return previous

    async def _attempt(
        self,
        *,
        decision: RoutingDecision,
        context: ProxyRequestContext,
    ) -> Response:
        backend_name = decision.backend.name
        if not decision.model:
            raise NoUsableModelError(backend_name)

        deadline = asyncio.get_running_loop().time() + self._proxy.timeout_seconds
        upstream = await self._proxy.dispatch(
            decision,
            context.envelope,
            request_id=context.request_id,
            deadline=deadline,
        )
        headers = self._diagnostic_headers(decision, context)

        if context.envelope.stream:
            relay = StreamRelay(
                upstream,
                backend_name=backend_name,
                request_id=context.request_id,
            )
            await relay.open()
            self._log_response(decision, context, upstream.status_code)
            return StreamingResponse(
                content=relay.body_iterator(),
                status_code=status.HTTP_200_OK,
                headers=streaming_headers(headers),
            )

        body = await copy_body(upstream, backend_name=backend_name, deadline=deadline)
        self._log_response(decision, context, upstream.status_code)
        return Response(
            content=body,
            status_code=status.HTTP_200_OK,
            headers=headers,
            media_type="application/json",
        )

    @staticmethod
    def _diagnostic_headers(
        decision: RoutingDecision, context: ProxyRequestContext
    ) -> dict[str, Any]:
        return {
            "x-balancer-request-id": context.request_id,
            "x-balancer-backend": decision.backend.name,
            "x-balancer-model": decision.model,
            "x-balancer-attempts": str(len(context.attempted_backends)),
        }

    @staticmethod
    def _log_response(
        decision: RoutingDecision, context: ProxyRequestContext, upstream_status: int
    ) -> None:
        logger.info(
            "proxy_response request_id=%s backend=%s model=%s status=%d attempts=%d latency_ms=%.2f",
            context.request_id,
            decision.backend.name,
            decision.model,
            upstream_status,
            len(context.attempted_backends),
            (time.perf_counter() - context.request_started) * 1000.0,
        )

    @staticmethod
    def _no_backends_response(context: ProxyRequestContext) -> JSONResponse:
        logger.error("proxy_no_backends request_id=%s", context.request_id)
        return JSONResponse(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            content={
                "error": {
                    "type": "no_backends",
                    "message": "No backends available.",
                }
            },
        )

    @staticmethod
    def _failure_response(
        context: ProxyRequestContext, last_error: UpstreamError | None
    ) -> JSONResponse:
        detail = (
            f"{last_error.backend_name}: {last_error}"
            if last_error is not None
            else "no attempt was made"
        )
        if last_error is not None and not last_error.retryable:
            error_type = "upstream_relay_error"
            message = f"Backend relay failed: {detail}"
        else:
            error_type = "all_backends_failed"
            message = f"All backends failed: {detail}"

        logger.error(
            "proxy_exhausted request_id=%s attempted_backends=%s error_type=%s last_error=%s",
            context.request_id,
            ",".join(context.attempted_backends),
            error_type,
            detail,
        )
        return JSONResponse(
            status_code=status.HTTP_502_BAD_GATEWAY,
            content={
                "error": {
                    "type": error_type,
                    "message": message,
                    "attempted_backends": context.attempted_backends,
                }
            },
        )
