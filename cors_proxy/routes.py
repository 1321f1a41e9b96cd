import json
import logging
from typing import Any, Optional, Tuple
from urllib.parse import urlsplit

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from opentelemetry import trace

from cors_proxy.forward_proxy.codec import ALLOWED_SCHEMES, encode
from cors_proxy.forward_proxy.errors import ClientDisconnected, ProxyError
from cors_proxy.forward_proxy.forwarder import (
    UpstreamResponse,
    build_upstream_request,
    forward_until_disconnect,
)
from cors_proxy.forward_proxy.headers import cors_headers, sanitize_request_headers
from cors_proxy.forward_proxy.route import (
    PROXY_METHODS,
    is_preflight,
    preflight_response,
    router as forward_proxy_router,
)
from cors_proxy.models import EnvelopeRequest, EnvelopeResponse, ErrorPayload
from cors_proxy.utils import mask_url
from cors_proxy.utils.exception_logging import (
    format_exception_message,
    log_exception_with_details,
)
from cors_proxy.utils.traced_requests import traced_request
from cors_proxy.vars import PROXY_PREFIX, SERVICE_NAME

router = APIRouter()
logger = logging.getLogger("uvicorn.error")
tracer = trace.get_tracer(__name__)

ENVELOPE_METHODS = {
    "GET",
    "PUT",
    "POST",
    "DELETE",
    "PATCH",
    "HEAD",
    "OPTIONS",
    "TRACE",
    "CONNECT",
}


def _error(message: str, status_code: int) -> JSONResponse:
    return JSONResponse({"error": message}, status_code=status_code, headers=cors_headers())


def is_valid_url(url: str) -> bool:
    """Envelope URLs must be fully qualified http(s) URLs; no scheme defaulting."""
    try:
        parts = urlsplit(url)
        parts.port
    except ValueError:
        return False
    return parts.scheme.lower() in ALLOWED_SCHEMES and bool(parts.hostname)


def encode_envelope_body(body: Any) -> Tuple[Optional[bytes], Optional[str]]:
    """Strings are sent as-is, anything else as JSON."""
    if body is None:
        return None, None
    if isinstance(body, str):
        return body.encode("utf-8"), None
    return json.dumps(body).encode("utf-8"), "application/json"


def decode_envelope_body(upstream: UpstreamResponse) -> Any:
    if "json" in upstream.content_type:
        try:
            return json.loads(upstream.content)
        except ValueError:
            pass
    try:
        return upstream.content.decode(upstream.charset or "utf-8", errors="replace")
    except LookupError:
        return upstream.content.decode("utf-8", errors="replace")


@router.get("/")
async def usage():
    """Static usage information."""
    example = "https://example.com/index.html"
    return {
        "service": SERVICE_NAME,
        "usage": {
            "path": {
                "route": f"{PROXY_PREFIX}{{percent-encoded-url}}",
                "methods": PROXY_METHODS,
                "example": encode(example),
                "notes": [
                    "The target URL is percent-encoded into a single path segment.",
                    "A URL without scheme defaults to http://.",
                    "Links, scripts, images and redirects in responses are rewritten "
                    "to go through the proxy.",
                ],
            },
            "envelope": {
                "route": PROXY_PREFIX.rstrip("/"),
                "method": "POST",
                "body": {"url": example, "method": "GET", "headers": {}, "body": None},
                "returns": ["body", "headers", "status", "statusText"],
            },
        },
    }


@router.post(
    PROXY_PREFIX.rstrip("/"),
    response_model=EnvelopeResponse,
    responses={400: {"model": ErrorPayload}, 500: {"model": ErrorPayload}},
)
async def envelope(request: Request, payload: EnvelopeRequest):
    """
    Replay the request described in the JSON body and report the upstream
    answer as JSON. Redirects are reported, not followed.
    """
    if not payload.url or not payload.method:
        return _error(
            "One or more fields are missing, please check your method and URL body value",
            400,
        )
    if not is_valid_url(payload.url):
        return _error("Invalid URL. It should use http/https protocol", 400)

    method = payload.method.upper()
    if method not in ENVELOPE_METHODS:
        return _error(f"{method} is an invalid HTTP method", 400)

    body, content_type = encode_envelope_body(payload.body)
    # axios-style clients send numbers and booleans as header values
    headers = sanitize_request_headers(
        (name, str(value)) for name, value in (payload.headers or {}).items()
    )
    if content_type and not any(k.lower() == "content-type" for k, _ in headers):
        headers.append(("content-type", content_type))

    with traced_request(
        tracer,
        operation="envelope_request",
        method=method,
        target_url=payload.url,
        start_message=f"[Envelope] {method} -> {mask_url(payload.url)}",
    ) as span:
        try:
            upstream = await forward_until_disconnect(
                request, build_upstream_request(method, payload.url, headers, body)
            )
        except (ProxyError, ClientDisconnected) as e:
            log_exception_with_details(
                logger, "[Envelope]", e, level=logging.WARNING, with_traceback=False
            )
            span.set_attribute("proxy.error", type(e).__name__)
            return _error(format_exception_message(e), 500)

        span.set_attribute("proxy.status_code", upstream.status_code)
        result = EnvelopeResponse(
            body=decode_envelope_body(upstream),
            headers=dict(upstream.headers.items()),
            status=upstream.status_code,
            statusText=upstream.reason_phrase,
        )
        return JSONResponse(result.model_dump(), headers=cors_headers())


@router.api_route(
    PROXY_PREFIX.rstrip("/"),
    methods=[m for m in PROXY_METHODS if m != "POST"],
    include_in_schema=False,
)
async def envelope_wrong_method(request: Request):
    if is_preflight(request):
        return preflight_response()
    return JSONResponse({"error": "You should use POST method"}, headers=cors_headers())


router.include_router(forward_proxy_router)
