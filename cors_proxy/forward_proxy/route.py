import logging
from urllib.parse import urlsplit, urlunsplit

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse, Response
from opentelemetry import trace
from starlette.requests import ClientDisconnect

from cors_proxy.forward_proxy.classifier import classify
from cors_proxy.forward_proxy.codec import RewriteContext, decode
from cors_proxy.forward_proxy.errors import (
    ClientDisconnected,
    InvalidHeader,
    InvalidURL,
    ProxyError,
    ServerError,
    UpstreamError,
)
from cors_proxy.forward_proxy.forwarder import (
    build_upstream_request,
    forward_until_disconnect,
)
from cors_proxy.forward_proxy.headers import cors_headers, sanitize_request_headers
from cors_proxy.forward_proxy.rewriters import (
    ProxiedResponse,
    apply_strategy,
    passthrough,
)
from cors_proxy.utils import mask_url
from cors_proxy.utils.exception_logging import log_exception_with_details
from cors_proxy.utils.traced_requests import traced_request
from cors_proxy.vars import PROXY_PREFIX, PUBLIC_URL

router = APIRouter()
tracer = trace.get_tracer(__name__)
logger = logging.getLogger("uvicorn.error")

PROXY_METHODS = ["GET", "POST", "PUT", "DELETE", "PATCH", "HEAD", "OPTIONS"]

# nginx convention for "client closed request"
CLIENT_CLOSED_REQUEST = 499


def get_proxy_origin(request: Request) -> str:
    """Scheme and host under which the client reaches this proxy."""
    if PUBLIC_URL:
        return PUBLIC_URL
    host = request.headers.get("host") or request.url.netloc
    return f"{request.url.scheme}://{host}"


def get_target_path(request: Request) -> str:
    """
    The still percent-encoded path after the proxy prefix.

    The raw path is used so that encoded characters inside the target URL
    are decoded exactly once, by the codec.
    """
    raw_path = request.scope.get("raw_path")
    if raw_path:
        path = raw_path.split(b"?", 1)[0].decode("latin-1")
    else:
        path = request.url.path

    index = path.find(PROXY_PREFIX)
    if index != -1:
        path = path[index + len(PROXY_PREFIX):]
    return path


def get_target_url(request: Request) -> str:
    """Decode the target URL, merging any query string sent unencoded."""
    url = decode(get_target_path(request))
    query = request.url.query
    if query:
        parts = urlsplit(url)
        merged = f"{parts.query}&{query}" if parts.query else query
        url = urlunsplit(parts._replace(query=merged))
    return url


def is_preflight(request: Request) -> bool:
    return (
        request.method == "OPTIONS"
        and "access-control-request-method" in request.headers
    )


def preflight_response() -> Response:
    headers = cors_headers()
    headers["Access-Control-Allow-Methods"] = ", ".join(PROXY_METHODS)
    headers["Access-Control-Max-Age"] = "86400"
    return Response(status_code=204, headers=headers)


def error_response(error: ProxyError) -> JSONResponse:
    return JSONResponse(
        error.to_payload(), status_code=error.status_code, headers=cors_headers()
    )


def to_response(proxied: ProxiedResponse) -> Response:
    response = Response(content=proxied.body, status_code=proxied.status_code)
    # append keeps repeated headers such as set-cookie
    for name, value in proxied.headers:
        response.headers.append(name, value)
    return response


async def forward_to_target(request: Request) -> Response:
    """
    Forward an incoming request to the URL encoded in its path.

    Steps:
    - decode the target URL (400 on failure, no upstream call)
    - forward method, sanitized headers and body; redirects are not followed
    - classify the upstream response and apply exactly one rewrite strategy
    - attach permissive CORS headers on every path, errors included
    """
    if is_preflight(request):
        return preflight_response()

    try:
        target_url = get_target_url(request)
    except InvalidURL as e:
        logger.warning(f"[Proxy] Rejected {request.method} {request.url.path}: {e.detail}")
        return error_response(e)

    context = RewriteContext(proxy_origin=get_proxy_origin(request), target_url=target_url)

    with traced_request(
        tracer,
        operation="proxy_request",
        method=request.method,
        target_url=target_url,
        start_message=f"[Proxy] {request.method} -> {mask_url(target_url)}",
    ) as span:
        try:
            body = await request.body()
            upstream_request = build_upstream_request(
                request.method,
                target_url,
                sanitize_request_headers(request.headers.items()),
                body,
            )
            upstream = await forward_until_disconnect(request, upstream_request)
        except (ClientDisconnect, ClientDisconnected):
            logger.info(f"[Proxy] Client went away, dropped {mask_url(target_url)}")
            span.set_attribute("proxy.error", "client_disconnected")
            return Response(status_code=CLIENT_CLOSED_REQUEST)
        except (InvalidURL, InvalidHeader) as e:
            logger.warning(f"[Proxy] Rejected {mask_url(target_url)}: {e.detail}")
            span.set_attribute("proxy.error", e.error)
            return error_response(e)
        except UpstreamError as e:
            log_exception_with_details(
                logger, "[Proxy]", e, level=logging.WARNING, with_traceback=False
            )
            span.set_attribute("proxy.error", "upstream_failed")
            if e.partial is not None:
                span.set_attribute("proxy.status_code", e.partial.status_code)
                return to_response(passthrough(e.partial, context))
            return error_response(e)

        span.set_attribute("proxy.status_code", upstream.status_code)

        try:
            strategy = classify(upstream, target_url)
            span.set_attribute("proxy.strategy", strategy.value)
            proxied = apply_strategy(strategy, upstream, context)
        except Exception as e:
            log_exception_with_details(
                logger, f"[Proxy] Rewriting {mask_url(target_url)} failed:", e
            )
            span.set_attribute("proxy.error", "rewrite_failed")
            return error_response(ServerError("Internal proxy error"))

        logger.debug(
            f"[Proxy] {upstream.status_code} {strategy.value} "
            f"{len(upstream.content)} -> {len(proxied.body)} bytes"
        )
        return to_response(proxied)


# Register catch-all route for proxying
@router.api_route(PROXY_PREFIX + "{path:path}", methods=PROXY_METHODS)
async def proxy_all(request: Request, path: str):
    """Catch-all route that proxies all requests to the URL encoded in the path."""
    return await forward_to_target(request)
