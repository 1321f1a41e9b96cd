"""
Upstream request construction and the single outbound network call.

Redirects are never followed and status codes are never validated: every
upstream answer is handed back to the classifier as-is.
"""

import asyncio
import contextlib
import logging
import re
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

import httpx
from fastapi import Request

from cors_proxy.forward_proxy.errors import (
    ClientDisconnected,
    InvalidHeader,
    InvalidURL,
    UpstreamError,
)
from cors_proxy.forward_proxy.headers import HeaderList
from cors_proxy.vars import PROXY_TIMEOUT

logger = logging.getLogger("uvicorn.error")

BODYLESS_METHODS = {"GET", "HEAD"}
DISCONNECT_POLL_INTERVAL = 0.5
# Codings httpx decodes without optional extras, so bodies always reach
# the rewriters decoded
UPSTREAM_ACCEPT_ENCODING = "gzip, deflate"

_CHARSET = re.compile(r"charset\s*=\s*[\"']?([\w.:-]+)", re.IGNORECASE)


@dataclass
class UpstreamRequest:
    method: str
    url: str
    headers: HeaderList = field(default_factory=list)
    body: Optional[bytes] = None


@dataclass
class UpstreamResponse:
    status_code: int
    headers: httpx.Headers
    content: bytes
    reason_phrase: str = ""

    @property
    def content_type(self) -> str:
        return self.headers.get("content-type", "").lower()

    @property
    def charset(self) -> Optional[str]:
        match = _CHARSET.search(self.content_type)
        return match.group(1) if match else None


def build_upstream_request(
    method: str, target_url: str, headers: HeaderList, body: Optional[bytes]
) -> UpstreamRequest:
    method = method.upper()
    if method in BODYLESS_METHODS:
        body = None
    headers = [(k, v) for k, v in headers if k.lower() != "accept-encoding"]
    headers.append(("accept-encoding", UPSTREAM_ACCEPT_ENCODING))
    return UpstreamRequest(method=method, url=target_url, headers=headers, body=body)


def encode_headers(headers: HeaderList) -> List[Tuple[bytes, bytes]]:
    """
    Headers as latin-1 bytes, the encoding they arrived in. httpx would
    otherwise encode str values as ASCII.
    """
    try:
        return [
            (name.encode("latin-1"), str(value).encode("latin-1"))
            for name, value in headers
        ]
    except UnicodeEncodeError as e:
        raise InvalidHeader(f"Header cannot be encoded as latin-1: {e}") from e


async def send_upstream(upstream_request: UpstreamRequest) -> UpstreamResponse:
    """
    Issue the upstream call and buffer the whole body.

    Raises:
        UpstreamError: when the call fails at the network level. If headers
            were already received, the partial response is attached.
    """
    async with httpx.AsyncClient(
        timeout=httpx.Timeout(PROXY_TIMEOUT),
        follow_redirects=False,  # Redirects are rewritten, not resolved
    ) as client:
        try:
            request = client.build_request(
                method=upstream_request.method,
                url=upstream_request.url,
                headers=encode_headers(upstream_request.headers),
                content=upstream_request.body,
            )
        except httpx.InvalidURL as e:
            raise InvalidURL(f"Target URL rejected by HTTP client: {e}") from e
        try:
            response = await client.send(request, stream=True)
        except httpx.TimeoutException as e:
            raise UpstreamError(
                f"Upstream timed out: {upstream_request.url}", status_code=504
            ) from e
        except httpx.HTTPError as e:
            raise UpstreamError(
                f"Cannot reach upstream {upstream_request.url}: {e}"
            ) from e

        chunks = []
        try:
            async for chunk in response.aiter_bytes():
                chunks.append(chunk)
        except httpx.HTTPError as e:
            logger.warning(
                f"[Proxy] Upstream body for {upstream_request.url} broke off after "
                f"{sum(len(c) for c in chunks)} bytes: {e}"
            )
            raise UpstreamError(
                f"Upstream response from {upstream_request.url} was cut short: {e}",
                partial=UpstreamResponse(
                    status_code=response.status_code,
                    headers=response.headers,
                    content=b"".join(chunks),
                    reason_phrase=response.reason_phrase,
                ),
            ) from e
        finally:
            await response.aclose()

    return UpstreamResponse(
        status_code=response.status_code,
        headers=response.headers,
        content=b"".join(chunks),
        reason_phrase=response.reason_phrase,
    )


async def _wait_for_disconnect(request: Request) -> None:
    while not await request.is_disconnected():
        await asyncio.sleep(DISCONNECT_POLL_INTERVAL)


async def forward_until_disconnect(
    request: Request, upstream_request: UpstreamRequest
) -> UpstreamResponse:
    """Run the upstream call, abandoning it if the client disconnects first."""
    upstream = asyncio.ensure_future(send_upstream(upstream_request))
    disconnect = asyncio.ensure_future(_wait_for_disconnect(request))
    try:
        done, _ = await asyncio.wait(
            {upstream, disconnect}, return_when=asyncio.FIRST_COMPLETED
        )
    finally:
        for task in (upstream, disconnect):
            if not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task

    if upstream in done:
        return upstream.result()
    error = disconnect.exception()
    if error is not None:
        raise error
    raise ClientDisconnected(f"Client disconnected before {upstream_request.url} answered")
