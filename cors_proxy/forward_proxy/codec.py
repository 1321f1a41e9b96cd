"""
Mapping between absolute target URLs and paths in the proxy's own address space.

A target URL is addressed as ``PROXY_PREFIX + quote(url, safe="")``, so the
whole URL (scheme, query and fragment included) lives in a single path
segment and survives any amount of relative resolution by browsers.
"""

import re
from dataclasses import dataclass
from urllib.parse import quote, unquote, urlsplit

from cors_proxy.forward_proxy.errors import InvalidURL
from cors_proxy.vars import PROXY_PREFIX

ALLOWED_SCHEMES = ("http", "https")

_HAS_SCHEME = re.compile(r"^[a-zA-Z][a-zA-Z0-9+.-]*://")


@dataclass(frozen=True)
class RewriteContext:
    """Per-request rewrite inputs: where the proxy lives and what it fetched."""

    proxy_origin: str
    target_url: str


def encode(url: str) -> str:
    return f"{PROXY_PREFIX}{quote(url, safe='')}"


def decode(path: str) -> str:
    """
    Translate a client-supplied path into the target URL.

    The path is expected without the proxy prefix; a leading prefix is
    stripped if still present. URLs without a scheme default to ``http://``.

    Raises:
        InvalidURL: on empty input, undecodable percent-escapes, a scheme other
            than http/https, or a missing or malformed host.
    """
    if path.startswith(PROXY_PREFIX):
        path = path[len(PROXY_PREFIX):]
    if not path:
        raise InvalidURL("No target URL given")

    try:
        url = unquote(path, errors="strict")
    except UnicodeDecodeError as e:
        raise InvalidURL(f"Target URL is not valid percent-encoded UTF-8: {e}")

    if not _HAS_SCHEME.match(url):
        url = f"http://{url}"

    try:
        parts = urlsplit(url)
        # Accessing .port validates it
        parts.port
    except ValueError as e:
        raise InvalidURL(f"Target URL could not be parsed: {e}")

    if parts.scheme.lower() not in ALLOWED_SCHEMES:
        raise InvalidURL(
            f"Unsupported scheme '{parts.scheme}', only http and https are allowed"
        )
    if not parts.hostname or any(c.isspace() for c in parts.netloc):
        raise InvalidURL(f"Target URL has no valid host: {url}")

    return url


def proxy_url(context: RewriteContext, url: str) -> str:
    """Absolute proxy address for ``url`` as seen by the client."""
    return f"{context.proxy_origin}{encode(url)}"


def is_proxied(context: RewriteContext, url: str) -> bool:
    return url.startswith(f"{context.proxy_origin}{PROXY_PREFIX}")
