from enum import Enum
from urllib.parse import urlsplit

from cors_proxy.forward_proxy.forwarder import UpstreamResponse

SOURCE_TEXT_EXTENSIONS = (".js", ".ts", ".mjs", ".cjs")
SOURCE_TEXT_CONTENT_TYPES = ("javascript", "typescript", "text/plain")


class Strategy(str, Enum):
    REDIRECT = "redirect"
    MARKUP = "markup"
    SOURCE_TEXT = "source_text"
    PASSTHROUGH = "passthrough"


def is_redirect(upstream: UpstreamResponse) -> bool:
    return 300 <= upstream.status_code < 400 and "location" in upstream.headers


def classify(upstream: UpstreamResponse, target_url: str) -> Strategy:
    """
    Pick the one rewrite strategy for an upstream response.

    Order matters: redirects are recognised before any content-type check,
    since a 3xx usually carries an HTML stub body.
    """
    if is_redirect(upstream):
        return Strategy.REDIRECT

    content_type = upstream.content_type
    if "text/html" in content_type:
        return Strategy.MARKUP

    path = urlsplit(target_url).path.lower()
    if path.endswith(SOURCE_TEXT_EXTENSIONS) and any(
        kind in content_type for kind in SOURCE_TEXT_CONTENT_TYPES
    ):
        return Strategy.SOURCE_TEXT

    return Strategy.PASSTHROUGH
