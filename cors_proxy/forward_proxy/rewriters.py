"""
The four rewrite strategies applied to an upstream response.

Each strategy is a plain function ``(upstream, context) -> ProxiedResponse``
and never touches the network. Individual URLs that cannot be rewritten are
left as they were; only a failure of the whole document escapes.
"""

import codecs
import logging
import re
from dataclasses import dataclass
from typing import Callable, Dict, Optional
from urllib.parse import urljoin, urlsplit

from bs4 import BeautifulSoup
from bs4.dammit import EntitySubstitution
from bs4.formatter import HTMLFormatter

from cors_proxy.forward_proxy.classifier import Strategy
from cors_proxy.forward_proxy.codec import (
    ALLOWED_SCHEMES,
    RewriteContext,
    is_proxied,
    proxy_url,
)
from cors_proxy.forward_proxy.forwarder import UpstreamResponse
from cors_proxy.forward_proxy.headers import (
    HeaderList,
    replace_header,
    sanitize_response_headers,
)

logger = logging.getLogger("uvicorn.error")

# (tag, attribute) pairs holding a single URL
MARKUP_URL_ATTRIBUTES = (
    ("img", "src"),
    ("script", "src"),
    ("link", "href"),
    ("a", "href"),
    ("form", "action"),
)
SRCSET_TAGS = ["img", "source"]

# Same escaping as bs4's "minimal" formatter, but void elements stay <img ...>
MARKUP_FORMATTER = HTMLFormatter(
    entity_substitution=EntitySubstitution.substitute_xml,
    void_element_close_prefix=None,
)

# Balanced parentheses belong to the URL (Foo_(bar)); an unbalanced ")"
# closes a CSS url(...) or a call. "$" starts template interpolation.
ABSOLUTE_URL_PATTERN = re.compile(
    r"""(["'`(])(https?://(?:[^\s"'`()<>$]|\([^\s"'`()<>$]*\))+)(["'`)]?)"""
)
DYNAMIC_IMPORT_PATTERN = re.compile(r"""import\(\s*(["'`])(https?://[^\s"'`]+)\1\s*\)""")


@dataclass
class ProxiedResponse:
    status_code: int
    headers: HeaderList
    body: bytes
    strategy: Strategy


def _proxy_absolute(context: RewriteContext, url: str) -> Optional[str]:
    """Proxy address for an absolute http(s) URL, or None to keep it as is."""
    if is_proxied(context, url):
        return None
    try:
        parts = urlsplit(url)
        parts.port
    except ValueError:
        logger.debug(f"[Proxy] Leaving unparsable URL untouched: {url!r}")
        return None
    if parts.scheme.lower() not in ALLOWED_SCHEMES or not parts.hostname:
        return None
    return proxy_url(context, url)


def rewrite_reference(context: RewriteContext, value: str) -> str:
    """Resolve a (possibly relative) reference against the target and proxy it."""
    reference = value.strip()
    if not reference or reference.startswith("#"):
        return value
    if is_proxied(context, reference):
        return value
    try:
        absolute = urljoin(context.target_url, reference)
    except ValueError:
        logger.debug(f"[Proxy] Leaving unresolvable reference untouched: {value!r}")
        return value
    rewritten = _proxy_absolute(context, absolute)
    return value if rewritten is None else rewritten


def rewrite_srcset(context: RewriteContext, value: str) -> str:
    candidates = []
    for candidate in value.split(","):
        candidate = candidate.strip()
        if not candidate:
            continue
        url, *descriptor = candidate.split(None, 1)
        url = rewrite_reference(context, url)
        candidates.append(" ".join([url] + descriptor))
    return ", ".join(candidates)


def _text_encoding(upstream: UpstreamResponse) -> str:
    if upstream.charset:
        try:
            return codecs.lookup(upstream.charset).name
        except LookupError:
            pass
    return "utf-8"


def rewrite_redirect(upstream: UpstreamResponse, context: RewriteContext) -> ProxiedResponse:
    location = upstream.headers["location"]
    headers = sanitize_response_headers(upstream.headers.multi_items())
    headers = replace_header(headers, "location", rewrite_reference(context, location))
    return ProxiedResponse(upstream.status_code, headers, b"", Strategy.REDIRECT)


def rewrite_markup(upstream: UpstreamResponse, context: RewriteContext) -> ProxiedResponse:
    soup = BeautifulSoup(
        upstream.content, "html.parser", from_encoding=upstream.charset
    )

    for tag_name, attribute in MARKUP_URL_ATTRIBUTES:
        for tag in soup.find_all(tag_name, attrs={attribute: True}):
            tag[attribute] = rewrite_reference(context, tag[attribute])

    for tag in soup.find_all(SRCSET_TAGS, attrs={"srcset": True}):
        tag["srcset"] = rewrite_srcset(context, tag["srcset"])

    body = soup.encode(soup.original_encoding or "utf-8", formatter=MARKUP_FORMATTER)
    headers = sanitize_response_headers(upstream.headers.multi_items())
    return ProxiedResponse(upstream.status_code, headers, body, Strategy.MARKUP)


def rewrite_source_text(
    upstream: UpstreamResponse, context: RewriteContext
) -> ProxiedResponse:
    encoding = _text_encoding(upstream)
    # surrogateescape keeps undecodable bytes intact through the round trip
    text = upstream.content.decode(encoding, errors="surrogateescape")

    def replace_absolute(match: re.Match) -> str:
        opening, url, closing = match.groups()
        rewritten = _proxy_absolute(context, url)
        if rewritten is None:
            return match.group(0)
        return f"{opening}{rewritten}{closing}"

    def replace_import(match: re.Match) -> str:
        quote, url = match.groups()
        rewritten = _proxy_absolute(context, url)
        if rewritten is None:
            return match.group(0)
        return f"import({quote}{rewritten}{quote})"

    rewritten_text = ABSOLUTE_URL_PATTERN.sub(replace_absolute, text)
    rewritten_text = DYNAMIC_IMPORT_PATTERN.sub(replace_import, rewritten_text)

    if rewritten_text == text:
        body = upstream.content
    else:
        body = rewritten_text.encode(encoding, errors="surrogateescape")
    headers = sanitize_response_headers(upstream.headers.multi_items())
    return ProxiedResponse(upstream.status_code, headers, body, Strategy.SOURCE_TEXT)


def passthrough(upstream: UpstreamResponse, context: RewriteContext) -> ProxiedResponse:
    headers = sanitize_response_headers(upstream.headers.multi_items())
    return ProxiedResponse(
        upstream.status_code, headers, upstream.content, Strategy.PASSTHROUGH
    )


STRATEGIES: Dict[Strategy, Callable[[UpstreamResponse, RewriteContext], ProxiedResponse]] = {
    Strategy.REDIRECT: rewrite_redirect,
    Strategy.MARKUP: rewrite_markup,
    Strategy.SOURCE_TEXT: rewrite_source_text,
    Strategy.PASSTHROUGH: passthrough,
}


def apply_strategy(
    strategy: Strategy, upstream: UpstreamResponse, context: RewriteContext
) -> ProxiedResponse:
    return STRATEGIES[strategy](upstream, context)
