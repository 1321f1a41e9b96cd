from typing import Dict, Iterable, List, Tuple

HeaderList = List[Tuple[str, str]]

# Hop-by-hop headers that should NOT be forwarded (RFC 2616)
HOP_BY_HOP_HEADERS = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailers",
    "transfer-encoding",
    "upgrade",
}

# Recomputed by the client library or misleading once the target changes.
# accept-encoding is replaced so the upstream only picks codings the
# client library decodes.
STRIPPED_REQUEST_HEADERS = {
    "host",
    "origin",
    "referer",
    "content-length",
    "accept-encoding",
}

# The delivered body is the decoded, possibly rewritten entity; the
# upstream length and encoding metadata no longer describe it.
STRIPPED_RESPONSE_HEADERS = {
    "content-length",
    "content-encoding",
}

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Headers": "*",
    "Access-Control-Expose-Headers": "*",
}

_CORS_HEADER_NAMES = {name.lower() for name in CORS_HEADERS}


def cors_headers() -> Dict[str, str]:
    return dict(CORS_HEADERS)


def sanitize_request_headers(headers: Iterable[Tuple[str, str]]) -> HeaderList:
    """
    Prepare client headers for forwarding to the upstream.
    Repeated headers keep their order and multiplicity.
    """
    return [
        (name, value)
        for name, value in headers
        if name.lower() not in STRIPPED_REQUEST_HEADERS
        and name.lower() not in HOP_BY_HOP_HEADERS
    ]


def sanitize_response_headers(headers: Iterable[Tuple[str, str]]) -> HeaderList:
    """
    Prepare upstream headers for the client and force permissive CORS.
    """
    sanitized = []
    for name, value in headers:
        name_lower = name.lower()
        if (
            name_lower in STRIPPED_RESPONSE_HEADERS
            or name_lower in HOP_BY_HOP_HEADERS
            or name_lower in _CORS_HEADER_NAMES
        ):
            continue
        sanitized.append((name, value))
    sanitized.extend(CORS_HEADERS.items())
    return sanitized


def replace_header(headers: HeaderList, name: str, value: str) -> HeaderList:
    """Return ``headers`` with every ``name`` entry replaced by a single one."""
    replaced = [(k, v) for k, v in headers if k.lower() != name.lower()]
    replaced.append((name, value))
    return replaced
