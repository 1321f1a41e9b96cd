from urllib.parse import urlsplit, urlunsplit


def mask_url(url: str) -> str:
    """Drop credentials embedded in a URL before it reaches logs or spans."""
    try:
        parts = urlsplit(url)
    except ValueError:
        return url
    if "@" not in parts.netloc:
        return url
    host = parts.netloc.rsplit("@", 1)[1]
    return urlunsplit(parts._replace(netloc=f"****@{host}"))
