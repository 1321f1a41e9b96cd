import os


def _normalize_prefix(prefix: str) -> str:
    prefix = "/" + prefix.strip("/")
    return prefix if prefix == "/" else prefix + "/"


SERVICE_NAME = os.getenv("SERVICE_NAME", "cors-proxy")
HOST = os.environ.get("HOST", "0.0.0.0")
PORT = int(os.environ.get("SERVER_PORT") or os.environ.get("PORT") or "3000")
LOG_LEVEL = os.environ.get("LOG_LEVEL", "info").lower()

# Path segment after which the percent-encoded target URL appears
PROXY_PREFIX = _normalize_prefix(os.environ.get("PROXY_PREFIX", "/cors/"))
# Public-facing origin used for rewritten URLs, derived from the request if empty
PUBLIC_URL = os.environ.get("PUBLIC_URL", "").rstrip("/")
PROXY_TIMEOUT = float(os.environ.get("PROXY_TIMEOUT", "60"))

OTLP_ENDPOINT = os.getenv("OTLP_ENDPOINT")
OTLP_HEADERS = os.getenv("OTLP_HEADERS", "")
