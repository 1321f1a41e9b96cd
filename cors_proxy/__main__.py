"""Entry point: ``python -m cors_proxy``. Port comes from SERVER_PORT/PORT (default 3000)."""

import uvicorn

from cors_proxy.vars import HOST, LOG_LEVEL, PORT


def main():
    uvicorn.run(
        "cors_proxy.server:app",
        host=HOST,
        port=PORT,
        log_level=LOG_LEVEL,
        proxy_headers=True,
    )


if __name__ == "__main__":
    main()
