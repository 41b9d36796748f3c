from __future__ import annotations

import logging

import uvicorn

from tokendash.settings import _get_int, _get_str


def main() -> None:
    logging.basicConfig(
        level=(_get_str("TD_LOG_LEVEL", "INFO") or "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    uvicorn.run(
        "tokendash.main:app",
        host=_get_str("TD_HOST", "127.0.0.1") or "127.0.0.1",
        port=_get_int("PORT", 5000),
        # Keep the root logging config above instead of uvicorn's own.
        log_config=None,
    )


if __name__ == "__main__":
    main()
