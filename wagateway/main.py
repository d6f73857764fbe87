from __future__ import annotations

import logging
from logging import StreamHandler

import uvicorn

from config import gateway_config


LOG_FORMAT = "[%(asctime)s] %(levelname)s %(name)s: %(message)s"


def init_logging(level_name: str = "INFO") -> None:
    level = getattr(logging, (level_name or "INFO").upper(), logging.INFO)
    logging.basicConfig(level=level, format=LOG_FORMAT)

    for name in ("wagateway", "wagateway.api", "wagateway.bridge"):
        logging.getLogger(name).setLevel(level)

    # uvicorn runs with log_config=None, so its loggers are configured here
    for logger_name in ("uvicorn", "uvicorn.access"):
        lg = logging.getLogger(logger_name)
        lg.setLevel(level)
        if not lg.handlers:
            handler = StreamHandler()
            handler.setFormatter(logging.Formatter(LOG_FORMAT))
            lg.addHandler(handler)


def main() -> None:  # pragma: no cover - CLI entrypoint
    cfg = gateway_config()
    init_logging(cfg.log_level)
    logging.getLogger("wagateway").info(
        "event=server_starting host=%s port=%s", cfg.host, cfg.port
    )
    uvicorn.run(
        "wagateway.api:create_app",
        host=cfg.host,
        port=cfg.port,
        factory=True,
        workers=1,
        log_config=None,
    )


if __name__ == "__main__":  # pragma: no cover
    main()
