from __future__ import annotations

import logging

LOG_FORMAT = (
    '{"ts":"%(asctime)s","level":"%(levelname)s",'
    '"logger":"%(name)s","msg":"%(message)s"}'
)
DATE_FORMAT = "%Y-%m-%dT%H:%M:%S%z"


def configure_logging(enabled: bool = True, level: str = "INFO") -> None:
    if not enabled:
        logging.disable(logging.CRITICAL)
        return
    logging.disable(logging.NOTSET)
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        datefmt=DATE_FORMAT,
        force=True,
    )
