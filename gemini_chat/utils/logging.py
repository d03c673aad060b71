import logging
import os


def configure_logging(level: str | None = None) -> None:
    if level is None:
        level = os.getenv("LOG_LEVEL", "INFO")
    logging.basicConfig(
        level=level,
        format="%(levelname)s: %(name)s: %(message)s"
    )
    # the google clients are chatty at DEBUG
    for noisy in ("urllib3", "google.auth"):
        logging.getLogger(noisy).setLevel(max(logging.getLogger().level, logging.INFO))
