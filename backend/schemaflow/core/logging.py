import logging

from schemaflow.core.config import get_settings

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging(level: str | None = None) -> None:
    settings = get_settings()
    logging.basicConfig(
        level=(level or settings.log_level).upper(),
        format=LOG_FORMAT,
    )
    # httpx logs every request at INFO; polling makes that noisy.
    logging.getLogger("httpx").setLevel(logging.WARNING)
