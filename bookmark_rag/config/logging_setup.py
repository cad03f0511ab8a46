import logging

from bookmark_rag.config.settings import AppSettings

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(settings: AppSettings | None = None) -> None:
    """Root handler for embedding applications that have none of their own.

    Noisy HTTP client loggers are capped at WARNING.
    """
    settings = settings or AppSettings()
    level = getattr(logging, settings.log_level, logging.INFO)
    logging.basicConfig(level=level, format=LOG_FORMAT)
    logging.getLogger("bookmark_rag").setLevel(level)
    for noisy in ("httpx", "httpcore", "openai", "anthropic"):
        logging.getLogger(noisy).setLevel(max(level, logging.WARNING))
