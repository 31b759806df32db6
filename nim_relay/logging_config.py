import logging


def configure_logging(settings) -> None:
    level = getattr(logging, str(settings.log_level).upper(), logging.INFO)
    logging.basicConfig(level=level, format="%(asctime)s %(levelname)s [%(name)s] %(message)s")
    logging.getLogger("nim_relay").setLevel(level)
    # httpx logs every request line at INFO; keep that for DEBUG_PROXY only
    logging.getLogger("httpx").setLevel(logging.DEBUG if settings.debug else logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
