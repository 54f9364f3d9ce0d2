import logging, sys
from mentioned.config import settings

_configured = False

def configure_logging(level: str | None = None):
    global _configured
    root = logging.getLogger()
    root.setLevel(level or settings.LOG_LEVEL)
    if _configured:
        return
    handler = logging.StreamHandler(sys.stdout)
    formatter = logging.Formatter(
        "%(asctime)s %(levelname)s %(name)s - %(message)s"
    )
    handler.setFormatter(formatter)
    root.addHandler(handler)
    # one log line per provider request is too noisy
    logging.getLogger("httpx").setLevel(logging.WARNING)
    _configured = True
