import logging
import sys

_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"


def setup_logging(level: str = "INFO") -> None:
    root = logging.getLogger()
    root.setLevel(level.upper())
    # don't stack handlers when the app factory runs more than once
    for h in root.handlers:
        if getattr(h, "_galatix", False):
            return
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(_FORMAT))
    handler._galatix = True
    root.addHandler(handler)

    # httpx logs every outgoing request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
