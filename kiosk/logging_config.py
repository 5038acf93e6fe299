import logging.config


def setup_logging(level: str = "INFO", fmt: str = "plain") -> None:
    """Configure root logging once; ``fmt="json"`` emits one JSON object per line."""
    formatter = "json" if fmt == "json" else "default"

    logging.config.dictConfig({
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "default": {
                "format": "%(asctime)s %(levelname)s [%(name)s]: %(message)s",
            },
            "json": {
                "()": "pythonjsonlogger.json.JsonFormatter",
                "format": "%(asctime)s %(name)s %(levelname)s %(message)s",
            },
        },
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "formatter": formatter,
                "stream": "ext://sys.stdout",
            },
        },
        "root": {"level": level.upper(), "handlers": ["console"]},
        "loggers": {
            # request lines are noisy with a kiosk polling every two seconds
            "httpx": {"level": "WARNING"},
            "apscheduler": {"level": "WARNING"},
        },
    })
