import logging

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)
    # SQL echo is controlled by the engine, keep the pool quiet.
    logging.getLogger("sqlalchemy.pool").setLevel(logging.WARNING)
