import logging


def configure_logging(level: str = "INFO") -> logging.Logger:
    """Configure root logging once for the service process."""
    logging.basicConfig(
        level=getattr(logging, (level or "INFO").upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    return logging.getLogger("pms_automation")

__all__ = ["configure_logging"]
