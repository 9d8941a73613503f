import logging
import os
from dataclasses import dataclass

_TRUTHY = {"1", "true", "t", "yes", "y"}

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


@dataclass
class AppConfig:
    log_level: str = "INFO"
    admin_token: str | None = None
    reconcile_on_startup: bool = False


def _parse_bool(s: str | None) -> bool:
    return (s or "").strip().lower() in _TRUTHY


def load_app_config() -> AppConfig:
    return AppConfig(
        log_level=os.environ.get("LOG_LEVEL", "INFO").strip().upper() or "INFO",
        admin_token=os.environ.get("ADMIN_TOKEN") or None,
        reconcile_on_startup=_parse_bool(os.environ.get("RECONCILE_ON_STARTUP")),
    )


def configure_logging(config: AppConfig) -> None:
    """Install the root handler once; later calls only adjust the level."""
    level = logging.getLevelName(config.log_level)
    if not isinstance(level, int):
        level = logging.INFO
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(level=level, format=LOG_FORMAT)
    else:
        root.setLevel(level)
