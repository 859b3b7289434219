"""
Wrangler Configuration
======================
Engine settings and logging setup.

    config = WranglerConfig.from_dict({"lock_timeout": 2.0, "log_level": "DEBUG"})
    with Wrangler.open("data/app.log", config) as db:
        ...
"""

import logging
import sys
from dataclasses import dataclass, fields
from typing import Any, Mapping, Optional

from models.errors import ValidationError

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
PACKAGE_LOGGERS = ("storage", "indexing", "concurrency", "models", "catalog")

_handler: Optional[logging.Handler] = None


@dataclass
class WranglerConfig:
    """
    sep             key separator between keyspace parts (bytes, default 0xFF)
    lock_timeout    seconds to wait for index/record write locks (None = forever)
    refresh_on_hit  refresh a cached instance in the background on find()
    refresh_workers size of each Factory's refresh thread pool
    sync            fsync every LogStore append
    log_level       apply configure_logging() with this level when set
    """
    sep: bytes = b"\xff"
    lock_timeout: Optional[float] = None
    refresh_on_hit: bool = True
    refresh_workers: int = 1
    sync: bool = True
    log_level: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "WranglerConfig":
        known = {f.name for f in fields(cls)}
        unknown = set(data) - known
        if unknown:
            raise ValidationError(f"Unknown configuration keys: {sorted(unknown)}")
        values = dict(data)
        if isinstance(values.get("sep"), str):
            values["sep"] = values["sep"].encode("latin-1")
        config = cls(**values)
        config.validate()
        return config

    def validate(self) -> "WranglerConfig":
        if not isinstance(self.sep, bytes) or not self.sep:
            raise ValidationError("sep must be non-empty bytes")
        if self.sep.isalnum():
            raise ValidationError(f"sep {self.sep!r} must not be alphanumeric")
        if self.lock_timeout is not None and self.lock_timeout < 0:
            raise ValidationError("lock_timeout must be >= 0 or None")
        if self.refresh_workers < 1:
            raise ValidationError("refresh_workers must be >= 1")
        if self.log_level is not None and not isinstance(
                logging.getLevelName(str(self.log_level).upper()), int):
            raise ValidationError(f"Unknown log level: {self.log_level!r}")
        return self


def configure_logging(level: str = "INFO") -> None:
    """
    Attach one stream handler to the engine's package loggers. Calling it
    again only changes the level.
    """
    global _handler
    numeric = logging.getLevelName(str(level).upper())
    if not isinstance(numeric, int):
        raise ValidationError(f"Unknown log level: {level!r}")

    if _handler is None:
        _handler = logging.StreamHandler(sys.stderr)
        _handler.setFormatter(logging.Formatter(LOG_FORMAT))

    for name in PACKAGE_LOGGERS:
        pkg_logger = logging.getLogger(name)
        if _handler not in pkg_logger.handlers:
            pkg_logger.addHandler(_handler)
        pkg_logger.setLevel(numeric)
