"""
Runtime configuration for wgpu_graph.

Settings come from environment variables so that the same client code can be
pointed at a CPU or GPU device without edits (e.g. WGPU_GRAPH_DEVICE=gpu:1).
The configuration is read once and cached; tests can swap it with
set_config() / reset_config().
"""

import os
import logging
from dataclasses import dataclass, replace
from typing import Optional

logger = logging.getLogger(__name__)

ENV_PREFIX = "WGPU_GRAPH_"


@dataclass(frozen=True)
class Config:
    """Process-wide settings.

    Attributes:
        device: default device spec ("auto", "cpu", "gpu", "gpu:<index>")
        power_preference: wgpu adapter preference
        host_max_buffer_size: largest buffer (bytes) the CPU device accepts
        host_memory_limit: total bytes the CPU device may hold (0 = unlimited)
        host_workers: worker threads executing CPU dispatches
        log_level: level used by configure_logging()
    """

    device: str = "auto"
    power_preference: str = "high-performance"
    host_max_buffer_size: int = 2 ** 31
    host_memory_limit: int = 0
    host_workers: int = 4
    log_level: str = "WARNING"

    @classmethod
    def from_env(cls, environ=None) -> "Config":
        """Build a Config from WGPU_GRAPH_* environment variables."""
        env = os.environ if environ is None else environ
        defaults = cls()

        def _int(name, default):
            raw = env.get(ENV_PREFIX + name)
            if raw is None or raw == "":
                return default
            try:
                return int(raw)
            except ValueError:
                raise ValueError(
                    f"{ENV_PREFIX}{name} must be an integer, got {raw!r}"
                ) from None

        config = cls(
            device=env.get(ENV_PREFIX + "DEVICE", defaults.device).strip().lower(),
            power_preference=env.get(
                ENV_PREFIX + "POWER_PREFERENCE", defaults.power_preference
            ),
            host_max_buffer_size=_int("HOST_MAX_BUFFER", defaults.host_max_buffer_size),
            host_memory_limit=_int("HOST_MEMORY", defaults.host_memory_limit),
            host_workers=max(1, _int("HOST_WORKERS", defaults.host_workers)),
            log_level=env.get(ENV_PREFIX + "LOG_LEVEL", defaults.log_level).upper(),
        )
        return config


_config: Optional[Config] = None


def get_config() -> Config:
    """Return the cached configuration, reading the environment on first use."""
    global _config
    if _config is None:
        _config = Config.from_env()
        logger.debug(f"Loaded configuration: {_config}")
    return _config


def set_config(config: Optional[Config] = None, **overrides) -> Config:
    """Replace the active configuration.

    Args:
        config: full Config to install (defaults to the current one)
        **overrides: individual fields to change

    Returns:
        The configuration now in effect.
    """
    global _config
    base = config if config is not None else get_config()
    _config = replace(base, **overrides) if overrides else base
    return _config


def reset_config() -> None:
    """Forget the cached configuration so the next access re-reads the env."""
    global _config
    _config = None


def configure_logging(level=None) -> None:
    """Attach a stream handler to the package logger.

    Library code never calls this; scripts and examples do.
    """
    level = level or get_config().log_level
    package_logger = logging.getLogger("wgpu_graph")
    if not any(isinstance(h, logging.StreamHandler) and not isinstance(h, logging.NullHandler)
               for h in package_logger.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(
            logging.Formatter("%(asctime)s %(name)s %(levelname)s: %(message)s")
        )
        package_logger.addHandler(handler)
    package_logger.setLevel(level)
