from sandbox_bridge.utils.loggers import configure_logging

__all__ = ["configure_logging"]
