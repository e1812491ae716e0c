from .setup import setup_logging, setup_logging_from_config

__all__ = ["setup_logging", "setup_logging_from_config"]
