from .canonical import canonicalize
from .logging import setup_logging

__all__ = ["canonicalize", "setup_logging"]
