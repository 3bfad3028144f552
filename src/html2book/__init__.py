"""Convert HTML document trees into mdBook sources."""

from .version import __version__

__all__ = ["__version__"]
