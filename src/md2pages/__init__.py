"""Convert a tree of Markdown documents into standalone HTML pages."""

from .version import __version__

__all__ = ["__version__"]
