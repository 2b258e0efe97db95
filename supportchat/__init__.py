"""Realtime conversation core for the customer-support chat."""

from .__version__ import __version__

__all__ = ["__version__"]
