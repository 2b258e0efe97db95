"""Conversation records, persistence and message ingress."""

from . import schemas

__all__ = ["schemas"]
