"""Deckhand - a console coding assistant driven by a turn state machine."""

__version__ = "0.1.0"

from deckhand.config import Config

__all__ = ["Config", "__version__"]
