"""Relay server for a small real-time multiplayer session."""
import os

# pygame prints a banner on import; the server only uses its math types
os.environ.setdefault("PYGAME_HIDE_SUPPORT_PROMPT", "1")

from .version import __version__
