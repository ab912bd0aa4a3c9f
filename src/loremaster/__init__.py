"""Loremaster: a tool-using conversation engine for game data assistants."""

__version__ = "0.4.0"
