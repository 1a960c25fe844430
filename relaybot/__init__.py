"""relaybot - multi-channel conversational front-end."""

__version__ = "0.1.0"
