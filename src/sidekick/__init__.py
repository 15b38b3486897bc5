"""sidekick: private inline code completion backed by a local llama.cpp server."""

__version__ = "0.1.0"
