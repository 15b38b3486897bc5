"""Talking to and supervising the local inference server."""
