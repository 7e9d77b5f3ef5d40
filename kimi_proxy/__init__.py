"""Anthropic Messages API proxy in front of an OpenAI-compatible chat backend."""

__version__ = "0.1.0"
