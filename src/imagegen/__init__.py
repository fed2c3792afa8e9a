"""Asynchronous image generation jobs with a wait/poll protocol."""

__version__ = "0.1.0"
