"""Tweakguard — guarded Windows configuration automation."""

__version__ = "0.1.0"
