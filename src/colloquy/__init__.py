"""Markdown chat transcripts answered by streaming LLM providers through curl."""

__version__ = "0.4.0"

__all__ = ["__version__"]
