"""Session-scoped streaming chat backend for a hosted LLM."""

__version__ = "1.0.0"
