"""Self-healing repair pipeline: detect, generate, validate and apply patches."""

__version__ = "0.1.0"

__all__ = ["__version__"]
