"""planloop: drive dependency-linked plan files through an external executor."""

__version__ = "0.1.0"

__all__ = ["__version__"]
