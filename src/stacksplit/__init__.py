"""Split a monolithic change into a dependency-ordered stack of validated branches."""

__version__ = "0.1.0"

__all__ = ["__version__"]
