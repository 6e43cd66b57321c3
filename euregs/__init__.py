"""Storage abstraction and search over EU regulatory texts."""

__version__ = "0.1.0"
