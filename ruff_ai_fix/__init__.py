"""Fix the issues Ruff reports with the help of a language model."""

from __future__ import annotations

__version__ = "1.0.0"

__all__ = ["__version__"]
