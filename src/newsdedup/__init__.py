"""
newsdedup - duplicate detection for AI-normalized news articles and RSS sources.
"""

from __future__ import annotations

__version__ = "0.1.0"

from .config import Config
from .container import DependencyContainer

__all__ = ["__version__", "Config", "DependencyContainer"]
