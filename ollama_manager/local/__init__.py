"""
Local package for the Ollama Manager.

This package provides the merged runtime configuration through the
`effective_settings` singleton.
"""

from .config import effective_settings

__all__ = ["effective_settings"]
