"""
This module initializes the console package, exposing command execution,
the console's supervisor instance, verbose toggling and help output.
"""

from .process import execute_command
from .handler import get_supervisor, toggle_verbose_logging, print_help

__all__ = ["execute_command", "get_supervisor", "toggle_verbose_logging", "print_help"]
