"""
CLI Tools for Coordination Sessions
"""

from .session_cli import app

__all__ = [
    "app"
]
