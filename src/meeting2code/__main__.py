"""Main entry point for running meeting2code as a module.

Usage:
    python -m meeting2code --help
    python -m meeting2code serve --port 3000
    python -m meeting2code validate https://example.net
"""

from __future__ import annotations

from .cli import app

if __name__ == "__main__":
    app()
