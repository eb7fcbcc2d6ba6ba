"""
__main__.py - Entry point for `python -m varscan`.

Delegates to the Typer CLI defined in cli.py.
"""

from varscan.cli import app

if __name__ == "__main__":
    app()
