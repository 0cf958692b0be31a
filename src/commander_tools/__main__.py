"""CLI entry point: ``python -m commander_tools``."""

from .server import main

main()
