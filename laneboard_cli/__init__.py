"""Laneboard client: API access, optimistic board state and the CLI.

The command surface is implemented with Typer and Rich for help and error
ergonomics, while command payload outputs remain machine-friendly.
"""

__all__ = ["__version__"]

__version__ = "0.1.0"
