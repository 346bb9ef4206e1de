"""
Logging Setup mit Rich.
"""

import logging

from rich.console import Console
from rich.logging import RichHandler

console = Console()


def setup_logging(level: str = "INFO") -> None:
    """Root-Logger auf RichHandler umstellen."""
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=False)],
        force=True,
    )
    # Uvicorn Access-Logs sind bei Polling sehr laut
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
