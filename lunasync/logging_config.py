"""
Logging setup for the command line.
"""

import logging
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler


def setup_logging(verbose: bool = False, console: Optional[Console] = None) -> None:
    """
    Configure logging.

    Args:
        verbose: Enable debug logging
        console: Console to write to (default: stderr)
    """
    level = logging.DEBUG if verbose else logging.WARNING

    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(
            console=console or Console(stderr=True),
            show_path=verbose,
            rich_tracebacks=verbose,
        )],
        force=True,
    )

    # Quiet noisy libraries unless debugging
    if not verbose:
        logging.getLogger("urllib3").setLevel(logging.WARNING)
