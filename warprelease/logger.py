import os
from functools import lru_cache
from rich.console import Console
from rich.theme import Theme

RELEASE_THEME = Theme(
    {
        "stage": "bold cyan",
        "certificate": "magenta",
        "profile": "blue",
        "build": "yellow",
    }
)


@lru_cache(maxsize=1)
def get_console() -> Console:
    """Get or create the shared Console instance for the release pipeline"""
    # CI runs set WARPRELEASE_QUIET=1 to keep logs down to the deployment record
    return Console(theme=RELEASE_THEME, quiet=os.getenv("WARPRELEASE_QUIET") == "1")
