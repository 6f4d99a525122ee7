"""Exceptions raised while loading the dump."""
from typing import Optional


class SetupError(RuntimeError):
    """Fatal initialization failure (missing file, truncated patch list...).

    The tool refuses to serve a reconstruction built from a table it could
    not read completely.
    """

    def __init__(self, message: str, path: Optional[str] = None):
        super().__init__(message)
        self.path = path
