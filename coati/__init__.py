"""Top-level package for coati."""

__version__ = "0.1.0"

from . import config, errors, models, storage, transcriber  # noqa: E402

__all__ = ["config", "errors", "models", "storage", "transcriber", "__version__"]
