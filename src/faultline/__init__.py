"""faultline: Failure injection, recovery detection, and build pipelines for containers."""

from __future__ import annotations

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("faultline")
except PackageNotFoundError:
    __version__ = "0.1.0"

__all__ = ["__version__"]
