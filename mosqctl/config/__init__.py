"""Configuration helpers for the mosqctl manager."""

from .const import *  # noqa: F401, F403
from . import logging, settings  # noqa: F401  # pyright: ignore[reportUnusedImport]
