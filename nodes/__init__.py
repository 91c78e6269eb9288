"""Node classes used by the TaHoma Node Server."""

from .TahomaShutter import TahomaShutter
from .Controller import Controller

__all__ = [
    "TahomaShutter",
    "Controller",
]
