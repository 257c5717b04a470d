"""
Pattern Nexus - recommendation outcome memory with EWC++ consolidation.

Stores what happened to past skill recommendations and finds the ones
made in similar contexts, without letting new patterns wash out the
historically important ones.
"""

from .core import *  # noqa: F401,F403
from .core import __all__

__version__ = "0.1.0"
