"""Roundtable - Multi-model round orchestration core.

Sequences several AI participants through a round, gates streaming on an
optional web-search pre-step and triggers a moderator synthesis once every
participant has produced a terminal signal.
"""

__version__ = "0.1.0"
__author__ = "Roundtable Team"

# Package metadata
__all__ = [
    "__version__",
    "__author__",
]
