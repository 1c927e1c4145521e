"""
sh2 store - persistence layer for the sh2 terminal-multiplexing service.

Sessions, screens, windows, lines and commands, the known remotes and the
local client identity, kept in one SQLite file. Structured fields are JSON
text columns; updates to viewers travel as upsert/patch/tombstone deltas.
"""

__version__ = "0.3.0"

__all__ = [
    "__version__",
]
