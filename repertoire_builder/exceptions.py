# repertoire_builder/exceptions.py
"""
Exception hierarchy for the Repertoire Builder.

Every error a caller is expected to handle derives from `RepertoireBuilderError`.
The tree builder sorts them into two groups: a bad start position or an
unreachable engine/database aborts the run, while anything that concerns a
single node only skips that node. Storage errors from the recommendation cache
never abort a run; the cache turns them into misses.
"""

from typing import Any, Optional


class RepertoireBuilderError(Exception):
    """Root of all errors raised by this package."""
    pass


# --- Engine ---

class EngineError(RepertoireBuilderError):
    """
    An engine process could not be started or stopped answering.

    Attributes:
        engine: The engine service that failed, if known, so the caller can
                close it.
    """
    def __init__(self, message: str, engine: Optional[Any] = None):
        super().__init__(message)
        self.engine = engine


class EngineInitializationError(EngineError):
    """The executable is missing, or the process died during the UCI handshake."""
    pass


class EngineAnalysisError(EngineError):
    """A search failed or timed out. Treat the session as unusable afterwards."""
    pass


# --- Recommendation cache ---

class CacheError(RepertoireBuilderError):
    """Parent of the recommendation-cache storage errors."""
    pass


class CacheConnectionError(CacheError):
    """The cache database could not be opened or its schema created."""
    pass


class CacheReadError(CacheError):
    """Looking up a stored recommendation failed."""
    pass


class CacheWriteError(CacheError):
    """Storing a recommendation failed."""
    pass


# --- Tree building ---

class DatabaseQueryError(RepertoireBuilderError):
    """The opening database did not return statistics for a position."""
    pass


class InvalidPositionError(RepertoireBuilderError):
    """A path does not resolve to a node, or a FEN or move is not legal chess."""
    pass


class BuilderBusyError(RepertoireBuilderError):
    """`TreeBuilder.run` was called while the same builder was still running."""
    pass


class QueueClosedError(RepertoireBuilderError):
    """Work was submitted to an ExclusiveQueue after it closed, or was still waiting when it did."""
    pass


# --- Games and files ---

class PersistenceError(RepertoireBuilderError):
    """Reading or writing per-game statistics failed."""
    pass


class PgnError(RepertoireBuilderError):
    """Parent of the PGN errors."""
    pass


class PgnParsingError(PgnError):
    """
    The text parsed, but the game in it is broken.

    Typical causes are an illegal move or a missing movetext section. File
    problems raise `PgnServiceError` instead.
    """
    pass


class PgnServiceError(PgnError):
    """A PGN file could not be read or written. Wraps the underlying `OSError`."""
    pass
