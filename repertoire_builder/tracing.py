# repertoire_builder/tracing.py
"""
Correlation identifiers for batch analysis logs.

Every game in a batch is analyzed in its own task. Binding a `CorrelationID`
at the start of that task tags each log line emitted while analyzing the game,
including lines from the engine and storage services, with the run and game
it belongs to.
"""

from dataclasses import asdict, dataclass

import structlog


@dataclass(frozen=True, slots=True)
class CorrelationID:
    """Run, game and engine session of one game analysis."""
    run_id: str; game_id: str; session_id: str

    @property
    def short_id(self) -> str:
        return f"{self.game_id}:{self.session_id[-8:]}"

    def as_dict(self) -> dict:
        return asdict(self)

    def bind(self) -> None:
        """Tags the current task's log context; cleared by the caller when the game is done."""
        structlog.contextvars.bind_contextvars(run_id=self.run_id, correlation_id=self.short_id)
