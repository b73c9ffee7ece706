# repertoire_builder/utils/system_utils.py
"""
Provides generic, system-level utility functions.
"""
import os
import shutil
from pathlib import Path
from typing import Optional


def find_engine_executable(provided_path: Optional[str] = None) -> Path:
    """
    Finds a UCI engine executable, raising FileNotFoundError if unsuccessful.

    Precedence: `provided_path`, then the `STOCKFISH_PATH` environment variable,
    then a `stockfish` binary on the system `PATH`.
    """
    candidates = []
    if provided_path:
        candidates.append(Path(provided_path))
    if env_path := os.environ.get("STOCKFISH_PATH"):
        candidates.append(Path(env_path))

    for path in candidates:
        if path.is_file() and os.access(path, os.X_OK):
            return path.resolve()

    if system_path := shutil.which("stockfish"):
        return Path(system_path)

    raise FileNotFoundError(
        "Engine executable not found. Install Stockfish, set STOCKFISH_PATH, "
        "or pass --engine."
    )


def default_batch_size(cpu_count: Optional[int] = None) -> int:
    """Games to analyze at once: a quarter of the available cores, at least one."""
    cores = cpu_count if cpu_count is not None else (os.cpu_count() or 4)
    return max(1, cores // 4)
