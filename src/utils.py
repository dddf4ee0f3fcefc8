"""
Console reporting helpers.

Messages follow the tagged style used throughout the package
(``[INFO]``, ``[WARNING]``, ``[ERROR]``, ``[METRIC]``, ``[TILE]``) and are only
printed when the caller asked for verbose output.
"""

import time


def report(message: str, verbose: bool = True) -> None:
    """Print ``message`` when ``verbose`` is set."""
    if verbose:
        print(message, flush=True)


def banner(title: str, verbose: bool = True, width: int = 60) -> None:
    """Print a section banner."""
    if verbose:
        print("=" * width)
        print(title)
        print("=" * width)


class Timer:
    """Context manager that reports how long a stage took."""

    def __init__(self, stage: str, verbose: bool = True):
        self.stage = stage
        self.verbose = verbose
        self.elapsed = 0.0
        self._t0 = 0.0

    def __enter__(self):
        self._t0 = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.elapsed = time.perf_counter() - self._t0
        if exc is None:
            report(f"[INFO] {self.stage} finished in {self.elapsed:.2f}s", self.verbose)
        else:
            report(f"[ERROR] {self.stage} failed after {self.elapsed:.2f}s ({exc})",
                   self.verbose)
        return False
