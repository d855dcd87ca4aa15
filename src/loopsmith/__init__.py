"""Loopsmith - drive a coding agent in rounds until the task is done."""

from importlib.metadata import PackageNotFoundError, version

from loopsmith.schemas import ExitReason, IterationRecord, LoopResult, RunResult

__all__ = ["ExitReason", "IterationRecord", "LoopResult", "RunResult"]

try:
    __version__ = version("loopsmith")
except PackageNotFoundError:
    __version__ = "0.0.0"
