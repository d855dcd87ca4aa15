"""Streaming subprocess execution shared by the agent runners."""

from __future__ import annotations

import logging
import math
import os
import queue
import shutil
import subprocess
import threading
import time
from collections import deque
from collections.abc import Callable
from contextlib import suppress
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from loopsmith.schemas import AgentEvent

logger = logging.getLogger(__name__)
if os.name != "nt":  # pragma: no cover - platform-specific import
    import signal

_MAX_CAPTURED_LINES = 20_000


def _process_isolation_kwargs() -> dict[str, object]:
    """Put the child in its own process group so Ctrl+C reaches only the loop."""
    if os.name == "nt":
        new_pg = int(getattr(subprocess, "CREATE_NEW_PROCESS_GROUP", 0))
        no_win = int(getattr(subprocess, "CREATE_NO_WINDOW", 0))
        flags = new_pg | no_win
        return {"creationflags": flags} if flags else {}
    return {"start_new_session": True}


def resolve_binary(name: str) -> str:
    """Resolve a binary name to a full executable path when possible."""
    expanded = os.path.expandvars(os.path.expanduser(str(name or "").strip()))
    if len(expanded) >= 2 and expanded[0] == expanded[-1] and expanded[0] in {"'", '"'}:
        expanded = expanded[1:-1].strip()
    if not expanded:
        return ""
    return shutil.which(expanded) or expanded


def coerce_int(value: Any) -> int:
    """Best-effort integer coercion for loosely typed JSON payloads."""
    if value is None or isinstance(value, bool):
        return int(bool(value))
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if math.isfinite(value) else 0
    try:
        return int(float(str(value).strip().replace(",", "")))
    except (TypeError, ValueError, OverflowError):
        return 0


@dataclass(slots=True)
class StreamExecutionResult:
    """Captured output and metadata from an agent subprocess."""

    events: list[AgentEvent]
    raw_lines: list[str]
    stderr_lines: list[str]
    exit_code: int
    timed_out: bool

    @property
    def stderr_text(self) -> str:
        return "\n".join(self.stderr_lines).strip()


def execute_streaming_command(
    *,
    cmd: list[str],
    cwd: Path,
    env: dict[str, str],
    timeout_seconds: int,
    parse_stdout_line: Callable[[str], AgentEvent | None],
    process_name: str,
    stdin_text: str | None = None,
    on_output_line: Callable[[str], None] | None = None,
) -> StreamExecutionResult:
    """Run *cmd*, parse stdout line by line, and kill it after inactivity.

    ``timeout_seconds`` is an inactivity timeout: the clock restarts on every
    line from either stream. ``0`` disables it.
    """
    proc = subprocess.Popen(
        cmd,
        cwd=cwd,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        stdin=subprocess.PIPE if stdin_text is not None else subprocess.DEVNULL,
        text=True,
        encoding="utf-8",
        errors="replace",
        env=env,
        **_process_isolation_kwargs(),
    )
    if proc.stdout is None or proc.stderr is None:
        raise RuntimeError(f"{process_name} subprocess pipes are unexpectedly unavailable")

    events: deque[AgentEvent] = deque(maxlen=_MAX_CAPTURED_LINES)
    raw_lines: deque[str] = deque(maxlen=_MAX_CAPTURED_LINES)
    stderr_lines: deque[str] = deque(maxlen=_MAX_CAPTURED_LINES)
    lines: queue.Queue[tuple[str, str | None]] = queue.Queue()

    def _pump(stream_name: str, stream: Any) -> None:
        try:
            for line in stream:
                lines.put((stream_name, line.rstrip("\r\n")))
        finally:
            lines.put((stream_name, None))

    def _feed_stdin(stream: Any, text: str) -> None:
        try:
            stream.write(text if text.endswith("\n") else text + "\n")
            stream.flush()
        except OSError:
            logger.debug("%s stdin write failed", process_name)
        finally:
            with suppress(OSError):
                stream.close()

    def _collect(stream_name: str, line: str) -> None:
        if on_output_line is not None:
            try:
                on_output_line(line)
            except Exception:  # pragma: no cover - callback isolation
                logger.debug("on_output_line callback failed", exc_info=True)
        if stream_name == "stderr":
            stderr_lines.append(line)
            return
        raw_lines.append(line)
        try:
            event = parse_stdout_line(line)
        except (ValueError, TypeError, AttributeError):
            logger.warning("Failed to parse %s output line; keeping raw text", process_name)
            return
        if event is not None:
            events.append(event)

    threads = [
        threading.Thread(target=_pump, args=("stdout", proc.stdout), daemon=True),
        threading.Thread(target=_pump, args=("stderr", proc.stderr), daemon=True),
    ]
    if stdin_text is not None and proc.stdin is not None:
        threads.append(threading.Thread(target=_feed_stdin, args=(proc.stdin, stdin_text), daemon=True))
    for thread in threads:
        thread.start()

    inactivity = timeout_seconds if timeout_seconds > 0 else None
    last_activity = time.monotonic()
    open_streams = {"stdout", "stderr"}
    timed_out = False
    try:
        while open_streams:
            idle = time.monotonic() - last_activity
            if inactivity is not None and idle >= inactivity:
                timed_out = True
                break
            wait = 0.25 if inactivity is None else max(0.05, min(0.5, inactivity - idle))
            try:
                stream_name, payload = lines.get(timeout=wait)
            except queue.Empty:
                if proc.poll() is not None and not any(t.is_alive() for t in threads[:2]):
                    break
                continue
            if payload is None:
                open_streams.discard(stream_name)
                continue
            last_activity = time.monotonic()
            if payload:
                _collect(stream_name, payload)

        if timed_out:
            logger.warning("%s produced no output for %ss; terminating", process_name, inactivity)
            _terminate_with_fallback(proc, process_name=process_name)
        _wait_for_exit(proc)

        while True:
            try:
                stream_name, payload = lines.get_nowait()
            except queue.Empty:
                break
            if payload:
                _collect(stream_name, payload)

        return StreamExecutionResult(
            events=list(events),
            raw_lines=list(raw_lines),
            stderr_lines=list(stderr_lines),
            exit_code=proc.returncode if proc.returncode is not None else -1,
            timed_out=timed_out,
        )
    finally:
        for thread in threads:
            thread.join(timeout=1.0)
        for stream in (proc.stdin, proc.stdout, proc.stderr):
            if stream is not None and not stream.closed:
                with suppress(OSError):
                    stream.close()


def _wait_for_exit(proc: subprocess.Popen[str]) -> None:
    try:
        proc.wait(timeout=5.0)
    except subprocess.TimeoutExpired:  # pragma: no cover - defensive
        proc.kill()
        proc.wait(timeout=5.0)


def _terminate_with_fallback(
    proc: subprocess.Popen[str],
    *,
    process_name: str,
    grace_seconds: float = 1.5,
) -> None:
    """SIGTERM the process group, then SIGKILL if it is still alive."""
    if proc.poll() is not None:
        return
    _signal_group(proc, "SIGTERM")
    with suppress(OSError):
        proc.terminate()
    try:
        proc.wait(timeout=grace_seconds)
        return
    except subprocess.TimeoutExpired:
        logger.warning("%s did not exit after terminate; forcing kill.", process_name)
    _signal_group(proc, "SIGKILL")
    with suppress(OSError):
        proc.kill()


def _signal_group(proc: subprocess.Popen[str], sig_name: str) -> None:
    if os.name == "nt":  # pragma: no cover - Windows-only runtime branch
        return
    pid = int(getattr(proc, "pid", 0) or 0)
    if pid <= 0:
        return
    with suppress(OSError):
        os.killpg(os.getpgid(pid), getattr(signal, sig_name))
