#!/usr/bin/env python3
"""
Progress streaming for yt-dlp downloads.

yt-dlp prints ``[download]  42.5% of 10.00MiB ...`` lines on stdout (or on
stderr, depending on mode). This module turns those lines into ProgressEvents
and relays them as Server-Sent Events, one subprocess per channel.
"""

import re
import time
import queue
import logging
import threading
import subprocess
from typing import Optional, Iterator, Any

logger = logging.getLogger(__name__)

PROGRESS_RE = re.compile(r'\[download\]\s+(\d+(?:\.\d+)?)%')

BOT_DETECTION_PHRASES = (
    'sign in to confirm',
    'not a bot',
    'bot detection',
    'please sign in',
)

KILL_GRACE_SECONDS = 5


def parse_progress_chunk(text: Optional[str]) -> Optional[float]:
    """Return the first download percentage found in text, or None."""
    if not text:
        return None
    match = PROGRESS_RE.search(text)
    if not match:
        return None
    return min(max(float(match.group(1)), 0.0), 100.0)


def is_bot_detection_error(stderr_text: Optional[str]) -> bool:
    """True if yt-dlp's error output says the upstream site blocked us as a bot."""
    if not stderr_text:
        return False
    lowered = stderr_text.lower()
    return any(phrase in lowered for phrase in BOT_DETECTION_PHRASES)


class ProgressEvent:
    """One message on the push-progress channel."""

    PERCENT = 'percent'
    DONE = 'done'
    ERROR = 'error'
    RATE_LIMITED = 'rate_limited'

    __slots__ = ('kind', 'value')

    def __init__(self, kind: str, value: Any = None):
        self.kind = kind
        self.value = value

    @classmethod
    def percent(cls, value: float) -> 'ProgressEvent':
        return cls(cls.PERCENT, float(value))

    @classmethod
    def done(cls, filename: str) -> 'ProgressEvent':
        return cls(cls.DONE, filename)

    @classmethod
    def error(cls) -> 'ProgressEvent':
        return cls(cls.ERROR)

    @classmethod
    def rate_limited(cls) -> 'ProgressEvent':
        return cls(cls.RATE_LIMITED)

    @property
    def is_terminal(self) -> bool:
        return self.kind != self.PERCENT

    @property
    def payload(self) -> str:
        if self.kind == self.PERCENT:
            return f"{self.value:g}"
        if self.kind == self.DONE:
            return f"done:{self.value}"
        if self.kind == self.RATE_LIMITED:
            return "error:rate_limit"
        return "error"

    def to_sse(self) -> str:
        return f"data: {self.payload}\n\n"

    def __eq__(self, other):
        if not isinstance(other, ProgressEvent):
            return NotImplemented
        return (self.kind, self.value) == (other.kind, other.value)

    def __repr__(self):
        return f"ProgressEvent({self.kind!r}, {self.value!r})"


def parse_sse_payload(payload: str) -> ProgressEvent:
    """Inverse of ProgressEvent.payload, used by clients of the channel."""
    payload = payload.strip()
    if payload.startswith('done:'):
        return ProgressEvent.done(payload[len('done:'):])
    if payload == 'error:rate_limit':
        return ProgressEvent.rate_limited()
    if payload == 'error' or payload.startswith('error:'):
        return ProgressEvent.error()
    try:
        return ProgressEvent.percent(float(payload))
    except ValueError:
        raise ValueError(f"Unrecognised progress payload: {payload!r}") from None


def _pump(stream, source: str, chunks: queue.Queue) -> None:
    """Copy lines from one pipe into the shared queue, then post a None sentinel."""
    try:
        for line in iter(stream.readline, ''):
            chunks.put((source, line))
    except (OSError, ValueError) as e:
        # Pipe closed underneath us after the process was killed
        logger.debug(f"{source} reader stopped: {e}")
    finally:
        chunks.put((source, None))


def stop_process(process) -> None:
    """Terminate a still-running process, killing it if it will not exit."""
    if process.poll() is not None:
        return
    try:
        process.terminate()
        try:
            process.wait(timeout=KILL_GRACE_SECONDS)
        except subprocess.TimeoutExpired:
            process.kill()
            process.wait(timeout=KILL_GRACE_SECONDS)
    except (OSError, subprocess.TimeoutExpired) as e:
        logger.error(f"Could not stop process {getattr(process, 'pid', '?')}: {e}")


def stream_progress_events(process, filename: str,
                           timeout: Optional[float] = None) -> Iterator[ProgressEvent]:
    """
    Relay one yt-dlp process as ProgressEvents.

    Yields zero or more percent events followed by exactly one terminal event:
    ``rate_limited`` as soon as stderr shows a bot-detection phrase,
    ``percent(100)`` + ``done(filename)`` on exit code 0, ``error`` otherwise
    (including timeout). Closing the generator early stops the process.

    Both pipes are read by helper threads that only enqueue lines; this
    generator is the single consumer and the only place decisions are made.
    """
    chunks = queue.Queue()
    readers = [
        threading.Thread(target=_pump, args=(process.stdout, 'stdout', chunks), daemon=True),
        threading.Thread(target=_pump, args=(process.stderr, 'stderr', chunks), daemon=True),
    ]
    for reader in readers:
        reader.start()

    deadline = time.monotonic() + timeout if timeout else None

    def remaining() -> Optional[float]:
        if deadline is None:
            return None
        return max(deadline - time.monotonic(), 0)

    try:
        open_streams = len(readers)
        while open_streams:
            try:
                source, text = chunks.get(timeout=remaining())
            except queue.Empty:
                logger.error(f"Download timed out after {timeout}s: {filename}")
                yield ProgressEvent.error()
                return

            if text is None:
                open_streams -= 1
                continue

            if source == 'stderr':
                logger.warning(f"yt-dlp: {text.rstrip()}")
                if is_bot_detection_error(text):
                    logger.warning(f"Bot detection triggered for {filename}")
                    yield ProgressEvent.rate_limited()
                    return

            percent = parse_progress_chunk(text)
            if percent is not None:
                yield ProgressEvent.percent(percent)

        try:
            code = process.wait(timeout=remaining())
        except subprocess.TimeoutExpired:
            logger.error(f"Download timed out after {timeout}s: {filename}")
            yield ProgressEvent.error()
            return

        if code == 0:
            yield ProgressEvent.percent(100)
            yield ProgressEvent.done(filename)
        else:
            logger.error(f"yt-dlp exited with code {code} for {filename}")
            yield ProgressEvent.error()
    finally:
        stop_process(process)
        for pipe in (process.stdout, process.stderr):
            try:
                pipe.close()
            except (OSError, ValueError, AttributeError):
                pass
