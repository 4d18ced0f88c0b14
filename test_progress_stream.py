#!/usr/bin/env python3
"""
Tests for progress parsing, bot-detection classification and the
push-progress event sequence
"""

import io
import os
import sys
import threading
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

import pytest

from progress_stream import (
    ProgressEvent,
    is_bot_detection_error,
    parse_progress_chunk,
    parse_sse_payload,
    stream_progress_events,
)


class FakeProcess:
    """Just enough of subprocess.Popen for stream_progress_events."""

    def __init__(self, stdout='', stderr='', returncode=0):
        self.stdout = stdout if hasattr(stdout, 'readline') else io.StringIO(stdout)
        self.stderr = stderr if hasattr(stderr, 'readline') else io.StringIO(stderr)
        self._final_code = returncode
        self.returncode = None
        self.terminated = False
        self.pid = 4242

    def poll(self):
        return self.returncode

    def wait(self, timeout=None):
        if self.returncode is None:
            self.returncode = self._final_code
        return self.returncode

    def terminate(self):
        self.terminated = True
        self.returncode = -15

    def kill(self):
        self.returncode = -9


class BlockingStream:
    """A pipe that produces nothing until released."""

    def __init__(self):
        self.released = threading.Event()

    def readline(self):
        self.released.wait(timeout=10)
        return ''

    def close(self):
        self.released.set()


def progress_lines(*percents):
    return ''.join(f"[download]  {p} of 10.00MiB at 1.00MiB/s ETA 00:05\n" for p in percents)


def payloads(events):
    return [event.payload for event in events]


def test_parse_progress_chunk():
    assert parse_progress_chunk('[download]  42.5% of 10.00MiB') == 42.5
    assert parse_progress_chunk('[download] 100% of 10.00MiB in 00:03') == 100.0
    assert parse_progress_chunk('[youtube] dQw4w9WgXcQ: Downloading webpage') is None
    assert parse_progress_chunk('') is None
    assert parse_progress_chunk(None) is None


def test_parse_progress_chunk_takes_first_match():
    assert parse_progress_chunk('[download]  10.0%\r[download]  20.0%') == 10.0


def test_bot_detection_classifier():
    assert is_bot_detection_error("ERROR: [youtube] abc: Sign in to confirm you're not a bot")
    assert is_bot_detection_error('SIGN IN TO CONFIRM')
    assert is_bot_detection_error('Please sign in to continue')
    assert not is_bot_detection_error('ERROR: Video unavailable')
    assert not is_bot_detection_error('')
    assert not is_bot_detection_error(None)


def test_event_payloads():
    assert ProgressEvent.percent(42.5).payload == '42.5'
    assert ProgressEvent.percent(100).payload == '100'
    assert ProgressEvent.done('movvify_a (1).mp4').payload == 'done:movvify_a (1).mp4'
    assert ProgressEvent.error().payload == 'error'
    assert ProgressEvent.rate_limited().payload == 'error:rate_limit'
    assert ProgressEvent.percent(5).to_sse() == 'data: 5\n\n'


def test_sse_payload_parsing():
    assert parse_sse_payload(' 55.5') == ProgressEvent.percent(55.5)
    assert parse_sse_payload('done:movvify_x.mp4') == ProgressEvent.done('movvify_x.mp4')
    assert parse_sse_payload('error:rate_limit') == ProgressEvent.rate_limited()
    assert parse_sse_payload('error') == ProgressEvent.error()
    with pytest.raises(ValueError):
        parse_sse_payload('hello')


def test_successful_download_sequence():
    process = FakeProcess(stdout=progress_lines('10.0%', '55.0%', '99.9%'), returncode=0)
    events = list(stream_progress_events(process, 'movvify_clip.mp4', timeout=10))

    assert payloads(events) == ['10', '55', '99.9', '100', 'done:movvify_clip.mp4']
    assert [e.value for e in events[:4]] == [10.0, 55.0, 99.9, 100.0]
    assert sum(1 for e in events if e.is_terminal) == 1


def test_progress_on_stderr_is_relayed():
    process = FakeProcess(stderr=progress_lines('33.3%'), returncode=0)
    events = list(stream_progress_events(process, 'f.mp4', timeout=10))
    assert payloads(events) == ['33.3', '100', 'done:f.mp4']


def test_bot_detection_ends_channel():
    process = FakeProcess(
        stdout=progress_lines('10.0%', '20.0%', '30.0%', '40.0%'),
        stderr="ERROR: [youtube] dQw4w9WgXcQ: Sign in to confirm you're not a bot\n",
        returncode=1,
    )
    events = list(stream_progress_events(process, 'f.mp4', timeout=10))

    assert events[-1] == ProgressEvent.rate_limited()
    assert sum(1 for e in events if e.is_terminal) == 1
    assert all(e.kind == ProgressEvent.PERCENT for e in events[:-1])
    # The process is stopped rather than left to finish
    assert process.terminated


def test_nonzero_exit_is_generic_error():
    process = FakeProcess(stdout=progress_lines('12.0%'),
                          stderr='ERROR: Video unavailable\n', returncode=1)
    events = list(stream_progress_events(process, 'f.mp4', timeout=10))
    assert payloads(events) == ['12', 'error']


def test_timeout_kills_process():
    stdout, stderr = BlockingStream(), BlockingStream()
    process = FakeProcess(stdout=stdout, stderr=stderr)
    events = list(stream_progress_events(process, 'f.mp4', timeout=0.2))
    assert payloads(events) == ['error']
    assert process.terminated


def test_closing_channel_stops_process():
    stdout = io.StringIO(progress_lines('1.0%'))
    process = FakeProcess(stdout=stdout, stderr=BlockingStream())
    events = stream_progress_events(process, 'f.mp4', timeout=10)

    assert next(events) == ProgressEvent.percent(1.0)
    events.close()
    assert process.terminated


def test_real_subprocess_sequence():
    """Same contract against an actual child process and OS pipes"""
    import subprocess
    script = (
        "import sys\n"
        "for p in ('10.0', '55.0', '99.9'):\n"
        "    print('[download]  %s%% of 1.00MiB' % p, flush=True)\n"
        "sys.stderr.write('WARNING: something harmless\\n')\n"
    )
    process = subprocess.Popen([sys.executable, '-c', script], stdout=subprocess.PIPE,
                               stderr=subprocess.PIPE, text=True, bufsize=1)
    events = list(stream_progress_events(process, 'f.mp4', timeout=30))
    assert payloads(events) == ['10', '55', '99.9', '100', 'done:f.mp4']
