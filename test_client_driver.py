#!/usr/bin/env python3
"""
Tests for the sequential playlist driver, its backoff state and the
single-video client flow
"""

import os
import sys
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

import pytest
import requests

from client_driver import (
    BackoffState,
    ClientError,
    PlaylistDriver,
    RateLimitedError,
    download_single,
    filename_from_response,
    save_response,
)
from progress_stream import ProgressEvent


class FakeResponse:
    def __init__(self, status_code=200, body=b'video', headers=None, json_body=None):
        self.status_code = status_code
        self.ok = status_code < 400
        self.headers = headers or {}
        self._body = body
        self._json = json_body
        self.closed = False

    def iter_content(self, chunk_size=1):
        yield self._body

    def json(self):
        if self._json is None:
            raise ValueError('no json')
        return self._json

    def close(self):
        self.closed = True


def make_items(count):
    return [{'id': f'id{i}', 'title': f'Video {i}', 'url': f'https://www.youtube.com/watch?v=id{i}'}
            for i in range(count)]


class Recorder:
    """Scripted fetch: pops one status code per call, records what was asked for."""

    def __init__(self, statuses):
        self.statuses = list(statuses)
        self.fetched = []
        self.sleeps = []
        self.responses = []

    def fetch(self, item, quality):
        self.fetched.append(item['id'])
        status = self.statuses.pop(0) if self.statuses else 200
        if status == 'boom':
            raise requests.ConnectionError('connection reset')
        response = FakeResponse(status)
        self.responses.append(response)
        return response

    def save(self, item, response):
        return item['id']

    def sleep(self, seconds):
        self.sleeps.append(seconds)


def run_driver(statuses, items, state=None):
    recorder = Recorder(statuses)
    driver = PlaylistDriver(recorder.fetch, recorder.save, sleep=recorder.sleep,
                            on_status=lambda message: None)
    return recorder, driver.run(items, '720', state)


# --- backoff -----------------------------------------------------------------

def test_backoff_rate_limit_doubles_and_caps():
    state = BackoffState()
    assert state.on_rate_limited() == 6000
    assert state.on_rate_limited() == 12000
    assert state.on_rate_limited() == 24000
    assert state.on_rate_limited() == 30000
    assert state.on_rate_limited() == 30000
    assert state.consecutive_failures == 0


def test_backoff_failures_grow_and_abort_on_third():
    state = BackoffState()
    assert state.on_failure() is True
    assert state.delay_ms == 4500
    assert state.on_failure() is True
    assert state.delay_ms == 6750
    assert state.on_failure() is False
    assert state.consecutive_failures == 3


def test_backoff_failure_cap():
    state = BackoffState(delay_ms=18000)
    state.on_failure()
    assert state.delay_ms == 20000


def test_backoff_success_decays_to_floor():
    state = BackoffState(delay_ms=10000, consecutive_failures=2)
    assert state.on_success() == pytest.approx(8000)
    assert state.consecutive_failures == 0
    state = BackoffState(delay_ms=3200)
    assert state.on_success() == 3000


# --- playlist driver ---------------------------------------------------------

def test_all_items_succeed_in_order():
    recorder, result = run_driver([], make_items(3))
    assert result.ok
    assert recorder.fetched == ['id0', 'id1', 'id2']
    assert result.saved == ['id0', 'id1', 'id2']
    # One wait before every attempt except the very first, never below 3s
    assert recorder.sleeps == [3.0, 3.0]


def test_rate_limit_retries_same_item_after_doubled_wait():
    recorder, result = run_driver([429, 200], make_items(1))
    assert result.ok
    assert recorder.fetched == ['id0', 'id0']
    assert recorder.sleeps == [6.0]
    assert [item['id'] for item in result.completed] == ['id0']


def test_rate_limit_does_not_use_failure_budget():
    state = BackoffState()
    recorder, result = run_driver([429, 429, 429, 429, 200], make_items(1), state)
    assert result.ok
    assert recorder.sleeps == [6.0, 12.0, 24.0, 30.0]
    assert state.consecutive_failures == 0


def test_three_consecutive_failures_abort_batch():
    recorder, result = run_driver([500, 'boom', 500], make_items(3))
    assert result.aborted
    assert not result.ok
    assert result.completed == []
    assert recorder.fetched == ['id0', 'id0', 'id0']
    assert 'too many failures' in result.message


def test_success_resets_failure_count():
    recorder, result = run_driver([500, 500, 200, 500, 500, 200], make_items(2))
    assert result.ok
    assert recorder.fetched == ['id0', 'id0', 'id0', 'id1', 'id1', 'id1']
    assert len(recorder.sleeps) == 5


# --- saving files ------------------------------------------------------------

def test_filename_from_response_prefers_utf8():
    response = FakeResponse(headers={
        'Content-Disposition': "attachment; filename=\"movvify_Caf.mp4\"; filename*=UTF-8''movvify_Caf%C3%A9.mp4"
    })
    assert filename_from_response(response, 'x') == 'movvify_Café.mp4'


def test_filename_from_response_fallbacks():
    response = FakeResponse(headers={'Content-Disposition': 'attachment; filename="../../etc/passwd"'})
    assert filename_from_response(response, 'x') == 'passwd'
    assert filename_from_response(FakeResponse(), 'My: Title') == 'My Title.mp4'


def test_save_response_never_overwrites(tmp_path):
    headers = {'Content-Disposition': 'attachment; filename="movvify_a.mp4"'}
    first = save_response(FakeResponse(body=b'one', headers=headers), tmp_path)
    second = save_response(FakeResponse(body=b'two', headers=headers), tmp_path)
    assert first.name == 'movvify_a.mp4'
    assert second.name == 'movvify_a (1).mp4'
    assert first.read_bytes() == b'one'
    assert second.read_bytes() == b'two'


# --- single video ------------------------------------------------------------

class FakeClient:
    def __init__(self, events=None, channel_error=None, direct_response=None):
        self.events = events or []
        self.channel_error = channel_error
        self.direct_response = direct_response
        self.calls = []

    def progress_events(self, url, quality, title=None):
        self.calls.append('progress')
        if self.channel_error:
            raise self.channel_error
        yield from self.events

    def fetch_file(self, filename):
        self.calls.append(f'file:{filename}')
        return FakeResponse(body=b'served', headers={
            'Content-Disposition': f'attachment; filename="{filename}"'})

    def download_direct(self, url, quality, title=None):
        self.calls.append('direct')
        if self.direct_response is not None:
            return self.direct_response
        return FakeResponse(body=b'direct', headers={
            'Content-Disposition': 'attachment; filename="movvify_direct.mp4"'})


def test_download_single_via_progress_channel(tmp_path):
    client = FakeClient(events=[ProgressEvent.percent(50), ProgressEvent.percent(100),
                                ProgressEvent.done('movvify_clip.mp4')])
    seen = []
    path = download_single(client, 'https://youtu.be/x', '720', tmp_path, on_progress=seen.append)
    assert seen == [50.0, 100.0]
    assert client.calls == ['progress', 'file:movvify_clip.mp4']
    assert path.read_bytes() == b'served'


def test_download_single_falls_back_when_channel_breaks(tmp_path):
    client = FakeClient(channel_error=requests.ConnectionError('refused'))
    path = download_single(client, 'https://youtu.be/x', '720', tmp_path)
    assert client.calls == ['progress', 'direct']
    assert path.name == 'movvify_direct.mp4'
    assert path.read_bytes() == b'direct'


def test_download_single_error_events_are_final(tmp_path):
    with pytest.raises(RateLimitedError):
        download_single(FakeClient(events=[ProgressEvent.rate_limited()]), 'https://youtu.be/x', '720', tmp_path)

    client = FakeClient(events=[ProgressEvent.percent(5), ProgressEvent.error()])
    with pytest.raises(ClientError):
        download_single(client, 'https://youtu.be/x', '720', tmp_path)
    assert 'direct' not in client.calls


def test_download_single_closes_refused_responses(tmp_path):
    refused = FakeResponse(status_code=429)
    client = FakeClient(channel_error=requests.ConnectionError('refused'), direct_response=refused)
    with pytest.raises(RateLimitedError):
        download_single(client, 'https://youtu.be/x', '720', tmp_path)
    assert refused.closed

    failed = FakeResponse(status_code=500, json_body={'error': 'Download failed.'})
    client = FakeClient(channel_error=requests.ConnectionError('refused'), direct_response=failed)
    with pytest.raises(ClientError, match='Download failed.'):
        download_single(client, 'https://youtu.be/x', '720', tmp_path)
    assert failed.closed


def test_driver_closes_every_response():
    recorder, result = run_driver([429, 500, 200, 200], make_items(2))
    assert result.ok
    assert len(recorder.responses) == 4
    assert all(response.closed for response in recorder.responses)
