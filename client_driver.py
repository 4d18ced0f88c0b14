#!/usr/bin/env python3
"""
Movvify command-line client

Talks to a running Movvify server the same way the browser page does:
- Single videos go through the SSE progress channel, with a direct
  download as fallback when the channel itself breaks
- Playlists are downloaded strictly one item at a time, backing off when
  the server reports rate limiting
"""

import re
import sys
import time
import logging
import argparse
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional
from urllib.parse import quote, unquote

import requests
from colorama import init, Fore

import config
from progress_stream import ProgressEvent, parse_sse_payload
from youtube_downloader import sanitize_title_for_filename

# Initialize colorama for cross-platform colored output
init(autoreset=True)

logger = logging.getLogger(__name__)

INITIAL_DELAY_MS = 3000
RATE_LIMIT_MAX_DELAY_MS = 30000
FAILURE_MAX_DELAY_MS = 20000
MAX_CONSECUTIVE_FAILURES = 3
RATE_LIMIT_FACTOR = 2.0
FAILURE_FACTOR = 1.5
SUCCESS_DECAY = 0.8

DEFAULT_SERVER = f"http://localhost:{config.FLASK_PORT}"
CHUNK_SIZE = 1024 * 1024


class ClientError(Exception):
    """The server refused or failed a download."""


class RateLimitedError(ClientError):
    """The server reported that YouTube is blocking requests."""


class BackoffState:
    """
    Inter-item delay and failure budget for a sequential playlist run.

    The delay doubles on rate limiting (capped at 30s), grows 1.5x on other
    failures (capped at 20s) and decays by 0.8x per success down to 3s.
    """

    def __init__(self, delay_ms: float = INITIAL_DELAY_MS, consecutive_failures: int = 0):
        self.delay_ms = delay_ms
        self.consecutive_failures = consecutive_failures

    def on_rate_limited(self) -> float:
        self.delay_ms = min(self.delay_ms * RATE_LIMIT_FACTOR, RATE_LIMIT_MAX_DELAY_MS)
        return self.delay_ms

    def on_failure(self) -> bool:
        """Record a failure. Returns False once the batch should be abandoned."""
        self.consecutive_failures += 1
        if self.consecutive_failures >= MAX_CONSECUTIVE_FAILURES:
            return False
        self.delay_ms = min(self.delay_ms * FAILURE_FACTOR, FAILURE_MAX_DELAY_MS)
        return True

    def on_success(self) -> float:
        self.consecutive_failures = 0
        self.delay_ms = max(self.delay_ms * SUCCESS_DECAY, INITIAL_DELAY_MS)
        return self.delay_ms

    def __repr__(self):
        return f"BackoffState(delay_ms={self.delay_ms}, consecutive_failures={self.consecutive_failures})"


class PlaylistResult:
    def __init__(self, total: int):
        self.total = total
        self.completed: List[Dict[str, Any]] = []
        self.saved: List[Any] = []
        self.aborted = False
        self.message = ''

    @property
    def ok(self) -> bool:
        return not self.aborted and len(self.completed) == self.total


class PlaylistDriver:
    """
    Download playlist items strictly one after another.

    ``fetch(item, quality)`` returns an HTTP response (anything with
    ``status_code`` and ``ok``); ``save(item, response)`` stores it. The same
    item is retried after a 429 or a failure; three failures in a row end the
    whole batch.
    """

    def __init__(self, fetch: Callable[[Dict[str, Any], str], Any],
                 save: Callable[[Dict[str, Any], Any], Any],
                 sleep: Callable[[float], None] = time.sleep,
                 on_status: Optional[Callable[[str], None]] = None):
        self.fetch = fetch
        self.save = save
        self.sleep = sleep
        self.on_status = on_status or logger.info

    def run(self, items: List[Dict[str, Any]], quality: str = 'best',
            state: Optional[BackoffState] = None) -> PlaylistResult:
        state = state or BackoffState()
        result = PlaylistResult(len(items))
        index = 0
        first_attempt = True

        while index < len(items):
            item = items[index]
            title = (item.get('title') or 'Untitled Video')[:50]

            if not first_attempt:
                self.on_status(f"Waiting {state.delay_ms / 1000:g}s before next download...")
                self.sleep(state.delay_ms / 1000)
            first_attempt = False

            self.on_status(f"Downloading {index + 1} / {len(items)}: {title}")
            try:
                response = self.fetch(item, quality)
                try:
                    if response.status_code == 429:
                        state.on_rate_limited()
                        self.on_status(f"Rate limited. Waiting {state.delay_ms / 1000:g}s...")
                        continue
                    if not response.ok:
                        raise ClientError(f"HTTP {response.status_code} for {title}")
                    saved = self.save(item, response)
                finally:
                    response.close()
            except (ClientError, requests.RequestException, OSError) as e:
                logger.warning(f"Error downloading {title}: {e}")
                if not state.on_failure():
                    result.aborted = True
                    result.message = (f"Stopped after {len(result.completed)} downloads: "
                                      f"too many failures. Please wait a few minutes and try again.")
                    self.on_status(result.message)
                    return result
                self.on_status(f"Failed: {title}. Retrying...")
                continue

            state.on_success()
            result.completed.append(item)
            result.saved.append(saved)
            index += 1

        result.message = 'Playlist download complete!'
        self.on_status(result.message)
        return result


def filename_from_response(response, fallback: str) -> str:
    """Pick the filename out of Content-Disposition, preferring the UTF-8 form."""
    disposition = response.headers.get('Content-Disposition', '')
    match = re.search(r"filename\*=UTF-8''([^;]+)", disposition, re.IGNORECASE)
    if match:
        name = unquote(match.group(1).strip())
    else:
        match = re.search(r'filename="?([^";]+)"?', disposition, re.IGNORECASE)
        name = match.group(1).strip() if match else ''

    name = Path(name).name
    if not name:
        return f"{sanitize_title_for_filename(fallback)}.mp4"
    return name


def save_response(response, dest_dir: Path, fallback_name: str = 'video') -> Path:
    """Stream a download response into dest_dir without overwriting anything."""
    dest_dir = Path(dest_dir)
    name = filename_from_response(response, fallback_name)
    target = dest_dir / name
    counter = 0
    try:
        dest_dir.mkdir(parents=True, exist_ok=True)
        while target.exists():
            counter += 1
            target = dest_dir / f"{Path(name).stem} ({counter}){Path(name).suffix}"

        with open(target, 'wb') as fh:
            for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                if chunk:
                    fh.write(chunk)
    finally:
        response.close()
    return target


class MovvifyClient:
    """Thin requests wrapper around the server's download endpoints."""

    def __init__(self, server: str = DEFAULT_SERVER, session: Optional[requests.Session] = None,
                 timeout: float = config.DOWNLOAD_TIMEOUT + 30):
        self.server = server.rstrip('/')
        self.session = session or requests.Session()
        self.timeout = timeout

    def _url(self, path: str) -> str:
        return f"{self.server}{path}"

    def playlist_info(self, url: str) -> Dict[str, Any]:
        response = self.session.post(self._url('/download/playlist-info'), json={'url': url},
                                     timeout=config.PLAYLIST_TIMEOUT + 10)
        try:
            data = response.json()
        except ValueError:
            raise ClientError(f"Unexpected playlist response (HTTP {response.status_code})")
        if response.status_code == 429:
            raise RateLimitedError(data.get('message') or 'Rate limited')
        if not data.get('ok'):
            raise ClientError(data.get('message') or 'Failed to load playlist.')
        return data

    def download(self, url: str, quality: str = 'best', title: Optional[str] = None):
        body = {'url': url, 'quality': quality}
        if title:
            body['title'] = title
        return self.session.post(self._url('/download'), json=body, stream=True, timeout=self.timeout)

    def download_direct(self, url: str, quality: str = 'best', title: Optional[str] = None):
        params = {'url': url, 'quality': quality}
        if title:
            params['title'] = title
        return self.session.get(self._url('/download/download-video'), params=params,
                                stream=True, timeout=self.timeout)

    def fetch_file(self, filename: str):
        return self.session.get(self._url(f"/download/file/{quote(filename)}"),
                                stream=True, timeout=self.timeout)

    def progress_events(self, url: str, quality: str = 'best',
                        title: Optional[str] = None) -> Iterator[ProgressEvent]:
        """Yield events from the SSE progress channel until a terminal one arrives."""
        params = {'url': url, 'quality': quality}
        if title:
            params['title'] = title
        with self.session.get(self._url('/download/progress'), params=params,
                              stream=True, timeout=self.timeout) as response:
            response.raise_for_status()
            for line in response.iter_lines(decode_unicode=True):
                if not line or not line.startswith('data:'):
                    continue
                try:
                    event = parse_sse_payload(line[len('data:'):])
                except ValueError as e:
                    logger.debug(f"Skipping progress message: {e}")
                    continue
                yield event
                if event.is_terminal:
                    return
        raise requests.ConnectionError("Progress channel closed without a result")


def _check_download_response(response) -> None:
    """Raise for a refused download, closing the streamed response first."""
    if response.ok:
        return
    try:
        if response.status_code == 429:
            raise RateLimitedError('YouTube rate limit detected. Please wait 2-3 minutes and try again.')
        try:
            body = response.json()
        except ValueError:
            body = None
        message = body.get('error') if isinstance(body, dict) else None
        raise ClientError(message or f"Download failed (HTTP {response.status_code})")
    finally:
        response.close()


def download_single(client: MovvifyClient, url: str, quality: str, dest_dir: Path,
                    title: Optional[str] = None,
                    on_progress: Optional[Callable[[float], None]] = None) -> Path:
    """
    Download one video with live progress.

    Falls back to a direct synchronous download if the progress channel
    cannot be used at all; error events from the channel are final.
    """
    filename = None
    try:
        for event in client.progress_events(url, quality, title):
            if event.kind == ProgressEvent.PERCENT:
                if on_progress:
                    on_progress(event.value)
            elif event.kind == ProgressEvent.DONE:
                filename = event.value
            elif event.kind == ProgressEvent.RATE_LIMITED:
                raise RateLimitedError('YouTube rate limit detected. Please wait 2-3 minutes and try again.')
            else:
                raise ClientError('Download failed. Please try again.')
    except requests.RequestException as e:
        logger.warning(f"Progress channel failed ({e}); falling back to direct download")
        response = client.download_direct(url, quality, title)
        _check_download_response(response)
        return save_response(response, dest_dir, title or 'video')

    response = client.fetch_file(filename)
    _check_download_response(response)
    return save_response(response, dest_dir, title or filename)


def _print_progress(percent: float) -> None:
    width = 30
    filled = int(width * percent / 100)
    bar = '#' * filled + '-' * (width - filled)
    sys.stdout.write(f"\r{Fore.CYAN}[{bar}] {percent:5.1f}%")
    sys.stdout.flush()


def main(argv: Optional[List[str]] = None) -> int:
    """Command line interface."""
    parser = argparse.ArgumentParser(description=f'{config.APP_NAME} command-line client')
    parser.add_argument('url', help='YouTube video or playlist URL')
    parser.add_argument('-q', '--quality', default=config.DEFAULT_QUALITY,
                        help='Video quality: 144, 240, 360, 480, 720, 1080, 1440, 2160 or best')
    parser.add_argument('-s', '--server', default=DEFAULT_SERVER, help='Movvify server address')
    parser.add_argument('-o', '--output', default='.', help='Directory to save files in')
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if config.DEBUG_MODE else logging.WARNING,
        format=config.LOG_FORMAT
    )

    client = MovvifyClient(args.server)
    dest_dir = Path(args.output)

    try:
        if 'list=' in args.url:
            info = client.playlist_info(args.url)
            items = info['items']
            print(f"{Fore.MAGENTA}📃 {info['playlist_title']} ({len(items)} videos)")

            def fetch(item, quality):
                return client.download(item['url'], quality, item.get('title'))

            def save(item, response):
                path = save_response(response, dest_dir, item.get('title') or 'video')
                print(f"{Fore.GREEN}✅ Saved {path}")
                return path

            def status(message):
                print(f"{Fore.CYAN}{message}")

            result = PlaylistDriver(fetch, save, on_status=status).run(items, args.quality)
            if not result.ok:
                print(f"{Fore.RED}❌ {result.message}")
                return 1
            return 0

        path = download_single(client, args.url, args.quality, dest_dir, on_progress=_print_progress)
        print(f"\n{Fore.GREEN}🎉 Saved {path}")
        return 0
    except RateLimitedError as e:
        print(f"\n{Fore.YELLOW}⚠️  {e}")
        print(f"{Fore.YELLOW}   Tip: update the server's cookies.txt file or wait before retrying.")
        return 2
    except (ClientError, requests.RequestException) as e:
        print(f"\n{Fore.RED}❌ {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
