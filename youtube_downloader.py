#!/usr/bin/env python3
"""
Movvify - yt-dlp orchestration

Everything needed to drive the yt-dlp executable for one request:
- Cookie source selection (cookies.txt or a live browser profile)
- Format selector fallback chains and anti-detection arguments
- Output filename resolution with collision avoidance
- Subprocess execution without a shell, with timeouts
- Playlist listing and output file cleanup
"""

import os
import sys
import json
import time
import shutil
import logging
import platform
import threading
import subprocess
import unicodedata
import re
from pathlib import Path
from typing import Optional, Dict, Any, Tuple, List
from urllib.parse import urlparse, parse_qs

from colorama import init, Fore

import config

# Initialize colorama for cross-platform colored output
init(autoreset=True)

logger = logging.getLogger(__name__)

QUALITY_TIERS = (144, 240, 360, 480, 720, 1080, 1440, 2160)
QUALITY_ALIASES = {'4k': 2160, '2k': 1440, 'uhd': 2160, 'fhd': 1080, 'hd': 720}

# Always resolvable when the video has any stream at all
BEST_FALLBACKS = ['bv*+ba', 'best']

ILLEGAL_FILENAME_CHARS = re.compile(r'[<>:"/\\|?*%\x00-\x1f\x7f]')
PARTIAL_SUFFIXES = ('.part', '.ytdl', '.temp.mp4')
WATCH_URL = 'https://www.youtube.com/watch?v={}'

_VIDEO_ID_RE = re.compile(
    r'(?:youtube(?:-nocookie)?\.com/(?:[^/\n\s]+/\S+/|(?:v|e(?:mbed)?|shorts|live)/|\S*?[?&]v=)'
    r'|youtu\.be/)([a-zA-Z0-9_-]{11})'
)

_reserved_paths = set()
_reserved_lock = threading.Lock()


class ExternalToolError(Exception):
    """yt-dlp finished unsuccessfully."""

    def __init__(self, message: str, code: Optional[int] = None,
                 stdout: str = '', stderr: str = ''):
        super().__init__(message)
        self.code = code
        self.stdout = stdout or ''
        self.stderr = stderr or ''


class SpawnError(ExternalToolError):
    """yt-dlp could not be started at all (missing executable, permissions)."""


class ToolTimeoutError(ExternalToolError):
    """yt-dlp ran past its wall-clock limit and was killed."""


class PlaylistParseError(ValueError):
    """Playlist listing output was not the JSON object yt-dlp normally prints."""

    def __init__(self, message: str, payload: str = ''):
        super().__init__(message)
        self.payload = payload


# ---------------------------------------------------------------------------
# Input validation
# ---------------------------------------------------------------------------

def is_supported_url(url: Optional[str]) -> bool:
    """Return True if url is an http(s) link to one of the supported video hosts."""
    if not url or not isinstance(url, str):
        return False

    url = url.strip()
    if len(url) > config.MAX_URL_LENGTH:
        return False

    try:
        parsed = urlparse(url)
    except ValueError:
        return False

    if parsed.scheme not in config.ALLOWED_SCHEMES or not parsed.hostname:
        return False

    # Disallow URLs with embedded credentials
    if parsed.username or parsed.password:
        logger.warning("Rejected URL with embedded credentials")
        return False

    hostname = parsed.hostname.lower()
    return any(hostname == domain or hostname.endswith('.' + domain)
               for domain in config.SUPPORTED_DOMAINS)


def is_playlist_url(url: Optional[str]) -> bool:
    """Return True for a supported URL carrying a ``list=`` playlist marker."""
    if not is_supported_url(url):
        return False
    query = parse_qs(urlparse(url.strip()).query)
    return bool(query.get('list', [''])[0])


def extract_video_id(url: Optional[str]) -> Optional[str]:
    """Pull the 11-character video ID out of a watch, short or embed URL."""
    if not url:
        return None
    match = _VIDEO_ID_RE.search(url)
    return match.group(1) if match else None


# ---------------------------------------------------------------------------
# Credential Resolver
# ---------------------------------------------------------------------------

def resolve_credential_args(cookies_path: Optional[Path] = None,
                            browser: Optional[str] = None,
                            max_age_hours: Optional[float] = None,
                            min_size: Optional[int] = None,
                            now: Optional[float] = None) -> List[str]:
    """
    Choose between the local cookies.txt export and the live browser profile.

    The file is only trusted when it is larger than ``min_size`` bytes and was
    modified less than ``max_age_hours`` ago. Never raises: a missing or
    unreadable file simply falls back to ``--cookies-from-browser``.
    """
    cookies_path = Path(cookies_path if cookies_path is not None else config.COOKIES_FILE)
    browser = browser or config.COOKIES_BROWSER
    max_age_hours = config.COOKIES_MAX_AGE_HOURS if max_age_hours is None else max_age_hours
    min_size = config.COOKIES_MIN_SIZE if min_size is None else min_size
    now = time.time() if now is None else now

    try:
        stats = cookies_path.stat()
    except OSError:
        stats = None

    if stats is not None:
        age_hours = (now - stats.st_mtime) / 3600
        if stats.st_size > min_size and age_hours < max_age_hours:
            return ['--cookies', str(cookies_path)]
        logger.debug(f"Ignoring cookie file {cookies_path}: size={stats.st_size}, age={age_hours:.1f}h")

    return ['--cookies-from-browser', browser]


# ---------------------------------------------------------------------------
# Argument Builder
# ---------------------------------------------------------------------------

def normalize_quality(quality: Any) -> Optional[int]:
    """Map '720', '720p', 720 or '4k' onto a known height tier, else None."""
    if quality is None:
        return None
    text = str(quality).strip().lower()
    if text in QUALITY_ALIASES:
        return QUALITY_ALIASES[text]
    if text.endswith('p'):
        text = text[:-1]
    try:
        height = int(text)
    except ValueError:
        return None
    return height if height in QUALITY_TIERS else None


def build_format_fallbacks(quality: Any) -> List[str]:
    """
    Ordered format expressions for a quality tier, most specific first.

    For a known height: exact-height merged, exact-height combined,
    height-capped merged, height-capped combined, then the broad chain.
    Unknown tiers and 'best' get the broad chain only.
    """
    height = normalize_quality(quality)
    if height is None:
        return list(BEST_FALLBACKS)

    return [
        f'bv*[height={height}]+ba',
        f'b[height={height}]',
        f'bv*[height<={height}]+ba',
        f'b[height<={height}]',
    ] + BEST_FALLBACKS


def build_format_selector(quality: Any) -> str:
    """Join the fallback chain with '/' so yt-dlp tries each in turn."""
    return '/'.join(build_format_fallbacks(quality))


def build_anti_detection_args() -> List[str]:
    return [
        '--user-agent', config.USER_AGENT,
        '--extractor-args', f'youtube:player_client={config.PLAYER_CLIENT}',
        '--throttled-rate', config.THROTTLED_RATE,
    ]


# ---------------------------------------------------------------------------
# Filename Resolver
# ---------------------------------------------------------------------------

def sanitize_title_for_filename(title: Optional[str], max_length: Optional[int] = None) -> str:
    """Turn an arbitrary video title into a safe filename stem ('video' if nothing is left)."""
    max_length = max_length or config.MAX_TITLE_LENGTH
    if not title or not isinstance(title, str):
        return 'video'

    name = unicodedata.normalize('NFKC', title)
    # Tabs and newlines become spaces before control characters are dropped
    name = re.sub(r'\s+', ' ', name)
    name = ILLEGAL_FILENAME_CHARS.sub('', name)
    name = re.sub(r'\s+', ' ', name).strip()
    # Windows rejects trailing dots and spaces
    name = name[:max_length].strip().strip('.').strip()

    return name or 'video'


def ensure_unique_filepath(filepath: Path) -> Path:
    """
    Return a path that neither exists on disk nor is held by another request.

    On collision a ``" (n)"`` counter is inserted before the extension. The
    returned path stays reserved until :func:`release_filepath` is called.
    """
    filepath = Path(filepath)
    stem, suffix = filepath.stem, filepath.suffix
    counter = 0
    with _reserved_lock:
        candidate = filepath
        while candidate.exists() or _reservation_key(candidate) in _reserved_paths:
            counter += 1
            candidate = filepath.with_name(f"{stem} ({counter}){suffix}")
        _reserved_paths.add(_reservation_key(candidate))
    return candidate


def _reservation_key(filepath: Path) -> str:
    # Relative and resolved spellings of one file share a reservation
    return str(Path(filepath).resolve())


def release_filepath(filepath: Path) -> None:
    with _reserved_lock:
        _reserved_paths.discard(_reservation_key(filepath))


def delete_file_quietly(filepath: Path) -> bool:
    """Unlink filepath if it is still there. Failures are logged, never raised."""
    filepath = Path(filepath)
    try:
        if filepath.exists():
            filepath.unlink()
            logger.info(f"Cleaned up file: {filepath.name}")
            return True
    except OSError as e:
        logger.warning(f"Could not delete {filepath}: {e}")
    return False


# ---------------------------------------------------------------------------
# Subprocess Runner
# ---------------------------------------------------------------------------

def get_ytdlp_command(binary: Optional[str] = None) -> List[str]:
    """Locate yt-dlp on PATH, falling back to ``python -m yt_dlp``."""
    binary = binary or config.YTDLP_BINARY
    found = shutil.which(binary)
    if found:
        return [found]
    return [sys.executable, '-m', 'yt_dlp']


def get_ytdlp_version() -> str:
    try:
        from yt_dlp.version import __version__
        return __version__
    except ImportError:
        return 'unknown'


def _as_text(data: Any) -> str:
    if data is None:
        return ''
    if isinstance(data, bytes):
        return data.decode('utf-8', errors='replace')
    return data


def run_external_tool(command: List[str], args: List[str],
                      timeout: Optional[float] = None) -> Tuple[str, str]:
    """
    Run ``command + args`` to completion and return ``(stdout, stderr)``.

    The argument list is handed to the OS directly, never to a shell.

    Raises:
        SpawnError: the executable could not be started
        ToolTimeoutError: ``timeout`` elapsed; the process has been killed
        ExternalToolError: non-zero exit status
    """
    cmd = list(command) + list(args)
    logger.debug(f"Running: {cmd}")
    try:
        result = subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            encoding='utf-8',
            errors='replace',
            timeout=timeout,
            shell=False,
        )
    except subprocess.TimeoutExpired as e:
        raise ToolTimeoutError(
            f"{command[0]} timed out after {timeout}s",
            stdout=_as_text(e.stdout), stderr=_as_text(e.stderr),
        ) from e
    except OSError as e:
        raise SpawnError(f"Could not start {command[0]}: {e}") from e

    if result.returncode != 0:
        raise ExternalToolError(
            f"{command[0]} exited with code {result.returncode}",
            code=result.returncode, stdout=result.stdout, stderr=result.stderr,
        )
    return result.stdout, result.stderr


def spawn_external_tool(command: List[str], args: List[str]) -> subprocess.Popen:
    """Start the tool with piped, line-buffered text output for incremental reading."""
    cmd = list(command) + list(args)
    logger.debug(f"Spawning: {cmd}")
    try:
        return subprocess.Popen(
            cmd,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            stdin=subprocess.DEVNULL,
            text=True,
            encoding='utf-8',
            errors='replace',
            bufsize=1,  # Line buffered
            shell=False,
            creationflags=subprocess.CREATE_NO_WINDOW if os.name == 'nt' else 0,
        )
    except OSError as e:
        raise SpawnError(f"Could not start {command[0]}: {e}") from e


def parse_playlist_json(payload: str) -> Dict[str, Any]:
    """Turn ``--flat-playlist -J`` output into ``{'playlist_title', 'items'}``."""
    try:
        data = json.loads(payload)
    except (TypeError, ValueError) as e:
        raise PlaylistParseError(f"Invalid playlist JSON: {e}", payload=payload or '') from e

    if not isinstance(data, dict):
        raise PlaylistParseError("Playlist JSON is not an object", payload=payload)

    items = []
    for entry in data.get('entries') or []:
        if not isinstance(entry, dict) or not entry.get('id'):
            continue
        items.append({
            'id': entry['id'],
            'title': entry.get('title') or 'Untitled Video',
            'url': WATCH_URL.format(entry['id']),
        })

    return {
        'playlist_title': data.get('title') or 'YouTube Playlist',
        'items': items,
    }


class YouTubeDownloader:
    """
    Binds the helpers above to one downloads directory and one cookie file.
    A single instance is shared by all requests; it holds no per-request state.
    """

    def __init__(self, download_path: Optional[Path] = None,
                 cookies_path: Optional[Path] = None,
                 command: Optional[List[str]] = None):
        self.download_path = Path(download_path if download_path is not None else config.DOWNLOAD_PATH)
        self.download_path.mkdir(exist_ok=True, parents=True)
        self.cookies_path = Path(cookies_path if cookies_path is not None else config.COOKIES_FILE)
        self.command = command or get_ytdlp_command()
        # Finished progress downloads waiting for /download/file, keyed like reservations
        self._unclaimed: Dict[str, float] = {}
        self._unclaimed_lock = threading.Lock()

    # -- argument assembly --------------------------------------------------

    def base_args(self) -> List[str]:
        args = resolve_credential_args(self.cookies_path) + build_anti_detection_args()
        if config.INSECURE_SSL:
            args.append('--no-check-certificate')
        return args

    def build_download_args(self, url: str, quality: Any, filepath: Path) -> List[str]:
        return self.base_args() + [
            '--newline',
            '--no-playlist',
            '-f', build_format_selector(quality),
            '--merge-output-format', 'mp4',
            '-o', str(filepath),
            '--', url,
        ]

    def build_title_args(self, url: str) -> List[str]:
        return self.base_args() + [
            '--skip-download', '--no-playlist', '--no-warnings',
            '--print', 'title',
            '--', url,
        ]

    def build_playlist_args(self, url: str) -> List[str]:
        return self.base_args() + ['--flat-playlist', '-J', '--', url]

    # -- filenames ------------------------------------------------------------

    def fetch_title(self, url: str) -> Optional[str]:
        """Ask yt-dlp for the video title; any failure just means 'no title'."""
        try:
            stdout, _ = run_external_tool(self.command, self.build_title_args(url),
                                          timeout=config.TITLE_TIMEOUT)
        except ExternalToolError as e:
            logger.warning(f"Title lookup failed for {url}: {e}")
            return None
        lines = [line.strip() for line in stdout.splitlines() if line.strip()]
        return lines[0] if lines else None

    def prepare_download_path(self, url: str, title_hint: Optional[str] = None) -> Tuple[Path, str]:
        """Reserve ``movvify_<title>.mp4`` (deduplicated) under the downloads directory."""
        title = (title_hint or '').strip() or self.fetch_title(url) or 'video'
        safe_title = sanitize_title_for_filename(title)

        self.download_path.mkdir(exist_ok=True, parents=True)
        candidate = self.download_path / f"{config.FILENAME_PREFIX}{safe_title}{config.FILENAME_EXTENSION}"
        filepath = ensure_unique_filepath(candidate)
        return filepath, filepath.name

    def reserve_output_file(self, url: str, title_hint: Optional[str] = None) -> Tuple[Path, str]:
        """prepare_download_path with a timestamp name when the filesystem misbehaves."""
        self.sweep_unclaimed()
        try:
            return self.prepare_download_path(url, title_hint)
        except OSError as e:
            logger.error(f"Filename resolution failed, using timestamp name: {e}")
            filename = f"{config.FILENAME_PREFIX}{int(time.time() * 1000)}{config.FILENAME_EXTENSION}"
            filepath = ensure_unique_filepath(self.download_path / filename)
            return filepath, filepath.name

    def resolve_served_file(self, filename: str) -> Optional[Path]:
        """Map a client-supplied filename to a file inside the downloads directory, or None."""
        if not filename or not isinstance(filename, str):
            return None
        if any(ch in filename for ch in ('\x00', '\r', '\n', '/', '\\')) or filename.startswith('.'):
            logger.warning(f"Rejected suspicious filename: {filename!r}")
            return None

        base = self.download_path.resolve()
        try:
            target = (base / filename).resolve()
            target.relative_to(base)
        except (ValueError, OSError):
            logger.warning(f"Directory traversal attempt detected: {filename!r}")
            return None

        if not target.is_file():
            return None
        return target

    # -- running ------------------------------------------------------------

    def download(self, url: str, quality: Any, filepath: Path,
                 timeout: Optional[float] = None) -> Tuple[str, str]:
        timeout = config.DOWNLOAD_TIMEOUT if timeout is None else timeout
        logger.info(f"Starting download for: {url}")
        return run_external_tool(self.command, self.build_download_args(url, quality, filepath),
                                 timeout=timeout)

    def spawn_download(self, url: str, quality: Any, filepath: Path) -> subprocess.Popen:
        logger.info(f"Starting streamed download for: {url}")
        return spawn_external_tool(self.command, self.build_download_args(url, quality, filepath))

    def get_playlist_info(self, url: str) -> Dict[str, Any]:
        logger.info(f"Fetching playlist info for: {url}")
        stdout, _ = run_external_tool(self.command, self.build_playlist_args(url),
                                      timeout=config.PLAYLIST_TIMEOUT)
        return parse_playlist_json(stdout)

    # -- cleanup ------------------------------------------------------------

    def discard_output(self, filepath: Path) -> None:
        """Delete a failed download and the tool's side files, then free the name."""
        filepath = Path(filepath)
        delete_file_quietly(filepath)
        for suffix in PARTIAL_SUFFIXES:
            delete_file_quietly(filepath.with_name(filepath.name + suffix))
        release_filepath(filepath)

    def finish_served_file(self, filepath: Path) -> None:
        delete_file_quietly(filepath)
        release_filepath(filepath)

    def mark_unclaimed(self, filepath: Path, now: Optional[float] = None) -> None:
        """Remember a finished download that the client has not fetched yet."""
        with self._unclaimed_lock:
            self._unclaimed[_reservation_key(filepath)] = time.time() if now is None else now

    def claim(self, filepath: Path) -> None:
        with self._unclaimed_lock:
            self._unclaimed.pop(_reservation_key(filepath), None)

    def sweep_unclaimed(self, max_age: Optional[float] = None, now: Optional[float] = None) -> int:
        """Delete finished downloads nobody fetched within ``max_age`` seconds."""
        max_age = config.UNCLAIMED_FILE_TTL if max_age is None else max_age
        now = time.time() if now is None else now
        with self._unclaimed_lock:
            stale = [key for key, finished in self._unclaimed.items() if now - finished >= max_age]
            for key in stale:
                del self._unclaimed[key]

        for key in stale:
            logger.info(f"Removing unclaimed download: {Path(key).name}")
            self.finish_served_file(Path(key))
        return len(stale)

    def schedule_deletion(self, filepath: Path, delay: Optional[float] = None) -> threading.Timer:
        """Delete filepath after ``delay`` seconds on a daemon timer (best effort)."""
        delay = config.CLEANUP_DELAY if delay is None else delay
        timer = threading.Timer(delay, self.finish_served_file, args=(Path(filepath),))
        timer.daemon = True
        timer.start()
        return timer

    def print_capabilities(self) -> None:
        """Print downloader capabilities."""
        on_path = shutil.which(config.YTDLP_BINARY) is not None
        cookies_mode = resolve_credential_args(self.cookies_path)[0]
        print(f"\n{Fore.MAGENTA}🚀 {config.APP_NAME} Downloader Capabilities")
        print(f"{Fore.CYAN}{'='*50}")
        print(f"{Fore.GREEN}✅ yt-dlp version: {get_ytdlp_version()}")
        if on_path:
            print(f"{Fore.GREEN}✅ yt-dlp executable: {self.command[0]}")
        else:
            print(f"{Fore.YELLOW}⚠️  '{config.YTDLP_BINARY}' not on PATH, using: {' '.join(self.command)}")
        if cookies_mode == '--cookies':
            print(f"{Fore.GREEN}✅ Cookies: {self.cookies_path}")
        else:
            print(f"{Fore.YELLOW}⚠️  Cookies: falling back to {config.COOKIES_BROWSER} browser profile")
        print(f"{Fore.GREEN}✅ Downloads directory: {self.download_path.resolve()}")
        print(f"{Fore.WHITE}   Platform: {platform.system()} {platform.release()}")
        print(f"{Fore.CYAN}{'='*50}")
