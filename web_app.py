#!/usr/bin/env python3
"""
Movvify Web Interface

Flask-based web interface for YouTube downloads.
Features:
- Real-time progress tracking via Server-Sent Events (SSE)
- Quality tiers with fallback format selection
- Playlist enumeration for sequential "Download All"
- Downloaded files removed shortly after they are served
"""

import os
import sys
import logging
import platform
import shutil
from pathlib import Path
from typing import Any, Dict, Optional
from urllib.parse import quote

# Add current directory to Python path for imports
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

import config

# Configure logging based on DEBUG_MODE
logging.basicConfig(
    level=logging.DEBUG if config.DEBUG_MODE else getattr(logging, config.LOG_LEVEL.upper(), logging.INFO),
    format=config.LOG_FORMAT
)
logger = logging.getLogger(__name__)

# Disable werkzeug logs when DEBUG_MODE is off
if not config.DEBUG_MODE:
    logging.getLogger('werkzeug').setLevel(logging.ERROR)  # Only show errors, not INFO

from flask import Flask, render_template, request, jsonify, send_file, Response, stream_with_context
from werkzeug.wsgi import ClosingIterator
from colorama import init, Fore

from youtube_downloader import (
    YouTubeDownloader,
    ExternalToolError,
    SpawnError,
    ToolTimeoutError,
    PlaylistParseError,
    is_supported_url,
    is_playlist_url,
    get_ytdlp_version,
)
from progress_stream import ProgressEvent, stream_progress_events, is_bot_detection_error

init(autoreset=True)

app = Flask(__name__)
app.config.update(
    MAX_CONTENT_LENGTH=1 * 1024 * 1024,  # request bodies are tiny JSON
)

# Global downloader instance
downloader = YouTubeDownloader()

INVALID_URL_MESSAGE = 'Please enter a valid YouTube URL.'
RATE_LIMIT_MESSAGE = 'YouTube rate limit detected. Please wait a few minutes and try again.'
RATE_LIMIT_HINT = 'Wait 2-3 minutes before retrying, or update your cookies.txt file.'
FAILURE_MESSAGE = 'Download failed. Please check your link or try again.'
FAILURE_HINT = 'The video may be private, region-locked or temporarily unavailable.'


def _error_response(message: str, status: int, hint: Optional[str] = None):
    body: Dict[str, Any] = {'error': message}
    if hint:
        body['hint'] = hint
    return jsonify(body), status


def _tool_failure_response(error: ExternalToolError):
    """Log the raw tool output and map it to a client-safe status."""
    if isinstance(error, SpawnError):
        logger.critical(f"yt-dlp could not be started: {error}")
        return _error_response(FAILURE_MESSAGE, 500, 'The server is missing its download tool.')

    if error.stderr:
        logger.error(f"Download error: {error.stderr.strip()}")
    else:
        logger.error(f"Download error: {error}")

    if is_bot_detection_error(error.stderr):
        return _error_response(RATE_LIMIT_MESSAGE, 429, RATE_LIMIT_HINT)
    if isinstance(error, ToolTimeoutError):
        return _error_response('Download timed out.', 500, 'Try a lower quality or a shorter video.')
    return _error_response(FAILURE_MESSAGE, 500, FAILURE_HINT)


def _send_and_cleanup(filepath: Path, filename: str):
    """Stream a finished file as an attachment and delete it shortly after."""
    # Sanitize filename to ASCII for HTTP headers (prevents UnicodeEncodeError)
    safe_filename = filename.encode('ascii', 'ignore').decode('ascii') or 'download.mp4'

    try:
        response = send_file(str(filepath), as_attachment=True, download_name=safe_filename,
                             mimetype='video/mp4', conditional=False)
    except OSError as e:
        logger.error(f"Could not open {filepath} for sending: {e}")
        downloader.discard_output(filepath)
        return _error_response('File is no longer available.', 404)

    # Add UTF-8 filename in RFC 5987 format for modern browsers
    response.headers['Content-Disposition'] = (
        f"attachment; filename=\"{safe_filename}\"; filename*=UTF-8''{quote(filename)}"
    )
    # call_on_close is skipped for direct_passthrough responses such as send_file
    response.response = ClosingIterator(response.response,
                                        lambda: downloader.schedule_deletion(filepath))
    return response


def _request_payload() -> Optional[Dict[str, Any]]:
    """JSON object body, or form fields when the body is not JSON. None for any other JSON."""
    data = request.get_json(silent=True)
    if data is None:
        return request.form
    return data if isinstance(data, dict) else None


def _text_field(data, key: str) -> Optional[str]:
    value = data.get(key)
    return value.strip() if isinstance(value, str) else None


def _download_and_send(url: Optional[str], quality: Optional[str], title: Optional[str]):
    url = url or ''
    if not is_supported_url(url):
        return _error_response(INVALID_URL_MESSAGE, 400, 'Paste a youtube.com or youtu.be link.')

    filepath, filename = downloader.reserve_output_file(url, title)
    try:
        downloader.download(url, quality or config.DEFAULT_QUALITY, filepath)
    except ExternalToolError as e:
        downloader.discard_output(filepath)
        return _tool_failure_response(e)

    if not filepath.is_file():
        logger.error(f"yt-dlp reported success but {filepath} is missing")
        downloader.discard_output(filepath)
        return _error_response(FAILURE_MESSAGE, 500, FAILURE_HINT)

    logger.info(f"Download complete: {filename}")
    return _send_and_cleanup(filepath, filename)


@app.route('/')
def index():
    """Serve the main page."""
    return render_template('index.html', app_name=config.APP_NAME)


@app.route('/api/status', methods=['GET'])
def status():
    summary = config.get_config_summary()
    summary['ytdlp_version'] = get_ytdlp_version()
    summary['ytdlp_command'] = downloader.command[0]
    summary['ytdlp_on_path'] = shutil.which(config.YTDLP_BINARY) is not None
    return jsonify(summary)


@app.route('/download', methods=['POST'])
def start_download():
    """Download a single video synchronously and return it as an attachment."""
    data = _request_payload()
    if data is None:
        return _error_response('Request body must be a JSON object.', 400)
    return _download_and_send(_text_field(data, 'url'), data.get('quality'), _text_field(data, 'title'))


@app.route('/download/download-video', methods=['GET'])
def download_video():
    """Fallback single-shot download used when the progress channel fails."""
    return _download_and_send(_text_field(request.args, 'url'), request.args.get('quality'),
                              _text_field(request.args, 'title'))


@app.route('/download/playlist-info', methods=['POST'])
def playlist_info():
    """List playlist entries without downloading anything."""
    data = _request_payload()
    if data is None:
        return jsonify({'ok': False, 'message': 'Request body must be a JSON object.'}), 400
    url = _text_field(data, 'url') or ''
    if not is_playlist_url(url):
        return jsonify({'ok': False, 'message': 'Please enter a valid playlist URL.'}), 400

    try:
        info = downloader.get_playlist_info(url)
    except PlaylistParseError as e:
        logger.error(f"JSON parse error: {e}; payload: {e.payload[:2000]!r}")
        return jsonify({'ok': False, 'message': 'Error parsing playlist data.'}), 500
    except SpawnError as e:
        logger.critical(f"yt-dlp could not be started: {e}")
        return jsonify({'ok': False, 'message': 'Failed to fetch playlist info.'}), 500
    except ExternalToolError as e:
        logger.error(f"Playlist fetch error: {e.stderr.strip() or e}")
        if is_bot_detection_error(e.stderr):
            return jsonify({'ok': False, 'message': RATE_LIMIT_MESSAGE}), 429
        return jsonify({'ok': False, 'message': 'Failed to fetch playlist info.'}), 500

    return jsonify({'ok': True, **info})


@app.route('/download/progress', methods=['GET'])
def download_progress():
    """Download a video while pushing progress to the browser over SSE."""
    url = (request.args.get('url') or '').strip()
    if not is_supported_url(url):
        return _error_response(INVALID_URL_MESSAGE, 400)
    quality = request.args.get('quality') or config.DEFAULT_QUALITY
    title = request.args.get('title')

    filepath, filename = downloader.reserve_output_file(url, title)

    def event_stream():
        completed = False
        try:
            process = downloader.spawn_download(url, quality, filepath)
        except SpawnError as e:
            logger.critical(f"yt-dlp could not be started: {e}")
            downloader.discard_output(filepath)
            yield ProgressEvent.error().to_sse()
            return

        events = stream_progress_events(process, filename, timeout=config.DOWNLOAD_TIMEOUT)
        try:
            for event in events:
                if event.kind == ProgressEvent.DONE:
                    completed = filepath.is_file()
                    if not completed:
                        logger.error(f"yt-dlp reported success but {filepath} is missing")
                        event = ProgressEvent.error()
                    else:
                        downloader.mark_unclaimed(filepath)
                yield event.to_sse()
                if event.is_terminal:
                    break
        finally:
            # Client disconnects land here too; closing events stops the process
            events.close()
            if not completed:
                downloader.discard_output(filepath)

    headers = {
        'Cache-Control': 'no-cache',
        'X-Accel-Buffering': 'no',
    }
    return Response(stream_with_context(event_stream()), mimetype='text/event-stream', headers=headers)


@app.route('/download/file/<filename>', methods=['GET'])
def download_file(filename: str):
    """Serve a file produced by the progress channel, then delete it."""
    filepath = downloader.resolve_served_file(filename)
    if filepath is None:
        return _error_response('File not found.', 404)
    downloader.claim(filepath)
    return _send_and_cleanup(filepath, filepath.name)


@app.errorhandler(404)
def not_found(error):
    return _error_response('Not found', 404)


@app.errorhandler(500)
def internal_error(error):
    return _error_response('Internal server error', 500)


@app.after_request
def add_security_headers(response):
    # Add security and cache headers for all responses
    response.headers['X-Content-Type-Options'] = 'nosniff'
    response.headers['X-Frame-Options'] = 'DENY'
    response.headers['Referrer-Policy'] = 'no-referrer'
    response.headers['Content-Security-Policy'] = (
        "default-src 'self'; "
        "script-src 'self'; "
        "style-src 'self' 'unsafe-inline'; "
        "img-src 'self' data: https://img.youtube.com https://i.ytimg.com; "
        "connect-src 'self'; "
        "frame-ancestors 'none'; "
        "base-uri 'self'; "
        "form-action 'self'"
    )

    # Cache control for static files
    if request.path.startswith('/static/'):
        response.headers['Cache-Control'] = 'public, max-age=86400'
    elif request.path != '/download/progress':
        # Prevent caching of dynamic content
        response.headers['Cache-Control'] = 'no-store, no-cache, must-revalidate, max-age=0'
        response.headers['Pragma'] = 'no-cache'

    return response


def main():
    """Run the web server."""
    if not config.validate_config():
        print("Warning: Configuration validation failed. Using defaults.")

    system_info = f"{platform.system()} {platform.release()}"
    python_version = f"{sys.version_info.major}.{sys.version_info.minor}.{sys.version_info.micro}"

    print()
    print(f"{Fore.CYAN} Platform: {system_info}")
    print(f"{Fore.CYAN} Python: {python_version}")
    if config.DEBUG_MODE:
        config.print_config()
        downloader.print_capabilities()
    print(f"{Fore.GREEN} Starting {config.APP_NAME} Web Interface...")
    print(f"{Fore.GREEN} Open your browser and go to: http://localhost:{config.FLASK_PORT}")
    print(" Press Ctrl+C to stop the server")

    if config.USE_WAITRESS:
        try:
            from waitress import serve
        except ImportError:
            print(f"{Fore.YELLOW}⚠️ Waitress not installed, falling back to Flask development server")
            print("   Install it with: pip install movvify[production]")
        else:
            if config.DEBUG_MODE:
                print("\U0001f3ed Using production server (Waitress)")
            serve(app, host=config.FLASK_HOST, port=config.FLASK_PORT, threads=config.WAITRESS_THREADS)
            return

    app.run(
        debug=config.DEBUG_MODE,
        host=config.FLASK_HOST,
        port=config.FLASK_PORT,
        threaded=True,
        use_reloader=False
    )


if __name__ == '__main__':
    main()
