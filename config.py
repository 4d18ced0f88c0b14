#!/usr/bin/env python3
"""
Configuration file for Movvify

This file contains all configuration constants and settings.
You can override these by setting environment variables.
"""

import os
from pathlib import Path

# Application Settings
APP_NAME = "Movvify"
APP_VERSION = "1.0.0"
DEBUG_MODE = os.environ.get('DEBUG_MODE', 'false').lower() in ('true', '1', 'yes', 'on')

# Flask Settings
FLASK_HOST = os.environ.get('FLASK_HOST', '0.0.0.0')
FLASK_PORT = int(os.environ.get('FLASK_PORT', '6464'))
USE_WAITRESS = os.environ.get('USE_WAITRESS', '').strip() == '1'
WAITRESS_THREADS = int(os.environ.get('WAITRESS_THREADS', '6'))

# Download Settings
DOWNLOAD_PATH = Path(os.environ.get('DOWNLOAD_PATH', './downloads'))
FILENAME_PREFIX = 'movvify_'
FILENAME_EXTENSION = '.mp4'
MAX_TITLE_LENGTH = 80
DEFAULT_QUALITY = os.environ.get('DEFAULT_QUALITY', 'best')
CLEANUP_DELAY = float(os.environ.get('CLEANUP_DELAY', '3'))  # seconds after a file is served

# Cookie Settings
COOKIES_FILE = Path(os.environ.get('COOKIES_FILE', './cookies.txt'))
COOKIES_MIN_SIZE = 100  # bytes; smaller files are treated as empty exports
COOKIES_MAX_AGE_HOURS = float(os.environ.get('COOKIES_MAX_AGE_HOURS', '168'))  # 7 days
COOKIES_BROWSER = os.environ.get('COOKIES_BROWSER', 'chrome')

# External Tool Settings
YTDLP_BINARY = os.environ.get('YTDLP_BINARY', 'yt-dlp')
USER_AGENT = os.environ.get(
    'USER_AGENT',
    'Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 '
    '(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36',
)
PLAYER_CLIENT = os.environ.get('PLAYER_CLIENT', 'web')
THROTTLED_RATE = os.environ.get('THROTTLED_RATE', '1M')
INSECURE_SSL = os.environ.get('INSECURE_SSL', 'false').lower() in ('true', '1', 'yes', 'on')

# Timeouts (seconds)
TITLE_TIMEOUT = int(os.environ.get('TITLE_TIMEOUT', '20'))
PLAYLIST_TIMEOUT = int(os.environ.get('PLAYLIST_TIMEOUT', '60'))
DOWNLOAD_TIMEOUT = int(os.environ.get('DOWNLOAD_TIMEOUT', '300'))
# Progress downloads that finish but are never fetched are removed after this long
UNCLAIMED_FILE_TTL = int(os.environ.get('UNCLAIMED_FILE_TTL', str(DOWNLOAD_TIMEOUT)))

# Security Settings
ALLOWED_SCHEMES = ['http', 'https']
MAX_URL_LENGTH = 4096
SUPPORTED_DOMAINS = ['youtube.com', 'youtu.be', 'youtube-nocookie.com']

# Logging Settings
LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO')
LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def validate_config() -> bool:
    """Validate configuration settings."""
    errors = []

    # Validate numeric ranges
    if FLASK_PORT < 1 or FLASK_PORT > 65535:
        errors.append(f"FLASK_PORT must be between 1 and 65535, got {FLASK_PORT}")

    for name, value in (('TITLE_TIMEOUT', TITLE_TIMEOUT),
                        ('PLAYLIST_TIMEOUT', PLAYLIST_TIMEOUT),
                        ('DOWNLOAD_TIMEOUT', DOWNLOAD_TIMEOUT),
                        ('UNCLAIMED_FILE_TTL', UNCLAIMED_FILE_TTL)):
        if value < 1 or value > 7200:
            errors.append(f"{name} must be between 1 and 7200, got {value}")

    if CLEANUP_DELAY < 0 or CLEANUP_DELAY > 3600:
        errors.append(f"CLEANUP_DELAY must be between 0 and 3600, got {CLEANUP_DELAY}")

    if WAITRESS_THREADS < 1:
        errors.append(f"WAITRESS_THREADS must be positive, got {WAITRESS_THREADS}")

    # Validate paths
    try:
        DOWNLOAD_PATH.mkdir(exist_ok=True, parents=True)
    except Exception as e:
        errors.append(f"Cannot create DOWNLOAD_PATH: {e}")

    if errors:
        print("Configuration validation errors:")
        for error in errors:
            print(f"  - {error}")
        return False

    return True


def get_config_summary() -> dict:
    """Get a summary of current configuration."""
    return {
        'app_name': APP_NAME,
        'version': APP_VERSION,
        'debug_mode': DEBUG_MODE,
        'download_path': str(DOWNLOAD_PATH),
        'cookies_file': str(COOKIES_FILE),
        'cookies_browser': COOKIES_BROWSER,
        'ytdlp_binary': YTDLP_BINARY,
        'download_timeout': DOWNLOAD_TIMEOUT,
        'insecure_ssl': INSECURE_SSL,
    }


def print_config():
    """Print current configuration to console."""
    print(f"\n{'='*60}")
    print(f"  {APP_NAME} v{APP_VERSION} - Configuration")
    print(f"{'='*60}")
    for key, value in get_config_summary().items():
        print(f"  {key:20s}: {value}")
    print(f"{'='*60}\n")
