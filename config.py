"""
Runtime configuration for the archive importer.

Every value can be overridden through the environment (or a local .env file).
"""
import os
from datetime import timedelta
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()


def _int_env(name: str, default: int) -> int:
    value = os.getenv(name)
    return int(value) if value else default


# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

# Directories
TEMP_DIR = Path(os.getenv("IG_IMPORT_TMPDIR", "/tmp/igimport"))
PUBLIC_DIR = Path(os.getenv("PUBLIC_DIR", "public"))
UPLOADS_DIR = Path(os.getenv("UPLOADS_DIR", str(PUBLIC_DIR / "uploads")))
CATALOG_PATH = Path(os.getenv("CATALOG_PATH", "data/catalog.json"))

# External process timeouts (seconds)
UNZIP_TIMEOUT = _int_env("UNZIP_TIMEOUT", 60)
FFMPEG_TIMEOUT = _int_env("FFMPEG_TIMEOUT", 600)
FFPROBE_TIMEOUT = _int_env("FFPROBE_TIMEOUT", 8)
EXIFTOOL_TIMEOUT = _int_env("EXIFTOOL_TIMEOUT", 6)

# Job registry
JOB_RETENTION = timedelta(hours=_int_env("JOB_RETENTION_HOURS", 24))
MESSAGE_LOG_LIMIT = 100

# Archive discovery
CATEGORY_KEYS = ("posts", "reels", "stories")
HEURISTIC_MAX_JSON_BYTES = 25 * 1024 * 1024
HEURISTIC_SAMPLE_SIZE = 5

# Progress model
PERCENT_STAGED = 10
PERCENT_DISCOVERY_MIN = 12
PERCENT_DISCOVERY_MAX = 20
PERCENT_UPLOAD_END = 90
PERCENT_FINALIZING = 95

# Video processing: (format key, target height, video bitrate)
VIDEO_VARIANTS = (
    ("720p", 720, "2500k"),
    ("480p", 480, "1000k"),
)
HLS_SEGMENT_SECONDS = 4
THUMBNAIL_SEEK_SECONDS = 1.0

# HTTP server
HOST = os.getenv("HOST", "0.0.0.0")
PORT = _int_env("PORT", 8000)
UPLOAD_CHUNK_SIZE = 1024 * 1024
