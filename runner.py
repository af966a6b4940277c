"""
External process invocations: unzip, ffmpeg, ffprobe and exiftool.

Every call carries its own timeout and reports failure through ProcessResult
instead of raising, so a missing or misbehaving binary never aborts a job.
"""
import json
import logging
import shutil
import subprocess
import zipfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

import config

logger = logging.getLogger(__name__)


@dataclass
class ProcessResult:
    ok: bool
    returncode: Optional[int] = None
    stdout: str = ""
    stderr: str = ""


class ProcessRunner:
    """Thin wrapper around subprocess for the media tools the importer uses."""

    def run(self, cmd: List[str], timeout: int) -> ProcessResult:
        binary = shutil.which(cmd[0])
        if binary is None:
            logger.warning(f"{cmd[0]} not found on PATH")
            return ProcessResult(ok=False, stderr=f"{cmd[0]} not found")

        try:
            result = subprocess.run(
                [binary, *cmd[1:]],
                capture_output=True,
                text=True,
                encoding="utf-8",
                errors="replace",
                timeout=timeout,
                stdin=subprocess.DEVNULL,
                check=False,
            )
        except subprocess.TimeoutExpired:
            logger.warning(f"{cmd[0]} timed out after {timeout}s")
            return ProcessResult(ok=False, stderr="timeout")
        except OSError as e:
            logger.error(f"{cmd[0]} could not be started: {e}")
            return ProcessResult(ok=False, stderr=str(e))

        if result.returncode != 0:
            logger.debug(f"{cmd[0]} exited {result.returncode}: {result.stderr[-500:]}")
        return ProcessResult(
            ok=result.returncode == 0,
            returncode=result.returncode,
            stdout=result.stdout,
            stderr=result.stderr,
        )

    def unzip(self, archive: Path, dest: Path) -> ProcessResult:
        dest.mkdir(parents=True, exist_ok=True)
        if shutil.which("unzip") is None:
            logger.info("unzip not available, extracting with zipfile")
            try:
                with zipfile.ZipFile(archive) as zf:
                    zf.extractall(dest)
            except (zipfile.BadZipFile, OSError) as e:
                return ProcessResult(ok=False, stderr=str(e))
            return ProcessResult(ok=True, returncode=0)

        result = self.run(
            ["unzip", "-qq", "-o", str(archive), "-d", str(dest)],
            timeout=config.UNZIP_TIMEOUT,
        )
        # unzip exits 1 on warnings while still extracting everything
        if result.returncode == 1:
            result.ok = True
        return result

    def probe(self, path: Path) -> Dict[str, Any]:
        """Return ffprobe's format/stream description, or {} on failure."""
        result = self.run(
            [
                "ffprobe", "-v", "quiet",
                "-print_format", "json",
                "-show_format", "-show_streams",
                str(path),
            ],
            timeout=config.FFPROBE_TIMEOUT,
        )
        return _parse_json(result, default={})

    def exiftool(self, path: Path) -> Dict[str, Any]:
        result = self.run(
            [
                "exiftool", "-j",
                "-XMP-dc:Subject", "-XMP-dc:Description",
                "-EXIF:ImageDescription", "-XPSubject",
                str(path),
            ],
            timeout=config.EXIFTOOL_TIMEOUT,
        )
        parsed = _parse_json(result, default=[])
        if isinstance(parsed, list) and parsed and isinstance(parsed[0], dict):
            return parsed[0]
        return {}

    def extract_frame(self, source: Path, output: Path, seek: float) -> bool:
        result = self.run(
            [
                "ffmpeg", "-y",
                "-ss", str(seek),
                "-i", str(source),
                "-frames:v", "1",
                "-q:v", "2",
                str(output),
            ],
            timeout=config.FFMPEG_TIMEOUT,
        )
        return result.ok and output.exists()

    def transcode_variant(self, source: Path, output: Path, height: int, bitrate: str) -> bool:
        result = self.run(
            [
                "ffmpeg", "-y",
                "-i", str(source),
                "-vf", f"scale=-2:{height}",
                "-c:v", "libx264", "-b:v", bitrate,
                "-c:a", "aac",
                "-movflags", "+faststart",
                str(output),
            ],
            timeout=config.FFMPEG_TIMEOUT,
        )
        return result.ok and output.exists()

    def generate_hls(self, source: Path, out_dir: Path) -> Optional[Path]:
        out_dir.mkdir(parents=True, exist_ok=True)
        playlist = out_dir / "index.m3u8"
        result = self.run(
            [
                "ffmpeg", "-y",
                "-i", str(source),
                "-c:v", "libx264", "-c:a", "aac",
                "-hls_time", str(config.HLS_SEGMENT_SECONDS),
                "-hls_playlist_type", "vod",
                "-hls_segment_filename", str(out_dir / "segment_%03d.ts"),
                str(playlist),
            ],
            timeout=config.FFMPEG_TIMEOUT,
        )
        if result.ok and playlist.exists():
            return playlist
        return None


def _parse_json(result: ProcessResult, default: Any) -> Any:
    if not result.ok or not result.stdout.strip():
        return default
    try:
        return json.loads(result.stdout)
    except json.JSONDecodeError:
        logger.debug("Process output was not valid JSON")
        return default
