"""
Locate the per-category JSON files inside an extracted archive and read their items.

Export layouts differ by export date and locale, so discovery falls back from
conventional paths, to a name search, to a content-based heuristic scan.
"""
import json
import logging
import re
import unicodedata
from collections import deque
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set, Tuple

import config
from extractors import repair_mojibake
from models import ArchiveItem, CategoryDiscovery, GeoPoint
from resolver import ACTIVITY_DIR, MediaResolver

logger = logging.getLogger(__name__)

URI_KEYS = ("uri", "path", "media[0].uri", "attachments[0].data.uri")
TIMESTAMP_KEYS = ("creation_timestamp", "taken_at", "timestamp", "media[0].creation_timestamp")
TITLE_KEYS = ("title", "caption", "media[0].title", "string_map_data.Caption.value")

OWNER_RE = re.compile(r"instagram-([^-]+)-", re.IGNORECASE)
INDEXED_PART_RE = re.compile(r"^(.*)\[(\d+)\]$")
MEDIA_SUFFIXES = (".jpg", ".jpeg", ".png", ".webp", ".heic", ".mp4", ".mov")
IMAGE_SUFFIXES = (".jpg", ".jpeg", ".png", ".webp")

# Seconds beyond year 5138 are read as milliseconds; anything past 9999-12-31 is unusable.
MILLISECOND_THRESHOLD = 10 ** 11
MAX_TIMESTAMP = 253402300799


def owner_from_archive_name(name: str) -> str:
    """Exports are named instagram-<username>-<date>-<hash>.zip"""
    match = OWNER_RE.search(name)
    return match.group(1) if match else "user"


def pick_field(item: Any, keys: Sequence[str]) -> Any:
    """Return the first non-empty value found along the dotted key paths."""
    for key in keys:
        value = item
        for part in key.split("."):
            if value is None:
                break
            indexed = INDEXED_PART_RE.match(part)
            if indexed:
                value = value.get(indexed.group(1)) if isinstance(value, dict) else None
                index = int(indexed.group(2))
                value = value[index] if isinstance(value, list) and len(value) > index else None
            else:
                value = value.get(part) if isinstance(value, dict) else None
        if value is not None and value != "":
            return value
    return None


def first_array(raw: Any) -> List[Any]:
    """Archive JSON is either a bare array or an object wrapping one."""
    if isinstance(raw, list):
        return raw
    if isinstance(raw, dict):
        for value in raw.values():
            if isinstance(value, list):
                return value
    return []


def classify_category(path: Path, uri: str) -> str:
    hint = f"{path.as_posix()} {uri}".lower()
    if re.search(r"reel|clips", hint):
        return "reels"
    if "storie" in hint:
        return "stories"
    return "posts"


def _as_timestamp(value: Any) -> Optional[int]:
    if isinstance(value, bool) or value is None:
        return None
    try:
        timestamp = int(float(value))
    except (TypeError, ValueError, OverflowError):
        return None
    if timestamp > MILLISECOND_THRESHOLD:
        timestamp //= 1000
    if not 0 <= timestamp <= MAX_TIMESTAMP:
        return None
    return timestamp


def _looks_like_uri(value: Any) -> bool:
    return isinstance(value, str) and ("/" in value or value.lower().endswith(MEDIA_SUFFIXES))


class ArchiveDiscovery:
    """Find at most one JSON file per category under an extracted archive root."""

    def __init__(self, root: Path, keys: Iterable[str] = config.CATEGORY_KEYS):
        self.root = Path(root)
        self.keys = list(keys)

    def discover(self) -> List[CategoryDiscovery]:
        found: Dict[str, Path] = {}
        for key in self.keys:
            path = self._conventional(key) or self._search(key)
            if path is not None and path not in found.values():
                logger.info(f"Using json for {key}: {path}")
                found[key] = path

        missing = {key for key in self.keys if key not in found}
        if missing:
            for key, path in self._heuristic_scan(missing, set(found.values())).items():
                logger.info(f"Heuristic scan matched {key}: {path}")
                found[key] = path

        for key in self.keys:
            if key not in found:
                logger.info(f"json not found for {key}")
        return [CategoryDiscovery(key=key, json_path=found[key]) for key in self.keys if key in found]

    def _conventional(self, key: str) -> Optional[Path]:
        names = [f"{key}.json"] + [f"{key}_{n}.json" for n in range(1, 10)]
        for content_dir in (self.root / ACTIVITY_DIR / "content", self.root / "content"):
            for name in names:
                path = content_dir / name
                if path.is_file():
                    return path
        return None

    def _search(self, key: str) -> Optional[Path]:
        wanted = re.compile(rf"^{re.escape(key)}(?:_\d+)?\.json$", re.IGNORECASE)
        queue = deque([self.root])
        while queue:
            directory = queue.popleft()
            try:
                entries = sorted(directory.iterdir())
            except OSError:
                continue
            for entry in entries:
                if entry.is_file() and wanted.match(entry.name):
                    return entry
                if entry.is_dir() and not entry.is_symlink():
                    queue.append(entry)
        return None

    def _heuristic_scan(self, missing: Set[str], taken: Set[Path]) -> Dict[str, Path]:
        found: Dict[str, Path] = {}
        for path in sorted(self.root.rglob("*.json")):
            if missing <= found.keys():
                break
            if path in taken or path in found.values():
                continue
            try:
                if path.stat().st_size > config.HEURISTIC_MAX_JSON_BYTES:
                    continue
                raw = json.loads(path.read_text(encoding="utf-8"))
            except (OSError, ValueError):
                continue

            sample = [entry for entry in first_array(raw)[:config.HEURISTIC_SAMPLE_SIZE] if isinstance(entry, dict)]
            uri = None
            for entry in sample:
                candidate = pick_field(entry, URI_KEYS)
                if _looks_like_uri(candidate) and _as_timestamp(pick_field(entry, TIMESTAMP_KEYS)) is not None:
                    uri = candidate
                    break
            if uri is None:
                continue

            key = classify_category(path.relative_to(self.root), uri)
            if key in missing and key not in found:
                found[key] = path
        return found


def _find_gps(entry: Dict[str, Any]) -> Optional[GeoPoint]:
    candidates: List[Dict[str, Any]] = [entry]
    media_metadata = entry.get("media_metadata")
    if isinstance(media_metadata, dict):
        for meta in media_metadata.values():
            if isinstance(meta, dict):
                candidates.extend(e for e in meta.get("exif_data") or [] if isinstance(e, dict))
    for candidate in candidates:
        lat, lon = candidate.get("latitude"), candidate.get("longitude")
        if isinstance(lat, (int, float)) and isinstance(lon, (int, float)) and (lat or lon):
            return GeoPoint(lat=lat, lon=lon)
    return None


def _clean_title(value: Any) -> str:
    if value is None:
        return ""
    text = value if isinstance(value, str) else str(value)
    return unicodedata.normalize("NFC", repair_mojibake(text))


def _build_item(entry: Dict[str, Any], parent: Dict[str, Any], sequence: int = 0) -> Optional[ArchiveItem]:
    uri = pick_field(entry, URI_KEYS)
    timestamp = _as_timestamp(pick_field(entry, TIMESTAMP_KEYS))
    if timestamp is None:
        timestamp = _as_timestamp(pick_field(parent, TIMESTAMP_KEYS))
    if not uri or timestamp is None:
        return None
    title = pick_field(entry, TITLE_KEYS) or pick_field(parent, TITLE_KEYS)
    return ArchiveItem(
        relative_uri=str(uri),
        creation_timestamp=timestamp,
        title=_clean_title(title),
        gps=_find_gps(entry) or _find_gps(parent),
        sequence=sequence,
    )


def load_archive_items(json_path: Path) -> Tuple[List[ArchiveItem], int]:
    """
    Read a category JSON into archive items sorted by creation time.

    Args:
        json_path: Category JSON located by ArchiveDiscovery

    Returns:
        Tuple of (items sorted ascending by timestamp, number of unusable entries)
    """
    try:
        raw = json.loads(Path(json_path).read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        logger.warning(f"Could not read {json_path}: {e}")
        return [], 0

    items: List[ArchiveItem] = []
    invalid = 0
    for entry in first_array(raw):
        if not isinstance(entry, dict):
            invalid += 1
            continue
        media = entry.get("media")
        if "uri" not in entry and isinstance(media, list) and media:
            children = [child for child in media if isinstance(child, dict)]
        else:
            children = [entry]
        for sequence, child in enumerate(children):
            item = _build_item(child, entry, sequence)
            if item is None:
                logger.debug(f"Skipping entry without uri/timestamp in {json_path.name}")
                invalid += 1
            else:
                items.append(item)

    items.sort(key=lambda item: item.creation_timestamp)
    return items, invalid


def _profile_uri(raw: Any) -> Optional[str]:
    if isinstance(raw, dict):
        media_map = raw.get("media_map_data")
        if isinstance(media_map, dict):
            photo = media_map.get("Profile Photo")
            if isinstance(photo, dict) and photo.get("uri"):
                return str(photo["uri"])
        children: Iterable[Any] = raw.values()
    elif isinstance(raw, list):
        children = raw
    else:
        return None
    for child in children:
        uri = _profile_uri(child)
        if uri:
            return uri
    return None


def find_profile_photo(root: Path) -> Optional[Path]:
    """Locate the account's profile picture, used as the author avatar."""
    root = Path(root)
    resolver = MediaResolver(root)
    for json_path in sorted(root.rglob("personal_information*.json")):
        try:
            raw = json.loads(json_path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            continue
        uri = _profile_uri(raw)
        if uri:
            path = resolver.resolve(uri, json_path)
            if path is not None:
                return path

    for profile_dir in sorted(root.rglob("profile")):
        if profile_dir.is_dir() and profile_dir.parent.name == "media":
            images = sorted(p for p in profile_dir.rglob("*") if p.suffix.lower() in IMAGE_SUFFIXES)
            if images:
                return images[0]
    return None
