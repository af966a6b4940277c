import logging
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

import config
from catalog import FILE, CatalogStore, Record
from errors import UploadFailure
from extractors import guess_mime
from linker import extract_mentions
from models import ArchiveItem, ItemOutcome, ItemResult
from resolver import MediaResolver
from runner import ProcessRunner

logger = logging.getLogger(__name__)

VIDEO_SUFFIXES = (".mp4", ".mov")
HLS_MIME = "application/vnd.apple.mpegurl"


def compact_timestamp(timestamp: int) -> str:
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).strftime("%Y-%m-%d_%H-%M-%S")


def target_name_for(owner: str, item: ArchiveItem) -> str:
    """Deterministic catalog name: <owner>_<YYYY-MM-DD_HH-MM-SS>[_<n>]<ext>"""
    ext = Path(item.relative_uri).suffix.lower()
    suffix = f"_{item.sequence}" if item.sequence else ""
    return f"{owner}_{compact_timestamp(item.creation_timestamp)}{suffix}{ext}"


def is_video(mime: str) -> bool:
    return (mime or "").lower().startswith("video/")


class UploadPipeline:
    """Upload one archive's media into the catalog, transcoding videos on the way."""

    def __init__(self, store: CatalogStore, runner: ProcessRunner, resolver: MediaResolver, owner: str):
        self.store = store
        self.runner = runner
        self.resolver = resolver
        self.owner = owner
        self._folders: Dict[str, Record] = {}

    def _folder_for(self, category: str) -> Record:
        if category not in self._folders:
            self._folders[category] = self.store.ensure_folder(category.capitalize())
        return self._folders[category]

    def process_item(self, category: str, item: ArchiveItem, json_path: Path) -> ItemResult:
        """
        Upload a single archive item.

        Args:
            category: posts, reels or stories
            item: Archive entry to upload
            json_path: Category JSON the entry came from

        Returns:
            ItemResult describing what happened to the item
        """
        name = target_name_for(self.owner, item)
        if self.store.find_entities(FILE, {"name": name}, limit=1):
            logger.debug(f"Already imported: {name}")
            return ItemResult(outcome=ItemOutcome.ALREADY_IMPORTED, target_name=name)

        source = self.resolver.resolve(item.relative_uri, json_path)
        if source is None:
            return ItemResult(
                outcome=ItemOutcome.MISSING_MEDIA,
                target_name=name,
                error=f"media not found: {item.relative_uri}",
            )

        fallback = "video/mp4" if source.suffix.lower() in VIDEO_SUFFIXES else "image/jpeg"
        mime = guess_mime(source.name, default=fallback)
        mentions = extract_mentions(item.title)
        data = {
            "name": name,
            "mime": mime,
            "alternativeText": item.title or None,
            "caption": " ".join(mentions) or None,
            "folder": self._folder_for(category)["id"],
        }

        try:
            media = self.store.upload_file(data, source)
        except UploadFailure as e:
            logger.error(f"Upload failed for {name}: {e}")
            return ItemResult(outcome=ItemOutcome.UPLOAD_FAILED, target_name=name, error=str(e))

        if is_video(mime):
            media = self.process_video(media)
        return ItemResult(outcome=ItemOutcome.UPLOADED, target_name=name, media=media)

    def process_video(self, media: Record) -> Record:
        """Generate the HLS rendition and bitrate variants missing from media['formats']."""
        source = self.store.media_path(media)
        formats: Dict[str, Any] = dict(media.get("formats") or {})
        stem = source.stem
        url_dir = str(media["url"]).rsplit("/", 1)[0]
        changed = False

        if "hls" not in formats:
            playlist = self.runner.generate_hls(source, source.parent / "hls" / stem)
            if playlist is not None:
                formats["hls"] = {"url": f"{url_dir}/hls/{stem}/{playlist.name}", "mime": HLS_MIME}
                changed = True

        source_height = self._video_height(source)
        for key, height, bitrate in config.VIDEO_VARIANTS:
            if key in formats:
                continue
            if source_height and height >= source_height:
                continue
            output = source.parent / f"{stem}_{key}.mp4"
            if self.runner.transcode_variant(source, output, height, bitrate):
                formats[key] = {
                    "url": f"{url_dir}/{output.name}",
                    "mime": "video/mp4",
                    "height": height,
                    "size": output.stat().st_size,
                }
                changed = True
            else:
                logger.warning(f"Variant {key} failed for {media.get('name')}")

        if not changed:
            return media
        return self.store.update_entity(FILE, media["id"], {"formats": formats})

    def _video_height(self, source: Path) -> Optional[int]:
        for stream in self.runner.probe(source).get("streams") or []:
            if stream.get("codec_type") == "video" and stream.get("height"):
                return int(stream["height"])
        return None

    def create_video_thumbnail(self, media: Record) -> Optional[Record]:
        name = f"{Path(media['name']).stem}_thumb.jpg"
        existing = self.store.find_entities(FILE, {"name": name}, limit=1)
        if existing:
            return existing[0]

        source = self.store.media_path(media)
        with tempfile.TemporaryDirectory(prefix="igthumb-") as tmp_dir:
            frame = Path(tmp_dir) / name
            if not self.runner.extract_frame(source, frame, config.THUMBNAIL_SEEK_SECONDS):
                logger.warning(f"Thumbnail extraction failed for {media.get('name')}")
                return None
            try:
                return self.store.upload_file(
                    {
                        "name": name,
                        "mime": "image/jpeg",
                        "alternativeText": media.get("alternativeText"),
                        "folder": media.get("folder"),
                    },
                    frame,
                )
            except UploadFailure as e:
                logger.error(f"Thumbnail upload failed for {name}: {e}")
                return None

    def attach_video_thumbnail(self, entity_type: str, entity: Record, media: Record) -> Optional[Record]:
        """Give a Post/Reel a still-image thumbnail unless it already has one."""
        current_id = entity.get("thumbnail")
        if current_id:
            current = self.store.get_entity(FILE, current_id)
            if current and str(current.get("mime", "")).startswith("image/"):
                return None

        thumbnail = self.create_video_thumbnail(media)
        if thumbnail is None:
            return None
        self.store.update_entity(entity_type, entity["id"], {"thumbnail": thumbnail["id"]})
        return thumbnail
