"""
Catalog store interface and the local JSON-backed implementation.

The importer only talks to the catalog through CatalogStore; LocalCatalogStore
keeps documents in a single JSON file and media bytes under the uploads dir.
"""
import copy
import json
import logging
import os
import re
import shutil
import threading
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Protocol

from errors import UploadFailure
from extractors import MetadataExtractor, guess_mime, map_fields_by_mime, pending_field_updates

logger = logging.getLogger(__name__)

Record = Dict[str, Any]
UploadHook = Callable[["LocalCatalogStore", Record], None]

FILE = "file"
FOLDER = "folder"
AUTHOR = "author"
ARTICLE = "article"
POST = "post"
REEL = "reel"


class CatalogStore(Protocol):
    """
    The narrow slice of the content store the importer depends on.
    Read-after-write consistent within one job.
    """

    def find_entities(self, entity_type: str, filters: Optional[Dict[str, Any]] = None,
                      limit: Optional[int] = None) -> List[Record]:
        ...

    def get_entity(self, entity_type: str, entity_id: int) -> Optional[Record]:
        ...

    def create_entity(self, entity_type: str, data: Dict[str, Any]) -> Record:
        ...

    def update_entity(self, entity_type: str, entity_id: int, data: Dict[str, Any]) -> Record:
        ...

    def upload_file(self, data: Dict[str, Any], source_path: Path) -> Record:
        ...

    def ensure_folder(self, name: str) -> Record:
        ...

    def media_path(self, media: Record) -> Path:
        ...


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _matches(record: Record, filters: Dict[str, Any]) -> bool:
    for key, condition in filters.items():
        value = record.get(key)
        if isinstance(condition, dict):
            if "$eqi" in condition:
                if value is None or str(value).lower() != str(condition["$eqi"]).lower():
                    return False
            if "$eq" in condition and value != condition["$eq"]:
                return False
            if "$null" in condition and (value is None) != bool(condition["$null"]):
                return False
        elif value != condition:
            return False
    return True


class LocalCatalogStore:
    """File-backed catalog used by the service and its tests."""

    def __init__(self, catalog_path: Path, public_dir: Path, uploads_dir: Optional[Path] = None):
        self.catalog_path = Path(catalog_path)
        self.public_dir = Path(public_dir)
        self.uploads_dir = Path(uploads_dir) if uploads_dir else self.public_dir / "uploads"
        self.uploads_dir.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._hooks: List[UploadHook] = []
        self._data = self._load()

    def _load(self) -> Dict[str, Any]:
        if self.catalog_path.exists():
            with open(self.catalog_path, "r", encoding="utf-8") as f:
                data = json.load(f)
            logger.info(f"Loaded catalog from {self.catalog_path}")
            return data
        return {"collections": {}, "next_id": {}}

    def _save(self) -> None:
        self.catalog_path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.catalog_path.with_suffix(".tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(self._data, f, ensure_ascii=False, indent=2)
        os.replace(tmp_path, self.catalog_path)

    def _collection(self, entity_type: str) -> List[Record]:
        return self._data["collections"].setdefault(entity_type, [])

    def _find_raw(self, entity_type: str, entity_id: int) -> Optional[Record]:
        for record in self._collection(entity_type):
            if record["id"] == entity_id:
                return record
        return None

    def add_upload_hook(self, hook: UploadHook) -> None:
        self._hooks.append(hook)

    def find_entities(self, entity_type: str, filters: Optional[Dict[str, Any]] = None,
                      limit: Optional[int] = None) -> List[Record]:
        with self._lock:
            found = [
                copy.deepcopy(record)
                for record in self._collection(entity_type)
                if _matches(record, filters or {})
            ]
        return found[:limit] if limit is not None else found

    def get_entity(self, entity_type: str, entity_id: int) -> Optional[Record]:
        with self._lock:
            record = self._find_raw(entity_type, entity_id)
            return copy.deepcopy(record) if record else None

    def create_entity(self, entity_type: str, data: Dict[str, Any]) -> Record:
        with self._lock:
            next_id = self._data["next_id"].get(entity_type, 1)
            self._data["next_id"][entity_type] = next_id + 1
            now = utc_now()
            record = {**copy.deepcopy(data), "id": next_id, "createdAt": now, "updatedAt": now}
            self._collection(entity_type).append(record)
            self._save()
            return copy.deepcopy(record)

    def update_entity(self, entity_type: str, entity_id: int, data: Dict[str, Any]) -> Record:
        with self._lock:
            record = self._find_raw(entity_type, entity_id)
            if record is None:
                raise KeyError(f"{entity_type} {entity_id} not found")
            record.update(copy.deepcopy(data))
            record["updatedAt"] = utc_now()
            self._save()
            return copy.deepcopy(record)

    def upload_file(self, data: Dict[str, Any], source_path: Path) -> Record:
        """
        Store a media file and register it in the catalog.

        Args:
            data: File info (name, caption, alternativeText, folder, mime)
            source_path: Local file to copy into the uploads directory

        Returns:
            The created file record, after upload hooks have run

        Raises:
            UploadFailure: If the file cannot be read or stored
        """
        source_path = Path(source_path)
        name = data.get("name") or source_path.name
        ext = Path(name).suffix.lower() or source_path.suffix.lower()
        stem = re.sub(r"[^A-Za-z0-9_-]+", "_", Path(name).stem)[:80]
        file_hash = f"{stem}_{uuid.uuid4().hex[:10]}"
        destination = self.uploads_dir / f"{file_hash}{ext}"

        try:
            shutil.copyfile(source_path, destination)
            size = destination.stat().st_size
        except OSError as e:
            raise UploadFailure(f"Could not store {name}: {e}") from e

        record = self.create_entity(FILE, {
            "name": name,
            "hash": file_hash,
            "ext": ext,
            "mime": data.get("mime") or guess_mime(name),
            "size": size,
            "url": self.public_url(destination),
            "caption": data.get("caption") or None,
            "alternativeText": data.get("alternativeText") or None,
            "folder": data.get("folder"),
            "formats": {},
        })
        logger.info(f"Stored file id={record['id']} name={name}")

        for hook in self._hooks:
            hook(self, record)
        return self.get_entity(FILE, record["id"]) or record

    def ensure_folder(self, name: str) -> Record:
        with self._lock:
            existing = self.find_entities(FOLDER, {"name": {"$eqi": name}}, limit=1)
            if existing:
                return existing[0]
            return self.create_entity(FOLDER, {"name": name, "path": f"/{name}"})

    def media_path(self, media: Record) -> Path:
        return self.public_dir / str(media.get("url", "")).lstrip("/")

    def public_url(self, path: Path) -> str:
        return "/" + Path(path).relative_to(self.public_dir).as_posix()


class MetadataUploadHook:
    """Fills caption/alternativeText of every new upload from embedded metadata."""

    def __init__(self, runner: Optional[Any] = None):
        self.runner = runner

    def __call__(self, store: LocalCatalogStore, media: Record) -> None:
        if media.get("caption") and media.get("alternativeText"):
            return

        path = store.media_path(media)
        try:
            data = path.read_bytes()
        except OSError as e:
            logger.warning(f"Cannot read {path} for metadata: {e}")
            return

        mime = media.get("mime") or guess_mime(path.name)
        extracted = MetadataExtractor.extract(data, mime, path=path, runner=self.runner)
        updates = pending_field_updates(map_fields_by_mime(extracted, mime), media)
        if updates:
            store.update_entity(FILE, media["id"], updates)
            logger.debug(f"Set fields for {media.get('name')} ({mime}): {updates}")
        else:
            logger.debug(f"No metadata mapped for {media.get('name')} ({mime})")
