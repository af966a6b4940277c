"""
Create-or-find catalog entities for uploaded media.

Authors, Articles, Posts and Reels are looked up by their natural keys before
being created, so re-running an import never duplicates them.
"""
import logging
import re
from collections import defaultdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Set

from catalog import ARTICLE, AUTHOR, FILE, POST, REEL, CatalogStore, Record, utc_now
from models import ArchiveItem, GeoPoint, ImportStats

logger = logging.getLogger(__name__)

MENTION_RE = re.compile(r"@([A-Za-z0-9_](?:[A-Za-z0-9_.]*[A-Za-z0-9_])?)")
FILENAME_TS_RE = re.compile(r"_(\d{4}-\d{2}-\d{2}_\d{2}-\d{2}-\d{2})")
DESCRIPTION_LIMIT = 80
EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def extract_mentions(title: Optional[str]) -> List[str]:
    """Return unique @handles in order of appearance."""
    if not title:
        return []
    mentions: List[str] = []
    for match in MENTION_RE.finditer(title):
        handle = "@" + match.group(1)
        if handle not in mentions:
            mentions.append(handle)
    return mentions


def slugify(name: str) -> str:
    slug = str(name or "").replace("@", "").strip().lower()
    slug = re.sub(r"[^a-z0-9_-]+", "-", slug)
    return slug.strip("-")


def geo_slug(gps: GeoPoint) -> str:
    lat = f"{abs(gps.lat):.3f}{'n' if gps.lat >= 0 else 's'}"
    lon = f"{abs(gps.lon):.3f}{'e' if gps.lon >= 0 else 'w'}"
    return slugify(f"loc-{lat}-{lon}")


def truncate(text: str, limit: int = DESCRIPTION_LIMIT) -> str:
    return text if len(text) <= limit else text[:limit]


def append_line(text: Optional[str], line: Optional[str]) -> str:
    """Append line unless the exact line is already present."""
    current = text or ""
    line = (line or "").strip()
    if not line or line in (existing.strip() for existing in current.splitlines()):
        return current
    return f"{current}\n{line}" if current else line


def _parse_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def media_timestamp(media: Record) -> datetime:
    """Best-known capture time: the name pattern user_YYYY-MM-DD_HH-mm-ss, else creation time."""
    match = FILENAME_TS_RE.search(str(media.get("name", "")))
    if match:
        try:
            return datetime.strptime(match.group(1), "%Y-%m-%d_%H-%M-%S").replace(tzinfo=timezone.utc)
        except ValueError:
            pass
    return _parse_iso(media.get("createdAt")) or EPOCH


def _with_id(ids: Optional[List[int]], new_id: int) -> List[int]:
    ids = list(ids or [])
    if new_id not in ids:
        ids.append(new_id)
    return ids


class CatalogLinker:
    """Links uploaded media to Authors, Articles, Posts and Reels for one job."""

    def __init__(self, store: CatalogStore, stats: ImportStats):
        self.store = store
        self.stats = stats
        self.touched: Dict[str, Set[int]] = defaultdict(set)
        self._authors: Dict[str, Record] = {}
        self._created_articles: Set[int] = set()
        self._updated_articles: Set[int] = set()

    def ensure_author(self, name: str) -> Record:
        key = name.lower()
        if key in self._authors:
            return self._authors[key]

        found = self.store.find_entities(AUTHOR, {"name": {"$eqi": name}}, limit=1)
        if not found:
            found = self.store.find_entities(AUTHOR, {"slug": {"$eqi": slugify(name)}}, limit=1)
        if found:
            author = found[0]
        else:
            author = self.store.create_entity(AUTHOR, {"name": name, "slug": slugify(name), "avatar": None})
            logger.info(f"Created author {name}")
        self._authors[key] = author
        self.touched[AUTHOR].add(author["id"])
        return author

    def set_author_avatar(self, author: Record, media: Record) -> Record:
        current = self.store.get_entity(AUTHOR, author["id"]) or author
        if current.get("avatar"):
            return current
        updated = self.store.update_entity(AUTHOR, author["id"], {"avatar": media["id"]})
        self._authors[updated["name"].lower()] = updated
        return updated

    def ensure_article(self, username: str, author: Optional[Record], description: str = "") -> Record:
        handle = "@" + username.lstrip("@")
        found = self.store.find_entities(ARTICLE, {"username": handle}, limit=1)
        if found:
            article = found[0]
            if author and not article.get("author"):
                article = self.store.update_entity(ARTICLE, article["id"], {"author": author["id"]})
        else:
            article = self._create_article({
                "username": handle,
                "title": handle,
                "slug": slugify(handle),
                "description": truncate(description),
                "author": author["id"] if author else None,
            })
        self.stats.touch_username(handle)
        return article

    def ensure_location_article(self, gps: GeoPoint, author: Optional[Record]) -> Record:
        slug = geo_slug(gps)
        found = self.store.find_entities(ARTICLE, {"slug": slug}, limit=1)
        if found:
            return found[0]
        return self._create_article({
            "username": None,
            "title": f"Location {gps.lat:.3f}, {gps.lon:.3f}",
            "slug": slug,
            "description": "",
            "latitude": gps.lat,
            "longitude": gps.lon,
            "author": author["id"] if author else None,
        })

    def _create_article(self, data: Dict) -> Record:
        article = self.store.create_entity(ARTICLE, {
            **data,
            "cover": None,
            "media": [],
            "posts": [],
            "reels": [],
            "first_visit": None,
            "last_visit": None,
            "publishedAt": utc_now(),
        })
        self._created_articles.add(article["id"])
        self.stats.articles_created += 1
        logger.info(f"Created article {article.get('title')}")
        return article

    def _update_article(self, article: Record, patch: Dict) -> Record:
        updated = self.store.update_entity(ARTICLE, article["id"], patch)
        self.touched[ARTICLE].add(article["id"])
        if article["id"] not in self._created_articles and article["id"] not in self._updated_articles:
            self._updated_articles.add(article["id"])
            self.stats.articles_updated += 1
        return updated

    def _visit_patch(self, article: Record, visit: datetime) -> Dict:
        patch: Dict = {}
        if not article.get("first_visit"):
            patch["first_visit"] = visit.isoformat()
        last = _parse_iso(article.get("last_visit"))
        if last is None or visit > last:
            patch["last_visit"] = visit.isoformat()
        return patch

    def _cover_patch(self, article: Record, media: Record) -> Dict:
        if article.get("cover") or not str(media.get("mime", "")).startswith("image/"):
            return {}
        return {"cover": media["id"]}

    def link_post_or_reel(
        self,
        category: str,
        media: Record,
        item: ArchiveItem,
        usernames: List[str],
        author: Optional[Record],
    ) -> Record:
        """
        Attach media to the Post/Reel keyed by its file name and connect mentioned Articles.

        Args:
            category: posts or reels
            media: Uploaded file record
            item: Archive entry the media came from
            usernames: Mentioned handles (owner handle when nothing was mentioned)
            author: Author of the archive

        Returns:
            The Post or Reel record
        """
        entity_type = REEL if category == "reels" else POST
        relation = "reels" if entity_type == REEL else "posts"
        source_id = Path(media["name"]).stem
        visit = datetime.fromtimestamp(item.creation_timestamp, tz=timezone.utc)

        found = self.store.find_entities(entity_type, {"source_id": source_id}, limit=1)
        if found:
            entity = found[0]
        else:
            entity = self.store.create_entity(entity_type, {
                "source_id": source_id,
                "slug": slugify(source_id),
                "caption": item.title,
                "taken_at": visit.isoformat(),
                "username": "@" + usernames[0].lstrip("@") if usernames else None,
                "latitude": item.gps.lat if item.gps else None,
                "longitude": item.gps.lon if item.gps else None,
                "media": [],
                "articles": [],
                "thumbnail": None,
                "publishedAt": utc_now(),
            })
            if entity_type == REEL:
                self.stats.reels_created += 1
            else:
                self.stats.posts_created += 1

        article_ids = list(entity.get("articles") or [])
        for username in usernames:
            article = self.ensure_article(username, author, description=item.title)
            patch = {relation: _with_id(article.get(relation), entity["id"])}
            patch.update(self._cover_patch(article, media))
            patch.update(self._visit_patch(article, visit))
            self._update_article(article, patch)
            article_ids = _with_id(article_ids, article["id"])

        entity = self.store.update_entity(entity_type, entity["id"], {
            "media": _with_id(entity.get("media"), media["id"]),
            "articles": article_ids,
        })
        self.touched[entity_type].add(entity["id"])
        return entity

    def link_story(
        self,
        media: Record,
        item: ArchiveItem,
        mentions: List[str],
        owner: str,
        author: Optional[Record],
    ) -> List[Record]:
        """
        Attach a story frame directly to the Articles it belongs to.

        Mentioned accounts win; without mentions a GPS fix creates a location
        placeholder; otherwise the frame goes to the owner's Article.
        """
        if mentions:
            articles = [self.ensure_article(username, author) for username in mentions]
        elif item.gps is not None:
            articles = [self.ensure_location_article(item.gps, author)]
        else:
            articles = [self.ensure_article(owner, author)]

        visit = datetime.fromtimestamp(item.creation_timestamp, tz=timezone.utc)
        linked = []
        for article in articles:
            current = self.store.get_entity(ARTICLE, article["id"]) or article
            media_ids = _with_id(current.get("media"), media["id"])
            patch = {
                "media": self._sorted_media(media_ids),
                "description": append_line(current.get("description"), media.get("alternativeText")),
            }
            patch.update(self._cover_patch(current, media))
            patch.update(self._visit_patch(current, visit))
            linked.append(self._update_article(current, patch))
        return linked

    def _sorted_media(self, media_ids: List[int]) -> List[int]:
        def sort_key(media_id: int) -> datetime:
            media = self.store.get_entity(FILE, media_id)
            return media_timestamp(media) if media else EPOCH
        return sorted(media_ids, key=sort_key)
