"""
Background import job: unzip, discover, upload, link, finalize.
"""
import logging
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Set, Tuple

import config
from catalog import ARTICLE, AUTHOR, FILE, POST, REEL, CatalogStore, Record, utc_now
from discovery import ArchiveDiscovery, find_profile_photo, load_archive_items, owner_from_archive_name
from errors import ArchiveImportError, FatalStageFailure
from extractors import guess_mime
from jobs import JobTracker
from linker import CatalogLinker, extract_mentions
from models import ArchiveItem, CategoryDiscovery, ImportStats, ItemOutcome, ItemResult, JobStage
from resolver import MediaResolver
from runner import ProcessRunner
from uploader import UploadPipeline, is_video

logger = logging.getLogger(__name__)

REPUBLISH_FIELDS = ("media", "cover", "thumbnail", "avatar")


@dataclass
class ArchivePlan:
    """One extracted archive and the items found in it."""
    owner: str
    root: Path
    categories: List[Tuple[CategoryDiscovery, List[ArchiveItem]]] = field(default_factory=list)


class ImportOrchestrator:
    """Runs one import job end to end and reports progress through the JobTracker."""

    def __init__(self, store: CatalogStore, runner: ProcessRunner, tracker: JobTracker):
        self.store = store
        self.runner = runner
        self.tracker = tracker

    def run(self, job_id: str, archives: List[Path], work_dir: Path) -> None:
        """
        Import archives for job_id. Always removes work_dir.

        Args:
            job_id: Job created by the tracker
            archives: Staged .zip files, processed in order
            work_dir: Job temp directory holding the archives and their extraction
        """
        stats = ImportStats()
        try:
            self._run(job_id, [Path(a) for a in archives], Path(work_dir), stats)
        except FatalStageFailure as e:
            logger.error(f"Job {job_id} failed: {e}")
            self.tracker.update_stats(job_id, stats)
            self.tracker.fail(job_id, str(e))
        except Exception as e:
            logger.error(f"Job {job_id} failed: {str(e)}", exc_info=True)
            self.tracker.update_stats(job_id, stats)
            self.tracker.fail(job_id, f"Unexpected failure: {e}")
        finally:
            shutil.rmtree(work_dir, ignore_errors=True)
            logger.info(f"Removed work dir for job {job_id}")

    def _run(self, job_id: str, archives: List[Path], work_dir: Path, stats: ImportStats) -> None:
        self.tracker.advance(job_id, JobStage.UNZIPPING, f"Unzipping {len(archives)} archive(s)")
        plans = self._extract(job_id, archives, work_dir)
        self.tracker.set_percent(job_id, config.PERCENT_STAGED)

        self._discover(job_id, plans, stats)
        self.tracker.update_stats(job_id, stats)

        self.tracker.advance(job_id, JobStage.PROCESSING, f"Processing {stats.items_total} item(s)")
        linker = CatalogLinker(self.store, stats)
        for plan in plans:
            self._process_archive(job_id, plan, linker, stats)

        self.tracker.advance(job_id, JobStage.FINALIZING, "Republishing touched entries")
        self.tracker.set_percent(job_id, config.PERCENT_FINALIZING)
        summary = self.republish(linker.touched)
        self.tracker.log(job_id, f"Republished {summary['republished']} entries ({summary['failed']} failed)")

        self.tracker.update_stats(job_id, stats)
        self.tracker.advance(
            job_id,
            JobStage.DONE,
            f"Done: {stats.uploaded} uploaded, {stats.already_imported} already imported, "
            f"{stats.skipped_missing_media} missing, {stats.upload_errors} failed",
        )
        logger.info(f"Job {job_id} completed. Uploaded: {stats.uploaded}")

    def _extract(self, job_id: str, archives: List[Path], work_dir: Path) -> List[ArchivePlan]:
        plans = []
        for idx, archive in enumerate(archives):
            dest = work_dir / f"archive_{idx}"
            result = self.runner.unzip(archive, dest)
            if not result.ok:
                raise FatalStageFailure(f"Failed to unzip {archive.name}: {result.stderr.strip() or 'unknown error'}")
            owner = owner_from_archive_name(archive.name)
            self.tracker.log(job_id, f"Extracted {archive.name} (owner: {owner})")
            plans.append(ArchivePlan(owner=owner, root=dest))
        return plans

    def _discover(self, job_id: str, plans: List[ArchivePlan], stats: ImportStats) -> None:
        keys = list(config.CATEGORY_KEYS)
        for plan in plans:
            found = ArchiveDiscovery(plan.root, keys).discover()
            share = len(found) / len(keys) if keys else 0
            span = config.PERCENT_DISCOVERY_MAX - config.PERCENT_DISCOVERY_MIN
            self.tracker.set_percent(job_id, config.PERCENT_DISCOVERY_MIN + span * share)
            if not found:
                self.tracker.log(job_id, f"No posts, reels or stories found for {plan.owner}")
                continue

            for discovery in found:
                items, invalid = load_archive_items(discovery.json_path)
                plan.categories.append((discovery, items))
                stats.items_total += len(items)
                stats.invalid_items += invalid
                category = stats.category(discovery.key)
                category.items += len(items)
                if items:
                    earliest = items[0].creation_timestamp
                    if category.earliest_ts is None or earliest < category.earliest_ts:
                        category.earliest_ts = earliest
                self.tracker.log(job_id, f"Found {len(items)} {discovery.key} in {discovery.json_path.name}")

    def _process_archive(self, job_id: str, plan: ArchivePlan, linker: CatalogLinker, stats: ImportStats) -> None:
        pipeline = UploadPipeline(self.store, self.runner, MediaResolver(plan.root), plan.owner)
        author = linker.ensure_author(plan.owner)

        for discovery, items in plan.categories:
            for item in items:
                try:
                    result = pipeline.process_item(discovery.key, item, discovery.json_path)
                except Exception as e:
                    logger.error(f"Unexpected error processing {item.relative_uri}: {e}", exc_info=True)
                    result = ItemResult(outcome=ItemOutcome.UPLOAD_FAILED, target_name=item.relative_uri, error=str(e))
                self._record(job_id, stats, discovery.key, result)
                if result.outcome == ItemOutcome.UPLOADED and result.media is not None:
                    self._link(job_id, pipeline, linker, discovery.key, item, result.media, plan.owner, author)
                self._report_progress(job_id, stats)

        self._set_avatar(job_id, plan, linker, author)

    def _record(self, job_id: str, stats: ImportStats, key: str, result: ItemResult) -> None:
        if result.outcome == ItemOutcome.UPLOADED:
            stats.uploaded += 1
            stats.category(key).uploaded += 1
        elif result.outcome == ItemOutcome.ALREADY_IMPORTED:
            stats.already_imported += 1
        elif result.outcome == ItemOutcome.MISSING_MEDIA:
            stats.skipped_missing_media += 1
            self.tracker.log(job_id, f"Missing media for {result.target_name}")
        elif result.outcome == ItemOutcome.UPLOAD_FAILED:
            stats.upload_errors += 1
            self.tracker.log(job_id, f"Upload failed for {result.target_name}: {result.error}")

    def _report_progress(self, job_id: str, stats: ImportStats) -> None:
        if stats.items_total:
            span = config.PERCENT_UPLOAD_END - config.PERCENT_STAGED
            self.tracker.set_percent(job_id, config.PERCENT_STAGED + span * stats.items_handled / stats.items_total)
        self.tracker.update_stats(job_id, stats)

    def _link(
        self,
        job_id: str,
        pipeline: UploadPipeline,
        linker: CatalogLinker,
        key: str,
        item: ArchiveItem,
        media: Record,
        owner: str,
        author: Record,
    ) -> None:
        mentions = extract_mentions(item.title)
        try:
            if key == "stories":
                linker.link_story(media, item, mentions, owner, author)
                return
            entity = linker.link_post_or_reel(key, media, item, mentions or [owner], author)
            if is_video(media.get("mime", "")):
                entity_type = REEL if key == "reels" else POST
                pipeline.attach_video_thumbnail(entity_type, entity, media)
        except Exception as e:
            logger.warning(f"Linking failed for {media.get('name')}: {e}", exc_info=True)
            self.tracker.log(job_id, f"Linking failed for {media.get('name')}: {e}")

    def _set_avatar(self, job_id: str, plan: ArchivePlan, linker: CatalogLinker, author: Record) -> None:
        current = self.store.get_entity(AUTHOR, author["id"]) or author
        if current.get("avatar"):
            return
        photo = find_profile_photo(plan.root)
        if photo is None:
            return

        name = f"{plan.owner}_avatar{photo.suffix.lower()}"
        existing = self.store.find_entities(FILE, {"name": name}, limit=1)
        if existing:
            media = existing[0]
        else:
            try:
                media = self.store.upload_file({"name": name, "mime": guess_mime(photo.name, "image/jpeg")}, photo)
            except ArchiveImportError as e:
                self.tracker.log(job_id, f"Avatar upload failed for {plan.owner}: {e}")
                return
        linker.set_author_avatar(author, media)
        self.tracker.log(job_id, f"Set avatar for {plan.owner}")

    def republish(self, touched: Dict[str, Set[int]]) -> Dict[str, int]:
        """Re-save touched entities so relations and publish dates are refreshed."""
        republished = failed = 0
        for entity_type, ids in touched.items():
            for entity_id in sorted(ids):
                if self._republish_one(entity_type, entity_id):
                    republished += 1
                else:
                    failed += 1
        return {"count": republished + failed, "republished": republished, "failed": failed}

    def refresh_articles(self) -> Dict[str, int]:
        ids = {article["id"] for article in self.store.find_entities(ARTICLE)}
        return self.republish({ARTICLE: ids})

    def _republish_one(self, entity_type: str, entity_id: int) -> bool:
        entity: Optional[Record] = self.store.get_entity(entity_type, entity_id)
        if entity is None:
            logger.warning(f"Cannot republish missing {entity_type} {entity_id}")
            return False
        patch = {key: entity[key] for key in REPUBLISH_FIELDS if key in entity}
        patch["publishedAt"] = entity.get("publishedAt") or utc_now()
        try:
            self.store.update_entity(entity_type, entity_id, patch)
        except KeyError as e:
            logger.warning(f"Republish failed for {entity_type} {entity_id}: {e}")
            return False
        return True
