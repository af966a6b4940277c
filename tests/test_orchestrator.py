"""End-to-end tests for import jobs against the local catalog."""
import shutil

import pytest

from builders import POSTS_JSON, build_archive
from catalog import ARTICLE, AUTHOR, FILE, POST, REEL
from models import JobStage


def run_job(orchestrator, tracker, tmp_path, *archives):
    """Stage archives into a fresh work dir and run the job synchronously."""
    job = tracker.create()
    work_dir = tmp_path / "jobs" / job.id
    (work_dir / "uploads").mkdir(parents=True)
    staged = []
    for archive in archives:
        target = work_dir / "uploads" / archive.name
        shutil.copyfile(archive, target)
        staged.append(target)
    orchestrator.run(job.id, staged, work_dir)
    assert not work_dir.exists()
    return tracker.get(job.id)


class PercentRecorder:
    """Wraps JobTracker.set_percent to record every value the job reports."""

    def __init__(self, tracker):
        self.values = []
        self._original = tracker.set_percent
        tracker.set_percent = self

    def __call__(self, job_id, percent):
        job = self._original(job_id, percent)
        self.values.append(job.percent)
        return job


def test_posts_import(store, orchestrator, tracker, tmp_path, posts_archive):
    job = run_job(orchestrator, tracker, tmp_path, posts_archive)

    assert job.stage == JobStage.DONE
    assert job.done is True
    assert job.percent == 100
    assert job.stats.items_total == 1
    assert job.stats.uploaded == 1
    assert job.stats.by_category["posts"].uploaded == 1
    assert job.stats.by_category["posts"].earliest_ts == 1704067200
    assert job.stats.articles_created == 1
    assert job.stats.usernames_touched == ["@foodie"]

    posts = store.find_entities(POST)
    articles = store.find_entities(ARTICLE)
    assert len(posts) == 1
    assert [a["slug"] for a in articles] == ["foodie"]
    assert articles[0]["posts"] == [posts[0]["id"]]
    assert store.find_entities(AUTHOR)[0]["name"] == "alice"
    media = store.find_entities(FILE, {"name": "alice_2024-01-01_00-00-00.jpg"})
    assert len(media) == 1
    assert posts[0]["media"] == [media[0]["id"]]


def test_reimport_is_idempotent(store, orchestrator, tracker, tmp_path, posts_archive):
    run_job(orchestrator, tracker, tmp_path, posts_archive)

    job = run_job(orchestrator, tracker, tmp_path, posts_archive)

    assert job.stage == JobStage.DONE
    assert job.stats.uploaded == 0
    assert job.stats.already_imported == 1
    assert job.stats.articles_created == 0
    assert job.percent == 100
    assert len(store.find_entities(POST)) == 1
    assert len(store.find_entities(ARTICLE)) == 1
    assert len(store.find_entities(FILE)) == 1


def test_missing_media_still_completes(store, orchestrator, tracker, tmp_path):
    archive = build_archive(tmp_path / "instagram-alice-2024-01-01-x.zip", {
        POSTS_JSON: [{"uri": "media/posts/gone.jpg", "creation_timestamp": 1704067200, "title": "@foodie"}],
    })

    job = run_job(orchestrator, tracker, tmp_path, archive)

    assert job.stage == JobStage.DONE
    assert job.stats.skipped_missing_media == 1
    assert job.stats.uploaded == 0
    assert store.find_entities(ARTICLE) == []
    assert any("Missing media" in message for message in job.messages)


def test_percent_is_monotonic_and_reaches_done(orchestrator, tracker, tmp_path):
    recorder = PercentRecorder(tracker)
    archive = build_archive(tmp_path / "instagram-bob-2024-01-01-x.zip", {
        POSTS_JSON: [
            {"uri": f"media/posts/{i}.jpg", "creation_timestamp": 1704067200 + i, "title": ""}
            for i in range(4)
        ],
        "media/posts/0.jpg": b"\xff\xd8\xff\xd9",
        "media/posts/2.jpg": b"\xff\xd8\xff\xd9",
    })

    job = run_job(orchestrator, tracker, tmp_path, archive)

    assert recorder.values == sorted(recorder.values)
    assert recorder.values[0] == 10
    assert 90 in recorder.values
    assert recorder.values[-1] == 95
    assert job.percent == 100
    assert job.stats.uploaded == 2
    assert job.stats.skipped_missing_media == 2


def test_unzip_failure_moves_job_to_error(orchestrator, tracker, tmp_path):
    broken = tmp_path / "instagram-alice-2024-01-01-x.zip"
    broken.write_bytes(b"this is not a zip")

    job = run_job(orchestrator, tracker, tmp_path, broken)

    assert job.stage == JobStage.ERROR
    assert "Failed to unzip" in job.error
    assert job.percent < 100


def test_archive_without_categories_is_done(orchestrator, tracker, tmp_path):
    archive = build_archive(tmp_path / "instagram-alice-2024-01-01-x.zip", {"readme.txt": b"nothing here"})

    job = run_job(orchestrator, tracker, tmp_path, archive)

    assert job.stage == JobStage.DONE
    assert job.stats.items_total == 0


def test_stories_reels_and_avatar(store, orchestrator, tracker, tmp_path):
    archive = build_archive(tmp_path / "instagram-carol-2024-01-01-x.zip", {
        "your_instagram_activity/content/stories.json": {"ig_stories": [
            {"uri": "media/stories/s2.jpg", "creation_timestamp": 1709294400, "title": "@dave late"},
            {"uri": "media/stories/s1.jpg", "creation_timestamp": 1709280000, "title": "@dave early"},
        ]},
        "your_instagram_activity/content/reels.json": {"ig_reels_media": [
            {"media": [{"uri": "media/reels/r.mp4", "creation_timestamp": 1709300000, "title": "dance"}]},
        ]},
        "personal_information/personal_information/personal_information.json": {
            "profile_user": [{"media_map_data": {"Profile Photo": {"uri": "media/profile/me.jpg"}}}],
        },
        "media/stories/s1.jpg": b"\xff\xd8\xff\xd9",
        "media/stories/s2.jpg": b"\xff\xd8\xff\xd9",
        "media/reels/r.mp4": b"\x00\x00\x00\x08free",
        "media/profile/me.jpg": b"\xff\xd8\xff\xd9",
    })

    job = run_job(orchestrator, tracker, tmp_path, archive)

    assert job.stage == JobStage.DONE
    assert job.stats.uploaded == 3
    assert job.stats.reels_created == 1

    dave = store.find_entities(ARTICLE, {"username": "@dave"})[0]
    ordered = [store.get_entity(FILE, media_id)["name"] for media_id in dave["media"]]
    assert ordered == ["carol_2024-03-01_08-00-00.jpg", "carol_2024-03-01_12-00-00.jpg"]

    reel = store.find_entities(REEL)[0]
    assert store.get_entity(FILE, reel["thumbnail"])["mime"] == "image/jpeg"
    carol = store.find_entities(ARTICLE, {"username": "@carol"})[0]
    assert carol["reels"] == [reel["id"]]

    author = store.find_entities(AUTHOR, {"name": "carol"})[0]
    assert store.get_entity(FILE, author["avatar"])["name"] == "carol_avatar.jpg"


def test_multiple_archives_keep_their_owner(store, orchestrator, tracker, tmp_path, posts_archive):
    other = build_archive(tmp_path / "instagram-erin-2024-01-01-y.zip", {
        POSTS_JSON: [{"uri": "media/posts/x.jpg", "creation_timestamp": 1704067200, "title": "solo"}],
        "media/posts/x.jpg": b"\xff\xd8\xff\xd9",
    })

    job = run_job(orchestrator, tracker, tmp_path, posts_archive, other)

    assert job.stats.uploaded == 2
    names = sorted(f["name"] for f in store.find_entities(FILE))
    assert names == ["alice_2024-01-01_00-00-00.jpg", "erin_2024-01-01_00-00-00.jpg"]
    assert sorted(a["name"] for a in store.find_entities(AUTHOR)) == ["alice", "erin"]


def test_refresh_articles(store, orchestrator, tracker, tmp_path, posts_archive):
    run_job(orchestrator, tracker, tmp_path, posts_archive)

    assert orchestrator.refresh_articles() == {"count": 1, "republished": 1, "failed": 0}


@pytest.mark.parametrize("touched, expected", [
    ({ARTICLE: {999}}, {"count": 1, "republished": 0, "failed": 1}),
    ({}, {"count": 0, "republished": 0, "failed": 0}),
])
def test_republish_reports_missing_entities(orchestrator, touched, expected):
    assert orchestrator.republish(touched) == expected


def test_carousel_children_with_one_timestamp_all_upload(store, orchestrator, tracker, tmp_path):
    archive = build_archive(tmp_path / "instagram-alice-2024-01-01-x.zip", {
        POSTS_JSON: [
            {
                "title": "Beach day",
                "creation_timestamp": 1700000000,
                "media": [{"uri": "media/posts/a.jpg"}, {"uri": "media/posts/b.jpg"}],
            },
        ],
        "media/posts/a.jpg": b"\xff\xd8\xff\xd9",
        "media/posts/b.jpg": b"\xff\xd8\xff\xd9",
    })

    job = run_job(orchestrator, tracker, tmp_path, archive)

    assert job.stage == JobStage.DONE
    assert job.stats.uploaded == 2
    assert job.stats.already_imported == 0
    names = sorted(f["name"] for f in store.find_entities(FILE))
    assert names == ["alice_2023-11-14_22-13-20.jpg", "alice_2023-11-14_22-13-20_1.jpg"]

    again = run_job(orchestrator, tracker, tmp_path, archive)

    assert again.stats.uploaded == 0
    assert again.stats.already_imported == 2


def test_millisecond_timestamp_does_not_fail_job(store, orchestrator, tracker, tmp_path):
    archive = build_archive(tmp_path / "instagram-alice-2024-01-01-x.zip", {
        POSTS_JSON: [
            {"uri": "media/posts/a.jpg", "creation_timestamp": 1700000000, "title": ""},
            {"uri": "media/posts/b.jpg", "creation_timestamp": 1700000100000, "title": ""},
            {"uri": "media/posts/c.jpg", "creation_timestamp": 10 ** 16, "title": ""},
        ],
        "media/posts/a.jpg": b"\xff\xd8\xff\xd9",
        "media/posts/b.jpg": b"\xff\xd8\xff\xd9",
        "media/posts/c.jpg": b"\xff\xd8\xff\xd9",
    })

    job = run_job(orchestrator, tracker, tmp_path, archive)

    assert job.stage == JobStage.DONE
    assert job.stats.uploaded == 2
    assert job.stats.invalid_items == 1
    assert store.find_entities(FILE, {"name": "alice_2023-11-14_22-15-00.jpg"})


def test_unexpected_item_error_is_counted_and_job_continues(store, orchestrator, tracker, tmp_path, monkeypatch):
    archive = build_archive(tmp_path / "instagram-alice-2024-01-01-x.zip", {
        POSTS_JSON: [
            {"uri": "media/posts/bad.jpg", "creation_timestamp": 1704067200, "title": "@foodie"},
            {"uri": "media/posts/good.jpg", "creation_timestamp": 1704067260, "title": "@foodie"},
        ],
        "media/posts/bad.jpg": b"\xff\xd8\xff\xd9",
        "media/posts/good.jpg": b"\xff\xd8\xff\xd9",
    })
    upload_file = store.upload_file

    def flaky_upload(data, source_path):
        if data["name"] == "alice_2024-01-01_00-00-00.jpg":
            raise RuntimeError("disk on fire")
        return upload_file(data, source_path)

    monkeypatch.setattr(store, "upload_file", flaky_upload)

    job = run_job(orchestrator, tracker, tmp_path, archive)

    assert job.stage == JobStage.DONE
    assert job.percent == 100
    assert job.stats.upload_errors == 1
    assert job.stats.uploaded == 1
    assert any("disk on fire" in message for message in job.messages)
    assert [f["name"] for f in store.find_entities(FILE)] == ["alice_2024-01-01_00-01-00.jpg"]
    assert len(store.find_entities(POST)) == 1
