import pytest

from builders import POSTS_JSON, FakeRunner, build_archive
from catalog import LocalCatalogStore
from jobs import JobTracker
from orchestrator import ImportOrchestrator


@pytest.fixture
def store(tmp_path):
    """Create an empty catalog under a temp dir."""
    return LocalCatalogStore(tmp_path / "data" / "catalog.json", tmp_path / "public")


@pytest.fixture
def runner():
    return FakeRunner()


@pytest.fixture
def tracker():
    return JobTracker()


@pytest.fixture
def orchestrator(store, runner, tracker):
    return ImportOrchestrator(store, runner, tracker)


@pytest.fixture
def posts_archive(tmp_path):
    """Export with one post mentioning @foodie."""
    return build_archive(tmp_path / "instagram-alice-2024-01-01-abc123.zip", {
        POSTS_JSON: [
            {
                "media": [
                    {
                        "uri": "media/posts/202401/lunch.jpg",
                        "creation_timestamp": 1704067200,
                        "title": "Lunch with @foodie",
                    }
                ]
            }
        ],
        "media/posts/202401/lunch.jpg": b"\xff\xd8\xff\xd9",
    })
