"""
Shared fixtures for the resolver test suite.
"""

import asyncio
from collections.abc import AsyncGenerator
from pathlib import Path
from typing import Any

import pytest
from httpx import ASGITransport, AsyncClient

import main


class FakeExtractor:
    """Extractor double: returns a canned info dict, raises, or stalls."""

    def __init__(
        self,
        result: dict[str, Any] | None = None,
        *,
        error: Exception | None = None,
        delay: float = 0.0,
    ):
        self.result = result
        self.error = error
        self.delay = delay
        self.calls: list[tuple[str, float]] = []

    async def extract(self, url: str, timeout: float) -> dict[str, Any]:
        self.calls.append((url, timeout))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return dict(self.result or {})


@pytest.fixture
def temp_dir(tmp_path: Path) -> Path:
    return tmp_path


@pytest.fixture
def temp_db(tmp_path: Path) -> str:
    return str(tmp_path / "test_jobs.db")


@pytest.fixture
def sample_video_url() -> str:
    return "https://www.youtube.com/watch?v=dQw4w9WgXcQ"


@pytest.fixture
def sample_formats() -> list[dict[str, Any]]:
    """Raw yt-dlp format descriptors, in the order yt-dlp lists them."""
    return [
        {
            "format_id": "18",
            "ext": "mp4",
            "height": 360,
            "acodec": "mp4a.40.2",
            "vcodec": "avc1.42001E",
            "filesize": 1_000_000,
            "url": "https://cdn.example.com/360.mp4",
        },
        {
            "format_id": "137",
            "ext": "mp4",
            "height": 1080,
            "acodec": "none",
            "vcodec": "avc1.640028",
            "filesize": 9_000_000,
            "url": "https://cdn.example.com/1080-video-only.mp4",
        },
        {
            "format_id": "22",
            "ext": "mp4",
            "height": 720,
            "acodec": "mp4a.40.2",
            "vcodec": "avc1.64001F",
            "filesize_approx": 5_000_000.0,
            "url": "https://cdn.example.com/720.mp4",
        },
        {
            "format_id": "299",
            "ext": "mp4",
            "height": 1080,
            "acodec": "mp4a.40.2",
            "vcodec": "avc1.64002a",
            "filesize": 12_000_000,
            "url": "https://cdn.example.com/1080.mp4",
        },
        {
            "format_id": "248",
            "ext": "webm",
            "height": 1080,
            "acodec": "opus",
            "vcodec": "vp9",
            "filesize": 8_000_000,
            "url": "https://cdn.example.com/1080.webm",
        },
    ]


@pytest.fixture
def sample_video_info(sample_formats: list[dict[str, Any]]) -> dict[str, Any]:
    return {
        "id": "dQw4w9WgXcQ",
        "title": "Sample Video",
        "duration": 212,
        "thumbnail": "https://i.ytimg.com/vi/dQw4w9WgXcQ/hqdefault.jpg",
        "view_count": 1234,
        "uploader": "Sample Channel",
        "extractor": "youtube",
        "webpage_url": "https://www.youtube.com/watch?v=dQw4w9WgXcQ",
        "formats": sample_formats,
    }


@pytest.fixture
def worker_config() -> main.WorkerConfig:
    return main.WorkerConfig(
        max_workers=2,
        extract_timeout=0.5,
        visibility_timeout=30.0,
        max_deliveries=3,
        poll_interval=0.01,
    )


@pytest.fixture
def test_store(temp_db: str) -> main.JobStore:
    return main.JobStore(db_file=temp_db)


@pytest.fixture
def test_queue(temp_db: str, worker_config: main.WorkerConfig) -> main.JobQueue:
    return main.JobQueue(db_file=temp_db, visibility_timeout=worker_config.visibility_timeout)


@pytest.fixture
def fake_extractor(sample_video_info: dict[str, Any]) -> FakeExtractor:
    return FakeExtractor(sample_video_info)


@pytest.fixture
def plans() -> main.StaticPlanLookup:
    return main.StaticPlanLookup(
        {"premium-user": "premium", "free-user": "free"},
        ["premium", "enterprise"],
    )


@pytest.fixture
def service(
    test_store: main.JobStore,
    test_queue: main.JobQueue,
    fake_extractor: FakeExtractor,
    worker_config: main.WorkerConfig,
    plans: main.StaticPlanLookup,
) -> main.ResolverService:
    backend = main.MemoryTTLStore()
    pool = main.WorkerPool(test_store, test_queue, fake_extractor, worker_config)
    return main.ResolverService(
        store=test_store,
        queue=test_queue,
        dedup=main.DedupCache(backend, ttl_seconds=3600),
        gates=main.GateStore(backend, ttl_seconds=600),
        plans=plans,
        pool=pool,
    )


@pytest.fixture
async def client(service: main.ResolverService) -> AsyncGenerator[AsyncClient, None]:
    """Async client over an app wired to the test service (workers not started)."""
    transport = ASGITransport(app=main.create_app(service))
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
