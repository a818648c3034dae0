import httpx
import pytest
import pytest_asyncio
from fastapi import FastAPI
from httpx import AsyncClient

from cottmv.gateway import create_app
from cottmv.gateway.config import Settings
from cottmv.gateway.db import close_db

ADMIN_TOKEN = "test-admin-token"


@pytest.fixture
def media_dir(tmp_path):
    path = tmp_path / "media"
    path.mkdir(exist_ok=True)
    return path


@pytest.fixture
def settings(tmp_path, media_dir, cache_dir) -> Settings:
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'db' / 'cottmv.db'}",
        db_drop_and_recreate=True,
        cors_origins=["*"],
        admin_token=ADMIN_TOKEN,
        media_dir=media_dir,
        cache_dir=cache_dir,
        cache_index_path=tmp_path / "index" / "cache.db",
        ocr_command=["echo", "receipt total 42"],
        metrics_db_path=None,
        log_dir=tmp_path / "logs",
    )


@pytest_asyncio.fixture(scope="function")
async def app(settings, fake_runner) -> FastAPI:
    await close_db()

    app = create_app(settings)
    app.state.runner = fake_runner

    async with app.router.lifespan_context(app):
        yield app

    await close_db()


@pytest_asyncio.fixture
async def client(app):
    async with AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as client:
        yield client


@pytest.fixture
def admin_headers() -> dict[str, str]:
    return {"X-Admin-Token": ADMIN_TOKEN}


@pytest.fixture
def video_file(media_dir):
    path = media_dir / "holiday.mkv"
    path.write_bytes(b"\x1a\x45\xdf\xa3" + bytes(range(256)) * 40)
    return path


@pytest.fixture
def image_file(media_dir):
    path = media_dir / "receipt.png"
    path.write_bytes(b"\x89PNG\r\n\x1a\n" + b"\x00" * 64)
    return path


@pytest_asyncio.fixture
async def video_id(client, video_file) -> int:
    r = await client.post(
        "/v1/media", json={"title": "Holiday", "file_path": video_file.name, "mime_type": "video/x-matroska"}
    )
    assert r.status_code == 201
    return r.json()["id"]


@pytest_asyncio.fixture
async def image_id(client, image_file) -> int:
    r = await client.post(
        "/v1/media", json={"title": "Receipt", "file_path": image_file.name, "mime_type": "image/png"}
    )
    assert r.status_code == 201
    return r.json()["id"]
