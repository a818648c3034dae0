import pytest
from fastapi import status

from cottmv.gateway.transcode.keys import partial_path_for


@pytest.mark.asyncio
async def test_register_video_is_probed(client, video_file, fake_runner):
    r = await client.post(
        "/v1/media", json={"title": "Holiday", "file_path": video_file.name, "mime_type": "video/x-matroska"}
    )

    assert r.status_code == status.HTTP_201_CREATED
    media = r.json()
    assert media["media_type"] == "video"
    assert media["file_size"] == video_file.stat().st_size
    assert media["duration"] == 10.0
    assert (media["width"], media["height"]) == (1920, 1080)
    assert fake_runner.probe_calls == 1


@pytest.mark.asyncio
async def test_register_guesses_mime_type(client, media_dir):
    (media_dir / "notes.txt").write_text("shopping list")

    r = await client.post("/v1/media", json={"title": "Notes", "file_path": "notes.txt"})

    assert r.status_code == status.HTTP_201_CREATED
    assert r.json()["mime_type"] == "text/plain"
    assert r.json()["media_type"] == "document"


@pytest.mark.asyncio
async def test_register_rejects_path_outside_media_dir(client, tmp_path):
    (tmp_path / "secret.txt").write_text("nope")

    r = await client.post("/v1/media", json={"title": "Secret", "file_path": "../secret.txt"})

    assert r.status_code == 422
    assert "inside the media directory" in r.json()["detail"]


@pytest.mark.asyncio
async def test_register_rejects_missing_file(client):
    r = await client.post("/v1/media", json={"title": "Ghost", "file_path": "ghost.mp4"})
    assert r.status_code == 422


@pytest.mark.asyncio
async def test_register_duplicate_hash_conflicts(client, image_file):
    body = {"title": "Receipt", "file_path": image_file.name, "mime_type": "image/png", "compute_hash": True}

    first = await client.post("/v1/media", json=body)
    second = await client.post("/v1/media", json=body)

    assert first.status_code == status.HTTP_201_CREATED
    assert len(first.json()["file_hash"]) == 64
    assert second.status_code == status.HTTP_409_CONFLICT


@pytest.mark.asyncio
async def test_get_media(client, video_id):
    r = await client.get(f"/v1/media/{video_id}")

    assert r.status_code == status.HTTP_200_OK
    assert r.json()["title"] == "Holiday"


@pytest.mark.asyncio
async def test_get_unknown_media(client):
    r = await client.get("/v1/media/4242")

    assert r.status_code == status.HTTP_404_NOT_FOUND
    assert r.json()["resource_type"] == "Media"


@pytest.mark.asyncio
async def test_delete_drops_cached_renditions(client, video_id, video_file, fake_runner):
    await client.get(f"/v1/stream/{video_id}?quality=720p")
    await client.get(f"/v1/stream/{video_id}?quality=480p&format=webm")
    outputs = [call[1] for call in fake_runner.calls]
    assert all(p.exists() for p in outputs)

    r = await client.delete(f"/v1/media/{video_id}")

    assert r.status_code == status.HTTP_200_OK
    assert r.json() == {
        "id": video_id,
        "cache_entries_removed": 2,
        "bytes_freed": 2 * len(fake_runner.output_bytes),
    }
    assert not any(p.exists() or partial_path_for(p).exists() for p in outputs)
    assert video_file.exists()
    assert (await client.get(f"/v1/media/{video_id}")).status_code == status.HTTP_404_NOT_FOUND


@pytest.mark.asyncio
async def test_delete_with_missing_file(client, video_id, video_file):
    video_file.unlink()

    r = await client.delete(f"/v1/media/{video_id}")

    assert r.status_code == status.HTTP_200_OK
    assert r.json()["cache_entries_removed"] == 0


@pytest.mark.asyncio
async def test_delete_unknown_media(client):
    r = await client.delete("/v1/media/4242")
    assert r.status_code == status.HTTP_404_NOT_FOUND


@pytest.mark.asyncio
async def test_ocr_stores_text(client, image_id):
    r = await client.post(f"/v1/media/{image_id}/ocr")

    assert r.status_code == status.HTTP_200_OK
    assert r.json() == {"id": image_id, "text": "receipt total 42"}
    assert (await client.get(f"/v1/media/{image_id}")).json()["ocr_text"] == "receipt total 42"


@pytest.mark.asyncio
async def test_ocr_rejects_video(client, video_id):
    r = await client.post(f"/v1/media/{video_id}/ocr")
    assert r.status_code == 422


@pytest.mark.asyncio
async def test_ocr_failure_is_bad_gateway(app, client, image_id):
    app.state.ocr.context.command = ["false"]

    first = await client.post(f"/v1/media/{image_id}/ocr")
    second = await client.post(f"/v1/media/{image_id}/ocr")

    assert first.status_code == status.HTTP_502_BAD_GATEWAY
    assert "exited with code 1" in first.json()["detail"]
    assert second.status_code == status.HTTP_502_BAD_GATEWAY
    assert "failed on it before" in second.json()["detail"]
