"""Unit tests for artifact storage."""

import pytest

from genqueue.jobs.errors import ArtifactStoreError
from genqueue.services.artifacts import LocalArtifactStore, artifact_path


class TestArtifactPath:
    def test_path_layout(self, make_job, clock):
        job = make_job(user_id="user-9")
        epoch_ms = int(clock().timestamp() * 1000)
        assert artifact_path(job, clock()) == f"generated/image/user-9/{epoch_ms}_{job.id}"


class TestLocalArtifactStore:
    @pytest.mark.asyncio
    async def test_writes_file_and_returns_file_url(self, tmp_path):
        store = LocalArtifactStore(str(tmp_path))

        url = await store.store(b"PNGDATA", "generated/image/u/1_abc")

        written = tmp_path / "generated" / "image" / "u" / "1_abc"
        assert written.read_bytes() == b"PNGDATA"
        assert url == written.resolve().as_uri()
        assert not written.with_suffix(".tmp").exists()

    @pytest.mark.asyncio
    async def test_base_url(self, tmp_path):
        store = LocalArtifactStore(str(tmp_path), base_url="https://cdn.test/")
        url = await store.store(b"x", "generated/audio/u/1_abc")
        assert url == "https://cdn.test/generated/audio/u/1_abc"

    @pytest.mark.asyncio
    async def test_path_escape_rejected(self, tmp_path):
        store = LocalArtifactStore(str(tmp_path / "root"))
        with pytest.raises(ArtifactStoreError):
            await store.store(b"x", "../outside")
