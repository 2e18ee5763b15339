"""HTTP tests for the slicing API."""

import asyncio
import re

import pytest
from fastapi import HTTPException
from fastapi.testclient import TestClient

import routes_slice
from conftest import SAMPLE_GCODE
from main import create_app


MODEL = ("cube.stl", b"solid cube\nendsolid cube\n", "application/octet-stream")


@pytest.fixture
def client_for(make_settings):
    clients = []

    def build(mode="ok", **overrides):
        client = TestClient(create_app(make_settings(mode, **overrides)))
        client.__enter__()
        clients.append(client)
        return client

    yield build
    for client in clients:
        client.__exit__(None, None, None)


@pytest.fixture
def client(client_for):
    return client_for("ok")


class TestService:
    def test_healthz(self, client):
        response = client.get("/healthz")
        assert response.status_code == 200
        assert response.json() == {"status": "ok"}

    def test_banner(self, client):
        response = client.get("/")
        assert response.status_code == 200
        assert response.json()["name"] == "Slice Bridge API"

    def test_cors_allows_any_origin(self, client):
        response = client.get("/healthz", headers={"Origin": "https://shop.example"})
        assert response.headers["access-control-allow-origin"] == "*"


class TestSliceEndpoint:
    """Tests for POST /slice."""

    def test_success(self, client):
        response = client.post("/slice", files={"file": MODEL})

        assert response.status_code == 200
        body = response.json()
        assert re.fullmatch(r"[0-9a-f]{32}", body["jobId"])
        assert body["priceEstimate"] == pytest.approx(2.00)
        assert body["timeEstimate"] == pytest.approx(1.50)
        assert body["priceDisplay"] == "$2.00"
        assert body["quickAnalysis"]["layerCount"] == 50
        assert body["downloadUrl"] == f"/jobs/{body['jobId']}/download"

    def test_missing_file(self, client):
        response = client.post("/slice", files={"other": ("a.stl", b"x")})

        assert response.status_code == 400
        assert response.json()["detail"]["code"] == "missing_file"

    def test_not_multipart(self, client):
        response = client.post("/slice", content=b"solid", headers={"Content-Type": "application/octet-stream"})
        assert response.status_code == 415

    def test_unsupported_extension(self, client):
        response = client.post("/slice", files={"file": ("notes.txt", b"hello", "text/plain")})

        assert response.status_code == 400
        assert response.json()["detail"]["code"] == "unsupported_extension"

    def test_too_large(self, client_for):
        client = client_for("ok", max_upload_bytes=10)
        response = client.post("/slice", files={"file": MODEL})

        assert response.status_code == 413
        assert response.json()["detail"]["code"] == "file_too_large"

    def test_declared_length_over_cap_rejected_before_parsing(self, client_for, scratch_dir):
        client = client_for("ok", max_upload_bytes=10)
        payload = ("cube.stl", b"x" * (200 * 1024), "application/octet-stream")
        response = client.post("/slice", files={"file": payload})

        assert response.status_code == 413
        assert response.json()["detail"]["code"] == "file_too_large"
        assert list(scratch_dir.iterdir()) == []

    def test_chunked_body_refused(self, client):
        def body():
            yield b"--x\r\nContent-Disposition: form-data; name=\"file\"; filename=\"cube.stl\"\r\n\r\n"
            yield b"solid\r\n--x--\r\n"

        response = client.post(
            "/slice",
            content=body(),
            headers={"Content-Type": "multipart/form-data; boundary=x"},
        )

        assert response.status_code == 411
        assert response.json()["detail"]["code"] == "length_required"

    def test_non_finite_filament_comment(self, client_for):
        client = client_for("nan")
        response = client.post("/slice", files={"file": MODEL})

        assert response.status_code == 200
        body = response.json()
        # falls back to the filament summed from moves
        assert body["priceEstimate"] == pytest.approx(2.00)

        job_id = body["jobId"]
        assert client.get(f"/jobs/{job_id}").status_code == 200
        assert client.get(f"/jobs/{job_id}/download").status_code == 200

    def test_empty_file(self, client):
        response = client.post("/slice", files={"file": ("cube.stl", b"", "application/octet-stream")})

        assert response.status_code == 400
        assert response.json()["detail"]["code"] == "missing_file"

    def test_engine_failure(self, client_for):
        client = client_for("fail")
        response = client.post("/slice", files={"file": MODEL})

        assert response.status_code == 500
        detail = response.json()["detail"]
        assert detail["code"] == "slicing_failed"
        assert detail["message"] == "boom"

        # the failed job is on record but has no artifact
        job = client.get(f"/jobs/{detail['jobId']}").json()
        assert job["status"] == "slice_failed"
        assert client.get(f"/jobs/{detail['jobId']}/download").status_code == 404

    def test_engine_timeout(self, client_for):
        client = client_for("sleep", slice_timeout_seconds=0.5)
        response = client.post("/slice", files={"file": MODEL})

        assert response.status_code == 504
        assert response.json()["detail"]["code"] == "slicing_timeout"


class TestRetrieval:
    """Tests for job record and G-code retrieval."""

    def _slice(self, client):
        return client.post("/slice", files={"file": MODEL}).json()["jobId"]

    def test_download(self, client):
        job_id = self._slice(client)
        response = client.get(f"/jobs/{job_id}/download")

        assert response.status_code == 200
        assert response.text == SAMPLE_GCODE
        assert response.headers["content-type"].startswith("text/plain")
        assert response.headers["content-disposition"] == f'inline; filename="{job_id}.gcode"'

    def test_download_by_query(self, client):
        job_id = self._slice(client)
        response = client.get("/", params={"id": job_id})

        assert response.status_code == 200
        assert response.content == SAMPLE_GCODE.encode()

    def test_job_record(self, client):
        job_id = self._slice(client)
        record = client.get(f"/jobs/{job_id}").json()

        assert record["schemaVersion"] == 1
        assert record["status"] == "completed"
        assert record["requestMeta"] == {
            "name": "cube.stl",
            "extension": ".stl",
            "size": len(MODEL[1]),
            "jobId": job_id,
        }
        assert record["estimate"]["priceEstimate"] == pytest.approx(2.00)

    def test_job_record_hides_server_paths(self, client):
        job_id = self._slice(client)
        record = client.get(f"/jobs/{job_id}").json()

        assert "inputPath" not in record
        assert "outputPath" not in record
        assert "stdout" not in record["engineResult"]
        assert record["engineResult"]["exitInfo"]["exitCode"] == 0

    @pytest.mark.parametrize("job_id", [
        "0" * 32,
        "../../etc/passwd",
        "..%2F..%2Fetc%2Fpasswd",
        "/etc/passwd",
        "not-a-job",
    ])
    def test_unknown_or_hostile_ids(self, client, job_id):
        response = client.get("/", params={"id": job_id})

        assert response.status_code == 404
        assert response.json() == {"detail": "not found"}

    def test_unknown_job_record(self, client):
        assert client.get(f"/jobs/{'f' * 32}").status_code == 404

    def test_artifact_removed_externally(self, client, scratch_dir):
        job_id = self._slice(client)
        for path in scratch_dir.glob("*.gcode"):
            path.unlink()

        assert client.get(f"/jobs/{job_id}/download").status_code == 404


class _GoneRequest:
    async def is_disconnected(self):
        return True


@pytest.mark.asyncio
async def test_client_disconnect_cancels_work(monkeypatch):
    monkeypatch.setattr(routes_slice, "DISCONNECT_POLL_SECONDS", 0.01)
    cancelled = asyncio.Event()

    async def work():
        try:
            await asyncio.sleep(30)
        except asyncio.CancelledError:
            cancelled.set()
            raise

    with pytest.raises(HTTPException) as exc_info:
        await routes_slice._run_until_disconnect(_GoneRequest(), work())

    assert exc_info.value.status_code == 499
    assert cancelled.is_set()
