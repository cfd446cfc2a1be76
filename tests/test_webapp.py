"""
Tests for the save inspector web app.

Tests cover:
- Upload and header inspection
- Payload extraction and container creation
- Input validation and codec error mapping
- Stale upload cleanup
"""
import os
import struct
import time
import zlib

import pytest
from fastapi.testclient import TestClient

from palsave import CompressionMode, PalSave
from palsave import webapp


@pytest.fixture
def client(tmp_path, monkeypatch):
    monkeypatch.setattr(webapp, "UPLOAD_ROOT", tmp_path)
    return TestClient(webapp.app)


@pytest.fixture
def payload():
    return b"GVAS" + bytes(range(256)) * 8


@pytest.fixture
def container(payload):
    return PalSave.from_raw_payload(payload, CompressionMode.DOUBLE)


def test_index_serves_upload_page(client):
    resp = client.get("/")

    assert resp.status_code == 200
    assert "PlZ Save Inspector" in resp.text


def test_upload_reports_header(client, container, tmp_path):
    resp = client.post("/api/upload",
                       files={"file": ("Level.sav", container.to_bytes(), "application/octet-stream")})

    assert resp.status_code == 200
    body = resp.json()
    assert body["header"] == container.header
    assert body["payload_ok"] is True
    assert body["payload_error"] is None
    assert os.path.dirname(body["uploaded_path"]) == str(tmp_path)


def test_upload_reports_broken_payload(client):
    broken = PalSave.from_bytes(b"\x10\x00\x00\x00\x05\x00\x00\x00PlZ2garbage")
    resp = client.post("/api/upload",
                       files={"file": ("Level.sav", broken.to_bytes(), "application/octet-stream")})

    assert resp.status_code == 200
    body = resp.json()
    assert body["header"]["compression_mode"] == "2"
    assert body["payload_ok"] is False
    assert body["payload_error"].startswith("CompressionError")


def test_upload_rejects_non_sav(client, container):
    resp = client.post("/api/upload",
                       files={"file": ("Level.txt", container.to_bytes(), "text/plain")})

    assert resp.status_code == 400
    assert resp.json()["detail"] == "Please upload a .sav file"


def test_upload_rejects_bad_container(client):
    resp = client.post("/api/upload",
                       files={"file": ("Level.sav", b"GVAS\x00\x00\x00\x00\x00\x00\x00\x00", "application/octet-stream")})

    assert resp.status_code == 400
    assert resp.json()["detail"].startswith("Parse error (BadMagicError)")


def test_decompress_returns_payload(client, container, payload):
    resp = client.post("/api/decompress",
                       files={"file": ("Level.sav", container.to_bytes(), "application/octet-stream")})

    assert resp.status_code == 200
    assert resp.content == payload
    assert 'filename="Level.bin"' in resp.headers["content-disposition"]


def test_decompress_short_input(client):
    resp = client.post("/api/decompress",
                       files={"file": ("Level.sav", b"PlZ", "application/octet-stream")})

    assert resp.status_code == 400
    assert "TooShortError" in resp.json()["detail"]


@pytest.mark.parametrize("mode", ["1", "2"])
def test_compress_builds_container(client, payload, mode):
    resp = client.post(f"/api/compress?mode={mode}",
                       files={"file": ("Level.bin", payload, "application/octet-stream")})

    assert resp.status_code == 200
    save = PalSave.from_bytes(resp.content)
    assert str(save.compression_mode) == mode
    assert save.decompressed_body() == payload
    assert 'filename="Level.sav"' in resp.headers["content-disposition"]


def test_compress_rejects_unknown_mode(client, payload):
    resp = client.post("/api/compress?mode=7",
                       files={"file": ("Level.bin", payload, "application/octet-stream")})

    assert resp.status_code == 400


def test_clean_once_removes_stale_uploads(tmp_path, monkeypatch):
    monkeypatch.setattr(webapp, "UPLOAD_ROOT", tmp_path)
    stale = tmp_path / "stale.sav"
    fresh = tmp_path / "fresh.sav"
    stale.write_bytes(b"x")
    fresh.write_bytes(b"y")
    old = time.time() - webapp.FILE_TTL_SECONDS - 60
    os.utime(stale, (old, old))

    assert webapp._clean_once() == 1
    assert not stale.exists()
    assert fresh.exists()


def test_sanitize_filename():
    assert webapp._sanitize_filename("../../etc/Level 1.sav") == "....etcLevel1.sav"
    assert webapp._sanitize_filename("???") == "upload.sav"


def test_upload_rejects_inflation_bomb(client):
    once = zlib.compress(b"\x00" * 50_000_000)
    data = struct.pack('<II', 16, len(once)) + b"PlZ2" + zlib.compress(once)

    resp = client.post("/api/upload",
                       files={"file": ("Level.sav", data, "application/octet-stream")})

    assert resp.status_code == 200
    assert resp.json()["payload_error"].startswith("LengthMismatchError")
