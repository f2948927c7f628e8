from __future__ import annotations

import json

import httpx
import pytest

from screen_vault import cli
from screen_vault.upload import UploadClient


def _patch_client(monkeypatch: pytest.MonkeyPatch, handler) -> None:
    def factory(base_url: str, **kwargs) -> UploadClient:
        return UploadClient(base_url, transport=httpx.MockTransport(handler))

    monkeypatch.setattr(cli, "UploadClient", factory)


def test_parser_defaults() -> None:
    args = cli.build_parser().parse_args(["record", "--backend", "synthetic", "--no-mic"])
    assert args.command == "record"
    assert args.backend == "synthetic"
    assert args.no_mic is True
    assert args.max_duration == 180
    assert args.upload is None


def test_record_rejects_out_of_range_duration(capsys: pytest.CaptureFixture[str]) -> None:
    with pytest.raises(SystemExit):
        cli.run(["record", "--max-duration", "181"])
    assert "--max-duration" in capsys.readouterr().err


def test_list_prints_json(monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]) -> None:
    seen: list[httpx.URL] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request.url)
        return httpx.Response(200, json=[{"id": "a" * 32, "title": "Demo"}])

    _patch_client(monkeypatch, handler)

    assert cli.run(["list", "http://vault.test", "--query", "demo", "--json"]) == 0

    assert json.loads(capsys.readouterr().out) == [{"id": "a" * 32, "title": "Demo"}]
    assert seen[0].params["q"] == "demo"


def test_list_reports_empty_library(monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]) -> None:
    _patch_client(monkeypatch, lambda request: httpx.Response(200, json=[]))
    assert cli.run(["list", "http://vault.test"]) == 0
    assert "No recordings found." in capsys.readouterr().out


def test_delete_reports_failures(monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("b" * 32):
            return httpx.Response(500, json={"detail": "Failed to delete recording"})
        return httpx.Response(200, json={"message": "Recording deleted successfully"})

    _patch_client(monkeypatch, handler)

    code = cli.run(["delete", "http://vault.test", "a" * 32, "b" * 32])

    captured = capsys.readouterr()
    assert code == 1
    assert "Deleted 1 recording(s)." in captured.out
    assert "Failed to delete recording" in captured.err


def test_network_errors_exit_with_failure(
    monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str]
) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused")

    _patch_client(monkeypatch, handler)

    assert cli.run(["list", "http://vault.test"]) == 1
    assert "Network error" in capsys.readouterr().err


def test_upload_sends_each_valid_file(
    monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str], tmp_path
) -> None:
    first = tmp_path / "first.webm"
    first.write_bytes(b"one")
    second = tmp_path / "second.mp4"
    second.write_bytes(b"two")
    notes = tmp_path / "notes.txt"
    notes.write_text("not a video")
    bodies: list[bytes] = []

    async def handler(request: httpx.Request) -> httpx.Response:
        bodies.append(await request.aread())
        return httpx.Response(
            200,
            json={"message": "Recording uploaded successfully", "id": "a" * 32, "url": "/recordings/x"},
        )

    _patch_client(monkeypatch, handler)

    code = cli.run(["upload", "http://vault.test", str(first), str(notes), str(second), "--title", "Demo"])

    captured = capsys.readouterr()
    assert code == 1
    assert len(bodies) == 2
    assert b'filename="first.webm"' in bodies[0] and b"Content-Type: video/webm" in bodies[0]
    assert b'filename="second.mp4"' in bodies[1] and b"Content-Type: video/mp4" in bodies[1]
    assert all(b"Demo" in body for body in bodies)
    assert "Only video files are allowed" in captured.err
    assert "Uploaded 2 file(s), 1 failed." in captured.out


def test_upload_retries_each_file_at_most_three_times(
    monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str], tmp_path
) -> None:
    clip = tmp_path / "clip.webm"
    clip.write_bytes(b"clip")
    calls: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(503, json={"detail": "Service unavailable"})

    _patch_client(monkeypatch, handler)

    code = cli.run(["upload", "http://vault.test", str(clip), "--retry-delay", "0"])

    assert code == 1
    assert len(calls) == 3
    assert "upload failed after 3 attempt(s): Service unavailable" in capsys.readouterr().err


def test_upload_uses_file_stem_as_default_title(monkeypatch: pytest.MonkeyPatch, tmp_path) -> None:
    clip = tmp_path / "standup.webm"
    clip.write_bytes(b"clip")
    bodies: list[bytes] = []

    async def handler(request: httpx.Request) -> httpx.Response:
        bodies.append(await request.aread())
        return httpx.Response(200, json={"message": "ok", "id": "a" * 32, "url": "/recordings/x"})

    _patch_client(monkeypatch, handler)

    assert cli.run(["upload", "http://vault.test", str(clip)]) == 0
    assert b'name="title"\r\n\r\nstandup' in bodies[0]


def test_download_writes_output_file(
    monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str], tmp_path
) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/recordings/" + "a" * 32
        return httpx.Response(200, headers={"Content-Type": "video/webm"}, content=b"webm-bytes")

    _patch_client(monkeypatch, handler)
    target = tmp_path / "saved.webm"

    assert cli.run(["download", "http://vault.test", "a" * 32, "-o", str(target)]) == 0

    assert target.read_bytes() == b"webm-bytes"
    assert "Saved 10 bytes" in capsys.readouterr().out


def test_download_defaults_to_server_filename(monkeypatch: pytest.MonkeyPatch, tmp_path) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            headers={"Content-Disposition": 'inline; filename="recording-1.webm"'},
            content=b"data",
        )

    _patch_client(monkeypatch, handler)
    monkeypatch.chdir(tmp_path)

    assert cli.run(["download", "http://vault.test", "a" * 32]) == 0
    assert (tmp_path / "recording-1.webm").read_bytes() == b"data"


def test_download_reports_missing_recording(
    monkeypatch: pytest.MonkeyPatch, capsys: pytest.CaptureFixture[str], tmp_path
) -> None:
    _patch_client(monkeypatch, lambda request: httpx.Response(404, json={"detail": "Recording not found"}))

    assert cli.run(["download", "http://vault.test", "a" * 32, "-o", str(tmp_path / "x.webm")]) == 1
    assert "Download failed: Recording not found" in capsys.readouterr().err
