"""Command line entry points for ScreenVault."""
from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal
import sys
from pathlib import Path
from typing import Sequence

from .capture import (
    LIMIT_WARNING_SECONDS,
    MAX_RECORDING_SECONDS,
    CaptureOptions,
    CaptureSession,
    CaptureState,
)
from .encoder import PyAVEncoder
from .sources import CAPTURE_BACKENDS, CaptureError, create_media_devices
from .upload import (
    RetryPolicy,
    UploadClient,
    UploadError,
    UploadJob,
    UploadMetadata,
    UploadStatus,
    ValidationFailureError,
    upload_with_retry,
)

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    """Return the argument parser for the ``screen-vault`` command."""

    parser = argparse.ArgumentParser(
        prog="screen-vault",
        description="Record the screen and manage stored recordings",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging.")
    commands = parser.add_subparsers(dest="command", required=True)

    serve = commands.add_parser("serve", help="Run the recordings server.")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8000)
    serve.add_argument("--config", type=Path, default=None, help="JSON configuration file.")

    record = commands.add_parser("record", help="Record the screen until Ctrl+C or the time limit.")
    record.add_argument(
        "--backend",
        choices=sorted(CAPTURE_BACKENDS),
        default=None,
        help="Capture backend (defaults to SCREEN_VAULT_CAPTURE or desktop).",
    )
    record.add_argument("--no-mic", action="store_true", help="Do not record the microphone.")
    record.add_argument(
        "--max-duration",
        type=int,
        default=MAX_RECORDING_SECONDS,
        help=f"Stop automatically after this many seconds (at most {MAX_RECORDING_SECONDS}).",
    )
    record.add_argument("--fps", type=int, default=15)
    record.add_argument("--output", type=Path, default=None, help="Write the recording here.")
    record.add_argument("--upload", metavar="URL", default=None, help="Server to upload to.")
    record.add_argument("--title", default=None)

    listing = commands.add_parser("list", help="List recordings on a server.")
    listing.add_argument("url")
    listing.add_argument("--query", default=None)
    listing.add_argument("--sort", default="createdAt", choices=["createdAt", "title", "size", "duration"])
    listing.add_argument("--order", default="desc", choices=["asc", "desc"])
    listing.add_argument("--json", action="store_true", help="Emit results as JSON.")

    delete = commands.add_parser("delete", help="Delete recordings from a server.")
    delete.add_argument("url")
    delete.add_argument("ids", nargs="+")

    upload = commands.add_parser("upload", help="Upload video files to a server.")
    upload.add_argument("url")
    upload.add_argument("files", nargs="+", type=Path)
    upload.add_argument("--title", default=None, help="Title for every file (defaults to the file name).")
    upload.add_argument(
        "--retry-delay",
        type=float,
        default=1.0,
        help="Seconds to wait before the first retry; doubles after each failure.",
    )

    download = commands.add_parser("download", help="Download a recording from a server.")
    download.add_argument("url")
    download.add_argument("id")
    download.add_argument(
        "-o",
        "--output",
        type=Path,
        default=None,
        help="File or directory to write to (defaults to the server's file name).",
    )
    return parser


# ------------------------------- commands -----------------------------------
def _serve(args: argparse.Namespace) -> int:  # pragma: no cover - runs a server
    import uvicorn

    from .app import create_app
    from .config import load_config

    application = create_app(load_config(args.config))
    uvicorn.run(application, host=args.host, port=args.port)
    return 0


def _print_progress(value: int) -> None:
    print(f"\rUploading... {value:3d}%", end="", flush=True)


async def _send_job(client: UploadClient, job: UploadJob, policy: RetryPolicy, label: str) -> bool:
    await upload_with_retry(client, job, policy, progress=_print_progress)
    print()
    if job.status is UploadStatus.SUCCESS and job.result is not None:
        print(f"{label}: uploaded as {job.result.id} ({job.result.url})")
        return True
    print(f"{label}: upload failed after {job.attempts} attempt(s): {job.error}", file=sys.stderr)
    return False


async def _upload(url: str, payload: bytes, content_type: str, title: str | None, duration: int) -> int:
    job = UploadJob(
        payload=payload,
        metadata=UploadMetadata(title=title, duration=duration),
        content_type=content_type,
    )
    async with UploadClient(url) as client:
        sent = await _send_job(client, job, RetryPolicy(backoff_seconds=1.0), "Recording")
    return 0 if sent else 1


async def _upload_files(args: argparse.Namespace) -> int:
    policy = RetryPolicy(max_attempts=3, backoff_seconds=max(0.0, args.retry_delay))
    uploaded = 0
    failed = 0
    async with UploadClient(args.url) as client:
        for path in args.files:
            try:
                job = UploadJob.from_file(path, title=args.title or path.stem)
            except (ValidationFailureError, OSError) as exc:
                print(f"Skipping {path}: {exc}", file=sys.stderr)
                failed += 1
                continue
            if await _send_job(client, job, policy, path.name):
                uploaded += 1
            else:
                failed += 1
    print(f"Uploaded {uploaded} file(s), {failed} failed.")
    return 1 if failed else 0


async def _download(args: argparse.Namespace) -> int:
    dest = args.output if args.output is not None else Path.cwd()
    async with UploadClient(args.url) as client:
        try:
            result = await client.download(args.id, dest)
        except UploadError as exc:
            print(f"Download failed: {exc}", file=sys.stderr)
            return 1
    print(f"Saved {result.size} bytes to {result.path}")
    return 0


async def _record(args: argparse.Namespace) -> int:
    stop_requested = asyncio.Event()
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, stop_requested.set)
    except NotImplementedError:  # pragma: no cover - Windows event loops
        pass

    def _on_state(state: CaptureState) -> None:
        if state in {CaptureState.STOPPING, CaptureState.STOPPED, CaptureState.FAILED}:
            stop_requested.set()

    max_duration = args.max_duration
    options = CaptureOptions(
        microphone_enabled=not args.no_mic,
        max_duration_seconds=max_duration,
        warning_threshold_seconds=min(LIMIT_WARNING_SECONDS, max(0, max_duration - 30)),
    )
    try:
        devices = create_media_devices(args.backend)
    except CaptureError as exc:
        print(f"Capture unavailable: {exc}", file=sys.stderr)
        return 1
    session = CaptureSession(
        devices,
        lambda profile: PyAVEncoder(profile, fps=args.fps),
        options,
        on_state_change=_on_state,
        on_warning=lambda message: print(message, file=sys.stderr),
        on_limit_approaching=lambda elapsed: print(
            f"\n{max_duration - elapsed} seconds of recording left.", file=sys.stderr
        ),
        on_tick=lambda elapsed: print(f"\rRecording {elapsed // 60:d}:{elapsed % 60:02d}", end="", flush=True),
    )
    async with session:
        try:
            await session.start()
        except Exception:
            print(session.error_message or "Failed to start recording.", file=sys.stderr)
            return 1
        print("Recording... press Ctrl+C to stop.")
        await stop_requested.wait()
        recording = await session.stop()
    print()
    if recording is None:
        print(session.error_message or "Recording failed. Please try again.", file=sys.stderr)
        return 1
    print(f"Captured {recording.duration_seconds}s, {recording.size} bytes ({recording.content_type})")
    if args.output is not None:
        recording.write_to(args.output)
        print(f"Saved to {args.output}")
    if args.upload:
        return await _upload(
            args.upload,
            recording.payload,
            recording.content_type,
            args.title,
            recording.duration_seconds,
        )
    return 0


async def _list(args: argparse.Namespace) -> int:
    async with UploadClient(args.url) as client:
        recordings = await client.list_recordings(args.query, sort=args.sort, order=args.order)
    if args.json:
        print(json.dumps(recordings, indent=2))
        return 0
    if not recordings:
        print("No recordings found.")
        return 0
    for item in recordings:
        print(
            f"{item['id']}  {item['duration']:>4}s  {item['size']:>10}  "
            f"{item['createdAt']}  {item['title']}"
        )
    return 0


async def _delete(args: argparse.Namespace) -> int:
    async with UploadClient(args.url) as client:
        result = await client.delete_many(args.ids)
    print(f"Deleted {result.succeeded_count} recording(s).")
    for recording_id, message in result.failed.items():
        print(f"Failed to delete {recording_id}: {message}", file=sys.stderr)
    return 1 if result.failed else 0


def run(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.command == "record" and not (1 <= args.max_duration <= MAX_RECORDING_SECONDS):
        parser.error(f"--max-duration must be between 1 and {MAX_RECORDING_SECONDS}")
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if args.command == "serve":
        return _serve(args)
    handlers = {
        "record": _record,
        "list": _list,
        "delete": _delete,
        "upload": _upload_files,
        "download": _download,
    }
    try:
        return asyncio.run(handlers[args.command](args))
    except (OSError, RuntimeError) as exc:
        logger.debug("Command %s failed", args.command, exc_info=True)
        print(f"Error: {exc}", file=sys.stderr)
        return 1


def main(argv: Sequence[str] | None = None) -> int:
    """Entry point used by the ``screen-vault`` console script."""

    return run(argv)


__all__ = ["build_parser", "main", "run"]


if __name__ == "__main__":  # pragma: no cover - module behaviour
    sys.exit(main())
