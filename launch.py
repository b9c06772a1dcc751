#!/usr/bin/env python3
"""Chunk Uploader launcher.

Runs the control API under gunicorn. There is always exactly one worker
process: the upload queue, its concurrency limit and the Durable Store
connection all live in that process.

    ./launch.py                  # serve on 127.0.0.1:5000
    ./launch.py --restore        # also resume uploads interrupted by the last exit
    ./launch.py --port 5050 --threads 16
"""

import argparse
import json
import os
import shutil
import signal
import socket
import subprocess
import sys
import time
import urllib.error
import urllib.request

PROJECT_DIR = os.path.dirname(os.path.abspath(__file__))
PID_FILE = os.path.join(PROJECT_DIR, ".gunicorn.pid")
DEFAULT_PORT = int(os.environ.get("CHUNK_UPLOADER_PORT", "5000"))

gunicorn_proc: subprocess.Popen | None = None


def log(msg: str) -> None:
    print(f"[chunk-uploader] {msg}", flush=True)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the Chunk Uploader control API.")
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--port", type=int, default=DEFAULT_PORT)
    parser.add_argument("--threads", type=int, default=8, help="request threads in the single worker")
    parser.add_argument(
        "--restore",
        action="store_true",
        help="restart uploads persisted by a previous run once the server is up",
    )
    parser.add_argument(
        "--skip-remote-check",
        action="store_true",
        help="start even if the remote upload service cannot be reached",
    )
    return parser.parse_args(argv)


def api_url(args: argparse.Namespace, path: str) -> str:
    return f"http://{args.host}:{args.port}/api/upload{path}"


def port_in_use(host: str, port: int) -> bool:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        return s.connect_ex((host, port)) == 0


def remote_service_reachable() -> bool:
    """Check the configured upload service's active-list endpoint.

    Any HTTP answer (even 401) means the service is there.
    """
    from chunk_uploader.config import get_settings

    url = f"{get_settings().server_url}/upload/chunked/active"
    try:
        urllib.request.urlopen(url, timeout=3)
    except urllib.error.HTTPError:
        return True
    except (urllib.error.URLError, OSError) as e:
        log(f"Upload service at {url} is unreachable: {e}")
        return False
    return True


def gunicorn_command(gunicorn_bin: str, args: argparse.Namespace) -> list[str]:
    return [
        gunicorn_bin,
        "--bind",
        f"{args.host}:{args.port}",
        "--workers",
        "1",
        "--threads",
        str(args.threads),
        # SSE progress streams stay open for the whole upload
        "--timeout",
        "0",
        "--graceful-timeout",
        "30",
        "--pid",
        PID_FILE,
        "--access-logfile",
        "-",
        "--error-logfile",
        "-",
        "chunk_uploader:create_app()",
    ]


def wait_for_server(args: argparse.Namespace, timeout: float = 15.0) -> bool:
    """Poll the local snapshot endpoint until the engine answers."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if gunicorn_proc is not None and gunicorn_proc.poll() is not None:
            return False
        try:
            with urllib.request.urlopen(api_url(args, "/uploads"), timeout=1) as response:
                return response.status == 200
        except (urllib.error.URLError, OSError):
            time.sleep(0.5)
    return False


def restore_uploads(args: argparse.Namespace) -> None:
    request = urllib.request.Request(api_url(args, "/restore"), method="POST")
    try:
        with urllib.request.urlopen(request, timeout=60) as response:
            restored = json.load(response).get("restored", [])
    except (urllib.error.URLError, OSError, ValueError) as e:
        log(f"Restoring uploads failed: {e}")
        return
    log(f"Restored {len(restored)} interrupted upload(s).")


def shutdown(_signum: int = 0, _frame: object = None) -> None:
    """Stop gunicorn; the worker's atexit hook shuts the engine down."""
    log("Shutting down...")
    if gunicorn_proc is not None and gunicorn_proc.poll() is None:
        gunicorn_proc.terminate()
        try:
            gunicorn_proc.wait(timeout=35)
        except subprocess.TimeoutExpired:
            gunicorn_proc.kill()
    if os.path.exists(PID_FILE):
        os.remove(PID_FILE)
    sys.exit(0)


def main(argv: list[str] | None = None) -> None:
    global gunicorn_proc
    args = parse_args(argv)

    gunicorn_bin = shutil.which("gunicorn")
    if gunicorn_bin is None:
        log("gunicorn not found. Install the project with: pip install -e .")
        sys.exit(1)

    if port_in_use(args.host, args.port):
        log(f"Port {args.port} is already in use, is Chunk Uploader already running?")
        sys.exit(1)

    if not args.skip_remote_check and not remote_service_reachable():
        log("Use --skip-remote-check to start anyway.")
        sys.exit(1)

    signal.signal(signal.SIGINT, shutdown)
    signal.signal(signal.SIGTERM, shutdown)

    log(f"Starting on {args.host}:{args.port} with {args.threads} threads...")
    gunicorn_proc = subprocess.Popen(gunicorn_command(gunicorn_bin, args), cwd=PROJECT_DIR)

    if not wait_for_server(args):
        log("Server did not start. Check output above.")
        shutdown()

    log(f"Control API is running at {api_url(args, '')}")
    if args.restore:
        restore_uploads(args)

    try:
        gunicorn_proc.wait()
    except KeyboardInterrupt:
        shutdown()


if __name__ == "__main__":
    main()
