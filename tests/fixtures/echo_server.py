import argparse
import json
import os
import sys
import time
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path

STARTS_FILE = "starts.log"


class EchoHandler(BaseHTTPRequestHandler):
    protocol_version = "HTTP/1.1"

    def _read_body(self) -> bytes:
        length = int(self.headers.get("Content-Length") or 0)
        return self.rfile.read(length) if length else b""

    def _respond(self) -> None:
        body = self._read_body()
        if body:
            payload = body
            content_type = self.headers.get("Content-Type") or "application/octet-stream"
        else:
            payload = json.dumps(
                {
                    "method": self.command,
                    "path": self.path,
                    "pid": os.getpid(),
                    "headers": {key.lower(): value for key, value in self.headers.items()},
                }
            ).encode("utf-8")
            content_type = "application/json"
        self.send_response(200)
        self.send_header("Content-Type", content_type)
        self.send_header("Content-Length", str(len(payload)))
        self.send_header("X-Upstream-Pid", str(os.getpid()))
        self.send_header("Set-Cookie", "a=1")
        self.send_header("Set-Cookie", "b=2")
        self.send_header("Keep-Alive", "timeout=5")
        for name in (self.headers.get("X-Echo-Headers") or "").split(","):
            name = name.strip()
            if name and self.headers.get(name) is not None:
                # Values were decoded as latin-1; send_header re-encodes them byte for byte.
                self.send_header(name, self.headers[name])
        self.end_headers()
        if self.command != "HEAD":
            self.wfile.write(payload)

    do_GET = _respond
    do_HEAD = _respond
    do_POST = _respond
    do_PUT = _respond
    do_DELETE = _respond

    def log_message(self, format: str, *args) -> None:
        sys.stdout.write("request " + (format % args) + "\n")
        sys.stdout.flush()


def _record_start() -> None:
    with Path(STARTS_FILE).open("a", encoding="utf-8") as f:
        f.write(f"{os.getpid()} {os.environ.get('PORT')}\n")


def main() -> None:
    parser = argparse.ArgumentParser()
    parser.add_argument("--scenario", default="basic")
    parser.add_argument("--delay", type=float, default=0.0)
    args = parser.parse_args()
    _record_start()
    if args.scenario == "crash":
        print("fixture crashing on startup", flush=True)
        sys.exit(3)
    if args.scenario == "never":
        print("fixture never binds", flush=True)
        while True:
            time.sleep(1)
    if args.delay:
        time.sleep(args.delay)
    port = int(os.environ["PORT"])
    server = ThreadingHTTPServer(("127.0.0.1", port), EchoHandler)
    print(f"fixture listening on {port}", flush=True)
    server.serve_forever()


if __name__ == "__main__":
    main()
