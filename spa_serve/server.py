"""
SPA fallback server.

Existing files and directories under the serving root go through
SimpleHTTPRequestHandler untouched; every other path gets the fallback
document (re-read from disk each time) with a 200.
"""

import os
import re
import ssl
import sys
import time
from functools import partial
from http import HTTPStatus
from http.server import SimpleHTTPRequestHandler, ThreadingHTTPServer
from urllib.parse import parse_qs, urlsplit

from .config import SPAConfig

# leading zeros aside, at most 10 digits so int() and sleep() always accept it
_DELAY_RE = re.compile(r"\+?0*([0-9]{1,10})")
MAX_DELAY_MS = 2**31 - 1


def parse_delay(query: str):
    """`delay` query value in ms, or None if absent/malformed/negative/out of range."""
    values = parse_qs(query, keep_blank_values=True).get("delay")
    m = _DELAY_RE.fullmatch(values[0]) if values else None
    if m is None:
        return None
    delay = int(m.group(1))
    return delay if delay <= MAX_DELAY_MS else None


def read_spa_file(path) -> bytes:
    with open(path, "rb") as f:
        return f.read()


class SPARequestHandler(SimpleHTTPRequestHandler):
    """Static handler that substitutes the SPA entry document for unknown paths."""

    def __init__(self, *args, spa_path="index.html", **kwargs):
        self.spa_path = spa_path
        super().__init__(*args, **kwargs)

    def do_GET(self):
        self._serve(head_only=False)

    def do_HEAD(self):
        self._serve(head_only=True)

    # every other method takes the same delay → static → fallback path
    do_POST = do_PUT = do_PATCH = do_DELETE = do_OPTIONS = do_GET

    def _serve(self, *, head_only):
        delay = parse_delay(urlsplit(self.path).query)
        if delay:
            time.sleep(delay / 1000.0)

        if os.path.exists(self.translate_path(self.path)):
            return super().do_HEAD() if head_only else super().do_GET()

        try:
            body = read_spa_file(self.spa_path)
        except OSError as e:
            return self._send_plain_error(HTTPStatus.INTERNAL_SERVER_ERROR, f"Could not read SPA file: {e}")

        self.send_response(HTTPStatus.OK)
        self.send_header("Content-Type", self.guess_type(self.spa_path))
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        if not head_only:
            self.wfile.write(body)

    def _send_plain_error(self, status, message):
        # plain-text body; send_error() would wrap it in an HTML page
        body = (message + "\n").encode("utf-8", "replace")
        self.send_response(status)
        self.send_header("Content-Type", "text/plain; charset=utf-8")
        self.send_header("X-Content-Type-Options", "nosniff")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        if self.command != "HEAD":
            self.wfile.write(body)


class SPAServer(ThreadingHTTPServer):
    allow_reuse_address = True
    daemon_threads = True

    def handle_error(self, request, client_address):
        # failed handshakes (e.g. a browser rejecting the self-signed cert) get one line, not a traceback
        exc = sys.exc_info()[1]
        if isinstance(exc, (ssl.SSLError, ConnectionError)):
            print(f"⚠ {client_address[0]}: {exc}", file=sys.stderr)
            return
        super().handle_error(request, client_address)


def make_handler(spa_path, directory=None):
    return partial(SPARequestHandler, spa_path=spa_path, directory=directory or os.getcwd())


def make_ssl_context(cert_file, key_file) -> ssl.SSLContext:
    context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    context.options |= ssl.OP_NO_SSLv2 | ssl.OP_NO_SSLv3
    context.load_cert_chain(certfile=cert_file, keyfile=key_file)
    return context


def bind_server(config: SPAConfig, context=None, host="0.0.0.0", directory=None) -> SPAServer:
    """Bind once on config.listen_port; OSError propagates (no port hunting)."""
    httpd = SPAServer((host, config.listen_port), make_handler(config.spa_fallback_path, directory))
    if context is not None:
        try:
            # accepted sockets inherit this; the handshake then runs on the handler thread
            httpd.socket = context.wrap_socket(httpd.socket, server_side=True,
                                               do_handshake_on_connect=False)
        except (OSError, ssl.SSLError):
            httpd.server_close()
            raise
    return httpd
