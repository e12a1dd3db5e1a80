"""
Command-line entry point: issue a fresh certificate, then serve the SPA over HTTPS.

Run:
  spa-serve [-listen PORT] [-spa PATH]
  python -m spa_serve ...
"""

import argparse
import atexit
import itertools
import os
import signal
import socket
import ssl
import sys
import threading
import time

from .certs import IssuanceError, issue_self_signed_certificate
from .config import (CERT_FILE, CONFIG_FILE, DEFAULT_LISTEN_PORT, DEFAULT_SPA_PATH, KEY_FILE,
                     ConfigError, issuer_config_from, load_config, spa_config_from)
from .server import bind_server, make_ssl_context

# Globals for cleanup
_active_httpd = None


# Spinner for nicer UX
class Spinner:
    def __init__(self, msg):
        self.msg = msg
        self.spin = itertools.cycle("|/-\\")
        self._stop = threading.Event()
        self._thr = threading.Thread(target=self._run, daemon=True)
    def _run(self):
        while not self._stop.is_set():
            sys.stdout.write(f"\r{self.msg} {next(self.spin)}")
            sys.stdout.flush()
            time.sleep(0.1)
        sys.stdout.write("\r" + " "*(len(self.msg)+2) + "\r"); sys.stdout.flush()
    def __enter__(self): self._thr.start()
    def __exit__(self, *a): self._stop.set(); self._thr.join()


# ─── CLI ─────────────────────────────────────────────────────────────────────
def parse_args(argv=None):
    p = argparse.ArgumentParser(prog="spa-serve", description="HTTPS dev server for single-page apps.")
    p.add_argument("-listen", "--listen", type=int, default=None,
                   help=f"Port to listen on (default {DEFAULT_LISTEN_PORT}).")
    p.add_argument("-spa", "--spa", default=None,
                   help=f"Page to deliver for an SPA (default {DEFAULT_SPA_PATH}).")
    return p.parse_args(argv)


# ─── Net helpers ─────────────────────────────────────────────────────────────
def get_lan_ip():
    s = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        s.connect(("192.0.2.1", 80))  # No packets sent; chooses interface
        return s.getsockname()[0]
    except OSError:
        return None
    finally:
        s.close()


def print_banner(port):
    lan = get_lan_ip()
    lines = [
        f"  Local : https://localhost:{port}",
        f"  LAN   : https://{lan}:{port}" if lan else "  LAN   : <none>",
    ]
    w = max(len(l) for l in lines) + 4
    print("\n╔" + "═"*w + "╗")
    for l in lines: print("║" + l.ljust(w) + "║")
    print("╚" + "═"*w + "╝\n")


# ─── Signals / Cleanup ───────────────────────────────────────────────────────
def _shutdown_httpd(httpd, *, wait=True, timeout=3.0):
    # Run shutdown off-thread so signal handlers don't deadlock serve_forever().
    def _do_shutdown():
        httpd.shutdown()
        httpd.server_close()

    t = threading.Thread(target=_do_shutdown, daemon=True)
    t.start()
    if wait:
        t.join(timeout)


def _cleanup(*, wait_httpd=True):
    global _active_httpd
    httpd = _active_httpd
    _active_httpd = None
    if httpd is not None:
        _shutdown_httpd(httpd, wait=wait_httpd)

atexit.register(_cleanup)


def _signal_handler(signum, frame):
    _cleanup(wait_httpd=False)
    sys.exit(0)


def install_signal_handlers():
    signal.signal(signal.SIGINT, _signal_handler)
    if hasattr(signal, "SIGTERM"): signal.signal(signal.SIGTERM, _signal_handler)


# ─── Startup phases ──────────────────────────────────────────────────────────
def issue_certificates(issuer_cfg):
    """Phase 1: write a fresh cert.pem/key.pem pair or exit."""
    try:
        with Spinner("Generating self-signed certificate…"):
            cert_file, key_file = issue_self_signed_certificate(issuer_cfg, CERT_FILE, KEY_FILE)
    except IssuanceError as e:
        raise SystemExit(f"✖ {e}")
    print(f"✔ written {CERT_FILE}")
    print(f"✔ written {KEY_FILE}")
    return cert_file, key_file


def start_server(spa_cfg, cert_file, key_file):
    """Phase 2: TLS context + bind. Any failure here is fatal."""
    try:
        context = make_ssl_context(cert_file, key_file)
        return bind_server(spa_cfg, context)
    except (OSError, ssl.SSLError) as e:
        raise SystemExit(f"Error starting webserver: {e}")


# ─── Main ────────────────────────────────────────────────────────────────────
def main(argv=None):
    install_signal_handlers()
    args = parse_args(argv)

    try:
        cfg = load_config(CONFIG_FILE)
        spa_cfg = spa_config_from(cfg, args)
        issuer_cfg = issuer_config_from(cfg)
    except ConfigError as e:
        raise SystemExit(str(e))

    cert_file, key_file = issue_certificates(issuer_cfg)
    httpd = start_server(spa_cfg, cert_file, key_file)

    global _active_httpd
    _active_httpd = httpd

    if not os.path.exists(spa_cfg.spa_fallback_path):
        print(f"⚠ SPA file {spa_cfg.spa_fallback_path} not found; unknown routes will return 500")
    print(f"→ Starting webserver on https://localhost:{spa_cfg.listen_port} (serving {os.getcwd()})")
    print_banner(spa_cfg.listen_port)

    try:
        httpd.serve_forever(poll_interval=0.5)
    except KeyboardInterrupt:
        pass
    finally:
        _cleanup()
