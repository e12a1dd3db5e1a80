"""Tests for the SPA fallback server."""
import socket
import ssl
import threading
import time
import urllib.error
import urllib.request

import pytest

from spa_serve.certs import issue_self_signed_certificate
from spa_serve.config import ECDSAKey, IssuerConfig
from spa_serve.server import make_ssl_context, parse_delay


def fetch(url, method="GET", context=None):
    req = urllib.request.Request(url, method=method)
    try:
        with urllib.request.urlopen(req, timeout=10, context=context) as resp:
            return resp.status, resp.headers, resp.read()
    except urllib.error.HTTPError as e:
        return e.code, e.headers, e.read()


def test_existing_file_served_verbatim(site, serve):
    base = serve(site, site / "index.html")
    status, headers, body = fetch(base + "/app.js")
    assert status == 200
    assert body == b"console.log('app');\n"
    assert "javascript" in headers["Content-Type"]


def test_nested_existing_file(site, serve):
    base = serve(site, site / "index.html")
    status, _, body = fetch(base + "/assets/logo.svg")
    assert status == 200
    assert body == b"<svg/>"


def test_existing_file_wins_over_fallback_config(site, serve, tmp_path):
    other = tmp_path / "other.html"
    other.write_bytes(b"other")
    base = serve(site, other)
    assert fetch(base + "/app.js")[2] == b"console.log('app');\n"


@pytest.mark.parametrize("path", ["/dashboard", "/users/42/settings", "/missing.js?x=1"])
def test_unknown_path_gets_fallback(site, serve, path):
    base = serve(site, site / "index.html")
    status, headers, body = fetch(base + path)
    assert status == 200
    assert body == b"<!doctype html><div id=root></div>"
    assert headers["Content-Type"] == "text/html"
    assert headers["Content-Length"] == str(len(body))


def test_fallback_head_has_no_body(site, serve):
    base = serve(site, site / "index.html")
    status, headers, body = fetch(base + "/dashboard", method="HEAD")
    assert status == 200
    assert body == b""
    assert headers["Content-Length"] == str(len((site / "index.html").read_bytes()))


def test_fallback_reread_on_every_request(site, serve):
    base = serve(site, site / "index.html")
    assert fetch(base + "/a")[2] == b"<!doctype html><div id=root></div>"
    (site / "index.html").write_bytes(b"<p>edited</p>")
    assert fetch(base + "/a")[2] == b"<p>edited</p>"


def test_missing_fallback_returns_500(site, serve):
    base = serve(site, site / "nope.html")
    status, headers, body = fetch(base + "/dashboard")
    assert status == 500
    assert b"Could not read SPA file" in body
    assert b"nope.html" in body
    assert headers["Content-Type"].startswith("text/plain")


def test_missing_fallback_does_not_affect_existing_files(site, serve):
    base = serve(site, site / "nope.html")
    assert fetch(base + "/app.js")[0] == 200


def test_delay_only_holds_its_own_request(site, serve):
    base = serve(site, site / "index.html")
    result = {}

    def slow():
        start = time.monotonic()
        result["status"] = fetch(base + "/dashboard?delay=250")[0]
        result["elapsed"] = time.monotonic() - start

    t = threading.Thread(target=slow)
    t.start()
    time.sleep(0.05)
    start = time.monotonic()
    status, _, _ = fetch(base + "/app.js")
    fast_elapsed = time.monotonic() - start
    t.join(5)

    assert status == 200
    assert fast_elapsed < 0.2
    assert result["status"] == 200
    assert result["elapsed"] >= 0.25


def test_malformed_delay_is_ignored(site, serve):
    base = serve(site, site / "index.html")
    start = time.monotonic()
    status, _, body = fetch(base + "/dashboard?delay=notanumber")
    assert status == 200
    assert body == b"<!doctype html><div id=root></div>"
    assert time.monotonic() - start < 0.5


@pytest.mark.parametrize("query, expected", [
    ("delay=250", 250),
    ("delay=0", 0),
    ("delay=%2B5", 5),
    ("a=1&delay=10&delay=99", 10),
    ("delay=notanumber", None),
    ("delay=-5", None),
    ("delay=1.5", None),
    ("delay=", None),
    ("delay=99999999999999999999", None),
    ("delay=" + "9" * 5000, None),
    ("delay=0000000000250", 250),
    ("", None),
])
def test_parse_delay(query, expected):
    assert parse_delay(query) == expected


def test_https_round_trip(site, serve, tmp_path):
    cert_file, key_file = issue_self_signed_certificate(
        IssuerConfig(hosts=("localhost", "127.0.0.1"), key_algorithm=ECDSAKey("P256")),
        str(tmp_path / "cert.pem"), str(tmp_path / "key.pem"))
    base = serve(site, site / "index.html", context=make_ssl_context(cert_file, key_file))

    client = ssl.create_default_context(cafile=cert_file)
    # the served certificate is its own trust anchor
    client.verify_flags &= ~ssl.VERIFY_X509_STRICT
    status, _, body = fetch(base + "/some/route", context=client)
    assert status == 200
    assert body == b"<!doctype html><div id=root></div>"


def test_oversized_delay_is_ignored(site, serve):
    base = serve(site, site / "index.html")
    start = time.monotonic()
    status, _, body = fetch(base + "/dashboard?delay=99999999999999999999")
    assert status == 200
    assert body == b"<!doctype html><div id=root></div>"
    assert time.monotonic() - start < 0.5


@pytest.mark.parametrize("method", ["POST", "PUT", "DELETE", "PATCH"])
def test_other_methods_get_fallback(site, serve, method):
    base = serve(site, site / "index.html")
    status, _, body = fetch(base + "/dashboard", method=method)
    assert status == 200
    assert body == b"<!doctype html><div id=root></div>"


def test_post_to_existing_file_serves_it(site, serve):
    base = serve(site, site / "index.html")
    status, _, body = fetch(base + "/app.js", method="POST")
    assert status == 200
    assert body == b"console.log('app');\n"


def test_idle_tls_connection_does_not_block_others(site, serve, tmp_path):
    cert_file, key_file = issue_self_signed_certificate(
        IssuerConfig(hosts=("127.0.0.1",), key_algorithm=ECDSAKey("P256")),
        str(tmp_path / "cert.pem"), str(tmp_path / "key.pem"))
    base = serve(site, site / "index.html", context=make_ssl_context(cert_file, key_file))
    port = int(base.rsplit(":", 1)[1])

    client = ssl.create_default_context(cafile=cert_file)
    client.verify_flags &= ~ssl.VERIFY_X509_STRICT
    with socket.create_connection(("127.0.0.1", port)):
        req = urllib.request.Request(base + "/route")
        with urllib.request.urlopen(req, timeout=3, context=client) as resp:
            assert resp.status == 200
            assert resp.read() == b"<!doctype html><div id=root></div>"
