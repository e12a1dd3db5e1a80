import threading

import pytest

from spa_serve.config import SPAConfig
from spa_serve.server import bind_server


@pytest.fixture
def site(tmp_path):
    """Serving root with one asset, a nested file and an SPA entry document."""
    root = tmp_path / "site"
    (root / "assets").mkdir(parents=True)
    (root / "app.js").write_bytes(b"console.log('app');\n")
    (root / "assets" / "logo.svg").write_bytes(b"<svg/>")
    (root / "index.html").write_bytes(b"<!doctype html><div id=root></div>")
    return root


@pytest.fixture
def serve():
    """Start an SPAServer on an ephemeral port; returns its base URL."""
    servers = []

    def _serve(root, spa_path, context=None):
        httpd = bind_server(SPAConfig(listen_port=0, spa_fallback_path=str(spa_path)),
                            context, host="127.0.0.1", directory=str(root))
        t = threading.Thread(target=httpd.serve_forever, kwargs={"poll_interval": 0.05}, daemon=True)
        t.start()
        servers.append(httpd)
        scheme = "https" if context is not None else "http"
        return f"{scheme}://127.0.0.1:{httpd.server_address[1]}"

    yield _serve
    for httpd in servers:
        httpd.shutdown()
        httpd.server_close()
