"""Local launcher for the OEE dashboard API."""

from __future__ import annotations

import os
from contextlib import suppress

from dotenv import load_dotenv
from werkzeug.serving import make_server

from oee_dashboard import create_app


def build_server(host: str | None = None, port: int | None = None):
    """Load ``.env``, create the app and bind a WSGI server to it."""

    load_dotenv()

    app = create_app()
    host = host or os.environ.get("HOST") or "127.0.0.1"
    port = int(port or os.environ.get("PORT") or 5000)
    app.logger.info("Serving OEE dashboard on http://%s:%s", host, port)
    return make_server(host, port, app, threaded=True)


def run_server() -> None:
    server = build_server()
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        pass
    finally:
        server.shutdown()
        with suppress(Exception):
            server.server_close()


if __name__ == "__main__":
    run_server()
