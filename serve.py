"""Standalone launcher for the Biscuit QC web application."""

from __future__ import annotations

import logging
import os
from contextlib import suppress

from dotenv import load_dotenv
from werkzeug.serving import make_server

from biscuit_qc import create_app


def run_server() -> None:
    load_dotenv()
    logging.basicConfig(
        level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    app = create_app()
    host = os.environ.get("QC_HOST", "127.0.0.1")
    port = int(os.environ.get("QC_PORT", "5000"))

    server = make_server(host, port, app, threaded=True)
    app.logger.info("Serving Biscuit QC on http://%s:%s", host, port)
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        app.logger.info("Shutting down")
    finally:
        with suppress(Exception):
            server.server_close()


if __name__ == "__main__":
    run_server()
