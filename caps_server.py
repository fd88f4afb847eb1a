"""
Caps HTTP server.

Serves the control surface of the playbook execution engine: start, resume,
abort and inspect runs, stream their ledger events, and expose health and
Prometheus metrics. Run with ``python caps_server.py``.
"""

import logging
from typing import Optional

from flask import Flask

import Caps.Core.routes
from Caps.Core.logging_config import configure_logging
from Caps.Core.playbook_engine import PlaybookExecutionEngine
from config import get_config

configure_logging()
logger = logging.getLogger(__name__)


def create_app(engine: Optional[PlaybookExecutionEngine] = None) -> Flask:
    """
    Build the Flask app.

    Without ``engine`` the routes use the process-wide engine, built from
    configuration on the first request that needs it. Configuration
    problems are logged but do not stop the server.
    """
    app = Flask(__name__)

    for problem in get_config().validate(strict=False):
        logger.warning(f"Configuration problem: {problem}")

    Caps.Core.routes.exposeRoutes(app, engine=engine)
    return app


def main():
    config = get_config()
    config.validate_or_exit()
    config.log_config()

    app = create_app()
    logger.info(f"Caps listening on 0.0.0.0:{config.app.port}")
    # each followed /events stream holds one request thread until its run ends
    app.run(host="0.0.0.0", port=config.app.port, debug=config.app.debug, threaded=True)


if __name__ == "__main__":
    main()
