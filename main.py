"""Application entrypoint.

Running ``python main.py`` starts the web server, the Telegram bot and the
background expiration worker. Without a valid store configuration only the
web server runs, serving the setup page.
"""
from __future__ import annotations

import logging
import os
import signal
import sys
import threading

from vpn_store.config import load_settings
from vpn_store.handlers import BotApp
from vpn_store.scheduler import ExpirationWorker
from vpn_store.webapp import create_app

logging.basicConfig(
    level=os.environ.get("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
LOGGER = logging.getLogger(__name__)


def main() -> int:
    settings = load_settings()

    if settings.setup_mode:
        LOGGER.warning("no valid configuration at %s, starting in setup mode", settings.vars_path)
        LOGGER.info("open http://localhost:%s/setup to configure the store", settings.port)
        create_app(settings).run(host="0.0.0.0", port=settings.port)
        return 0

    app = BotApp(settings)

    web = create_app(settings, app)
    server = threading.Thread(
        target=web.run,
        kwargs={"host": "0.0.0.0", "port": settings.port, "use_reloader": False},
        daemon=True,
        name="webhook-server",
    )
    server.start()
    LOGGER.info("web server listening on port %s", settings.port)

    worker = ExpirationWorker(db=app.db, telegram_bot=app.bot, admin_ids=settings.admin_ids)
    worker.start()

    def handle_stop(signum: int, frame) -> None:  # pragma: no cover - signal handler
        LOGGER.info("received stop signal %s", signum)
        worker.stop()
        raise KeyboardInterrupt

    signal.signal(signal.SIGINT, handle_stop)
    signal.signal(signal.SIGTERM, handle_stop)

    try:
        app.run()
    except KeyboardInterrupt:  # pragma: no cover - interactive use
        LOGGER.info("exiting")
    finally:
        worker.stop()
        worker.join(timeout=5)
        app.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
