"""
Process entry point: install crash handlers, build the app and serve it.

For ASGI servers that manage their own process, use the factory instead:
``uvicorn app:create_app --factory``.
"""

import asyncio

from app import create_app
from core.config import settings
from core.fatal import FatalErrorPolicy, install_uncaught_exception_hook
from core.server import Server
from utils.logging import setup_logging


def run() -> None:
    setup_logging(settings)

    policy = FatalErrorPolicy()
    install_uncaught_exception_hook(policy)

    application = create_app(settings)
    server = Server(application, settings=settings, fatal_policy=policy)
    asyncio.run(server.serve_forever())


if __name__ == "__main__":
    run()
