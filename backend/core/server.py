"""
HTTP server lifecycle: bind, serve, and close gracefully.
"""

import asyncio
from typing import Callable, Optional, Union

import uvicorn
from fastapi import FastAPI

from core.config import DEFAULT_PORT, Settings
from core.fatal import FatalErrorPolicy, install_unhandled_rejection_handler
from utils.logging import get_logger

logger = get_logger(__name__)


def resolve_port(value: Union[str, int, None], default: int = DEFAULT_PORT) -> int:
    """Port from the environment, falling back to ``default`` when unset or invalid."""
    if value is None or str(value).strip() == "":
        return default
    try:
        port = int(str(value).strip())
    except ValueError:
        logger.warning(f"Invalid PORT {value!r}, using {default}")
        return default
    if not 0 <= port <= 65535:
        logger.warning(f"PORT {port} out of range, using {default}")
        return default
    return port


class Server:
    """Owns the listening socket for one application.

    ``start()`` binds and returns once the socket is listening; ``stop()``
    stops accepting connections, waits for in-flight requests and runs the
    app's shutdown, and may be called more than once.
    """

    def __init__(
        self,
        app: FastAPI,
        *,
        settings: Optional[Settings] = None,
        fatal_policy: Optional[FatalErrorPolicy] = None,
        host: Optional[str] = None,
        port: Optional[int] = None,
    ):
        self.app = app
        self.settings = settings or app.state.settings
        self.host = host or self.settings.host
        self.requested_port = resolve_port(self.settings.port) if port is None else port
        self.fatal_policy = fatal_policy or FatalErrorPolicy()
        self._server: Optional[uvicorn.Server] = None
        self._serving: Optional[asyncio.Task] = None
        self._restore_exception_handler: Optional[Callable[[], None]] = None

    @property
    def started(self) -> bool:
        return self._server is not None and self._server.started

    @property
    def port(self) -> int:
        """The bound port (differs from the requested one when binding port 0)."""
        if not self.started or not self._server.servers:
            return self.requested_port
        return self._server.servers[0].sockets[0].getsockname()[1]

    async def start(self) -> None:
        if self._serving is not None:
            raise RuntimeError("Server already started")

        config = uvicorn.Config(
            self.app,
            host=self.host,
            port=self.requested_port,
            lifespan="on",
            log_config=None,
            access_log=False,
        )
        self._server = uvicorn.Server(config)
        self._serving = asyncio.create_task(self._server.serve(), name="http-server")

        while not self._server.started:
            if self._serving.done():
                # Propagates bind/startup errors
                self._serving.result()
                raise RuntimeError("Server stopped before it started listening")
            await asyncio.sleep(0.01)

        logger.info(f"App listening on port {self.port}")

        self._restore_exception_handler = install_unhandled_rejection_handler(
            asyncio.get_running_loop(), self.fatal_policy, self.stop
        )

    async def stop(self) -> None:
        if self._server is None or self._serving is None:
            return
        self._server.should_exit = True
        await self._serving
        if self._restore_exception_handler is not None:
            self._restore_exception_handler()
            self._restore_exception_handler = None
        logger.info("Server closed")

    async def wait_closed(self) -> None:
        """Wait until the server has stopped, including a fatal shutdown in progress."""
        if self._serving is not None:
            await self._serving
        if self.fatal_policy.shutdown_task is not None:
            await self.fatal_policy.shutdown_task

    async def serve_forever(self) -> None:
        await self.start()
        await self.wait_closed()
