import asyncio

import pytest
from fastapi import APIRouter, FastAPI, Request
from fastapi.responses import PlainTextResponse
from fastapi.testclient import TestClient
from sqlalchemy.exc import IntegrityError, OperationalError

from app import create_app
from core.config import Settings
from core.errors import AppError

TRUSTED_ORIGIN = "http://trusted.example"
PUBLIC_ORIGIN = "http://public.example"


class FakeDatabase:
    """Stands in for the database connector."""

    def __init__(self, connected: bool = False):
        self.is_connected = connected
        self.connect_calls = 0
        self.closed = False

    async def connect(self) -> bool:
        self.connect_calls += 1
        self.is_connected = True
        return True

    async def close(self) -> None:
        self.closed = True
        self.is_connected = False


def build_router() -> APIRouter:
    router = APIRouter()

    @router.api_route("/echo", methods=["GET", "POST", "PUT"])
    async def echo(request: Request):
        return {
            "body": request.state.body,
            "cookies": request.state.cookies,
            "credentials_allowed": request.state.credentials_allowed,
        }

    @router.get("/large", response_class=PlainTextResponse)
    async def large():
        return "x" * 5000

    @router.get("/conflict")
    async def conflict():
        raise AppError("Item already exists", 409)

    @router.get("/boom")
    async def boom():
        raise RuntimeError("kaboom")

    @router.get("/db-down")
    async def db_down():
        raise OperationalError("SELECT 1", {}, ConnectionRefusedError("connection refused"))

    @router.get("/db-conflict")
    async def db_conflict():
        raise IntegrityError("INSERT INTO items", {}, ValueError("duplicate key"))

    @router.get("/items")
    async def items(limit: int):
        return {"limit": limit}

    @router.get("/slow")
    async def slow(request: Request):
        request.app.state.slow_started.set()
        await asyncio.sleep(0.3)
        return {"done": True}

    return router


@pytest.fixture
def settings() -> Settings:
    return Settings(
        _env_file=None,
        cors_allowed_origins=f"{TRUSTED_ORIGIN},{PUBLIC_ORIGIN}",
        database_url="sqlite+aiosqlite:///:memory:",
        body_limit=1024,
    )


@pytest.fixture
def database() -> FakeDatabase:
    return FakeDatabase()


@pytest.fixture
def app(settings: Settings, database: FakeDatabase) -> FastAPI:
    return create_app(settings, router=build_router(), database=database)


@pytest.fixture
def client(app: FastAPI):
    with TestClient(app) as c:
        yield c
