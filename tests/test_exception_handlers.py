"""Tests for global exception handlers.

Domain errors must map to stable status codes and a consistent JSON shape,
and unexpected errors must never leak internals.
"""

import asyncio
import json
from unittest.mock import AsyncMock

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from ratekeeper.core.errors import AppError, RateLimitAppError
from ratekeeper.core.exception_handlers import general_exception_handler, setup_exception_handlers


@pytest.fixture
def app_with_handlers() -> FastAPI:
    app = FastAPI()
    setup_exception_handlers(app)
    return app


@pytest.fixture
def client(app_with_handlers: FastAPI) -> TestClient:
    return TestClient(app_with_handlers, raise_server_exceptions=False)


class TestAppErrorHandler:
    def test_rate_limit_error_returns_429(self, client: TestClient, app_with_handlers: FastAPI):
        @app_with_handlers.get("/limited")
        async def limited():
            raise RateLimitAppError()

        response = client.get("/limited")

        assert response.status_code == 429
        error = response.json()["error"]
        assert error["code"] == "rate_limit_exceeded"
        assert error["message"] == "Rate limit exceeded. Try again later."
        assert "request_id" in error
        assert "details" not in error

    def test_rate_limit_error_renders_details(self, client: TestClient, app_with_handlers: FastAPI):
        @app_with_handlers.get("/limited-ip")
        async def limited_ip():
            raise RateLimitAppError(details={"key_type": "ip"})

        response = client.get("/limited-ip")

        assert response.status_code == 429
        assert response.json()["error"]["details"] == {"key_type": "ip"}

    def test_unmapped_app_error_returns_500_with_its_code(self, client: TestClient, app_with_handlers: FastAPI):
        @app_with_handlers.get("/unmapped")
        async def unmapped():
            raise AppError(code="limiter_misconfigured", message="No limiter backend")

        response = client.get("/unmapped")

        assert response.status_code == 500
        assert response.json()["error"]["code"] == "limiter_misconfigured"

    def test_str_of_error_is_its_message(self):
        error = RateLimitAppError(details={"key_type": "ip"})

        assert str(error) == "Rate limit exceeded. Try again later."
        assert isinstance(error, AppError)


class TestGeneralExceptionHandler:
    def test_unexpected_exception_returns_generic_500(self, client: TestClient, app_with_handlers: FastAPI):
        @app_with_handlers.get("/boom")
        async def boom():
            raise RuntimeError("redis password is hunter2")

        response = client.get("/boom")

        assert response.status_code == 500
        assert response.json()["error"]["code"] == "internal_server_error"
        assert "hunter2" not in response.text

    def test_handler_never_leaks_stack_trace(self):
        request = AsyncMock()
        request.url.path = "/test"
        request.method = "GET"

        response = asyncio.run(general_exception_handler(request, ValueError("details")))

        body = bytes(response.body).decode()
        data = json.loads(body)
        assert response.status_code == 500
        assert "Traceback" not in body
        assert "ValueError" not in body
        assert "request_id" in data["error"]

    def test_setup_registers_handlers(self, app_with_handlers: FastAPI):
        assert AppError in app_with_handlers.exception_handlers
        assert Exception in app_with_handlers.exception_handlers
