import pytest
from fastapi import Depends, FastAPI, Request, Response
from fastapi.testclient import TestClient
from pydantic import BaseModel

from conftest import PASSWORD
from tenantauth.api.error_handling import register_exception_handlers
from tenantauth.api.schemas import Envelope, TokenResponse
from tenantauth.api.transport import (
    REQUEST_ID_HEADER,
    apply_token,
    load_context,
    register_request_id_middleware,
)
from tenantauth.requests import SignInRequest
from tenantauth.service.errors import NotFoundError
from tenantauth.service.jwt import RequestContext
from tenantauth.storage.errors import ConstraintViolation


class Payload(BaseModel):
    count: int


@pytest.fixture
def client(runtime):
    app = FastAPI()
    register_exception_handlers(app)
    register_request_id_middleware(app)

    def current_context(request: Request) -> RequestContext:
        return load_context(request, runtime.jwt, runtime.settings)

    @app.post("/sign-in")
    async def sign_in(body: SignInRequest, response: Response):
        ctx = RequestContext()
        result = await runtime.auth.sign_in(body, ctx)
        apply_token(response, ctx, runtime.settings)
        return Envelope(status="ok", data=TokenResponse.from_auth(result))

    @app.post("/sign-out")
    async def sign_out(response: Response, ctx: RequestContext = Depends(current_context)):
        runtime.auth.sign_out(ctx)
        apply_token(response, ctx, runtime.settings)
        return Envelope(status="ok")

    @app.get("/me")
    async def me(ctx: RequestContext = Depends(current_context)):
        return Envelope(status="ok", data={"email": ctx.user.email})

    @app.get("/missing")
    async def missing():
        raise NotFoundError("Thing not found", detail={"id": "x"})

    @app.get("/conflict")
    async def conflict():
        raise ConstraintViolation("duplicate", {"field": "email"})

    @app.post("/payload")
    async def payload(body: Payload):
        return Envelope(status="ok", data=body.count)

    @app.get("/boom")
    async def boom():
        raise RuntimeError("kaboom")

    return TestClient(app, raise_server_exceptions=False)


class TestErrorEnvelope:
    def test_service_error(self, client):
        resp = client.get("/missing")
        assert resp.status_code == 404
        body = resp.json()
        assert body["status"] == "error"
        assert body["error"] == {
            "code": "not_found",
            "message": "Thing not found",
            "details": {"id": "x"},
        }
        assert body["request_id"]

    def test_constraint_violation_is_conflict(self, client):
        resp = client.get("/conflict")
        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "conflict"

    def test_validation_error(self, client):
        resp = client.post("/payload", json={"count": "many"})
        assert resp.status_code == 400
        error = resp.json()["error"]
        assert error["code"] == "validation_error"
        assert error["details"][0]["loc"] == ["body", "count"]

    def test_unhandled_error_hidden(self, client):
        resp = client.get("/boom")
        assert resp.status_code == 500
        assert resp.json()["error"]["message"] == "internal server error"


class TestTransport:
    def test_missing_token_unauthorized(self, client):
        resp = client.get("/me")
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "unauthorized"

    def test_sign_in_sets_cookie_and_header_works(self, client, make_member):
        make_member()
        resp = client.post(
            "/sign-in", json={"email": "member@example.com", "password": PASSWORD}
        )
        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["token_type"] == "bearer"
        assert data["roles"] == ["user"]
        cookie = resp.headers["set-cookie"]
        assert cookie.startswith("access_token=")
        assert "HttpOnly" in cookie

        me = client.get("/me", headers={"Authorization": f"Bearer {data['access_token']}"})
        assert me.json()["data"] == {"email": "member@example.com"}

    def test_cookie_token_and_sign_out(self, client, make_member):
        make_member()
        token = client.post(
            "/sign-in", json={"email": "member@example.com", "password": PASSWORD}
        ).json()["data"]["access_token"]
        cookies = {"access_token": token}

        assert client.get("/me", cookies=cookies).status_code == 200
        out = client.post("/sign-out", cookies=cookies)
        assert out.status_code == 200
        assert 'access_token=""' in out.headers["set-cookie"]
        assert client.get("/me", cookies=cookies).status_code == 401

    def test_header_wins_over_cookie(self, client, make_member):
        make_member()
        token = client.post(
            "/sign-in", json={"email": "member@example.com", "password": PASSWORD}
        ).json()["data"]["access_token"]
        resp = client.get(
            "/me",
            headers={"Authorization": "Bearer not-a-token"},
            cookies={"access_token": token},
        )
        assert resp.status_code == 401

    def test_wrong_password(self, client, make_member):
        make_member()
        resp = client.post(
            "/sign-in", json={"email": "member@example.com", "password": "nope-nope"}
        )
        assert resp.status_code == 401

    def test_request_id_echoed_in_envelope(self, client):
        resp = client.get("/missing", headers={REQUEST_ID_HEADER: "req-42"})
        assert resp.headers[REQUEST_ID_HEADER] == "req-42"
        assert resp.json()["request_id"] == "req-42"
