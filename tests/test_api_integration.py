"""HTTP-level tests for the grant, session and revocation endpoints.

The app is built around an injected runtime with a memory store, a frozen
clock and a fake GitHub client, so no network or database is touched.
"""

import asyncio
from datetime import timedelta
from urllib.parse import parse_qs, urlparse

import pytest
from fastapi.testclient import TestClient

from keygrant.app import _run_session_purge, create_app
from keygrant.clock import to_epoch_ms
from keygrant.service.runtime import Runtime


@pytest.fixture
def runtime(settings, memory_store, identity_provider, clock):
    return Runtime(settings, store=memory_store, identity=identity_provider, clock=clock)


@pytest.fixture
def client(runtime):
    return TestClient(create_app(runtime=runtime))


@pytest.fixture
def bound_keypair(client, identity_provider, keypair, clock, octocat):
    """A keypair already bound to octocat through /ghlogin."""
    identity_provider.register("code-bind", "gho_cred", octocat)
    t = int(clock.now_ms())
    response = client.get(
        "/ghlogin",
        params={
            "code": "code-bind",
            "token_id": keypair.token_id,
            "proof": keypair.sign("init", t),
            "t": str(t),
        },
    )
    assert response.status_code == 200
    return keypair


def _mksession(client, keypair, t):
    return client.post(
        "/mksession",
        json={
            "request_time": t,
            "token_id": keypair.token_id,
            "proof_of_grant_request": keypair.sign("grant_session", t),
        },
    )


@pytest.fixture
def session_id(client, bound_keypair, clock):
    response = _mksession(client, bound_keypair, int(clock.now_ms()))
    assert response.status_code == 200
    return response.json()["session_id"]


class TestGhLogin:
    def test_without_code_redirects_to_github(self, client, keypair, clock):
        t = str(int(clock.now_ms()))
        proof = keypair.sign("init", t)
        response = client.get(
            "/ghlogin",
            params={"token_id": keypair.token_id, "proof": proof, "t": t},
            follow_redirects=False,
        )

        assert response.status_code == 302
        location = urlparse(response.headers["location"])
        assert location.netloc == "github.test"
        redirect_uri = urlparse(parse_qs(location.query)["redirect_uri"][0])
        assert redirect_uri.path == "/ghlogin"
        carried = parse_qs(redirect_uri.query)
        assert carried == {"token_id": [keypair.token_id], "proof": [proof], "t": [t]}

    def test_with_code_binds_token(self, client, memory_store, bound_keypair, octocat):
        token = memory_store.get_active_token(bound_keypair.token_id)
        assert token.external_identity_id == octocat.id

    def test_success_body_carries_no_secret(self, client, identity_provider, keypair, clock, octocat):
        identity_provider.register("code-1", "gho_cred", octocat)
        t = int(clock.now_ms())
        response = client.get(
            "/ghlogin",
            params={
                "code": "code-1",
                "token_id": keypair.token_id,
                "proof": keypair.sign("init", t),
                "t": str(t),
            },
        )
        assert response.json() == {"ok": True}

    @pytest.mark.parametrize(
        "params,message",
        [
            ({"token_id": "ab", "proof": "x"}, "missing t"),
            ({"token_id": "ab", "proof": "x", "t": "12abc"}, "bad t"),
            ({"token_id": "ab", "proof": "x", "t": str(2**53)}, "bad t"),
            ({"token_id": "ab", "proof": "x", "t": "1" * 17}, "bad t"),
            ({"token_id": "ab", "proof": "x", "t": "1" * 5000}, "bad t"),
            ({"proof": "x", "t": "1"}, "missing token_id"),
            ({"token_id": "ab", "t": "1"}, "missing proof"),
        ],
    )
    def test_malformed_query_is_400(self, client, params, message):
        response = client.get("/ghlogin", params=params, follow_redirects=False)
        assert response.status_code == 400
        assert response.json() == {"type": "generic_error", "message": message}

    def test_malformed_token_id_is_400(self, client, identity_provider, keypair, clock, octocat):
        identity_provider.register("code-1", "gho_cred", octocat)
        t = int(clock.now_ms())
        response = client.get(
            "/ghlogin",
            params={"code": "code-1", "token_id": "zz", "proof": keypair.sign("init", t), "t": str(t)},
        )
        assert response.status_code == 400
        assert response.json() == {"type": "generic_error", "message": "bad token_id"}
        assert identity_provider.exchanged == []

    def test_invalid_proof_is_401(self, client, identity_provider, keypair, clock, octocat):
        identity_provider.register("code-1", "gho_cred", octocat)
        t = int(clock.now_ms())
        response = client.get(
            "/ghlogin",
            params={
                "code": "code-1",
                "token_id": keypair.token_id,
                "proof": keypair.sign("init", t + 1),
                "t": str(t),
            },
        )
        assert response.status_code == 401
        assert response.json() == {"type": "generic_error", "message": "invalid proof"}

    def test_not_allowed_is_403(self, settings, memory_store, identity_provider, clock, keypair, octocat):
        restricted = settings.model_copy(update={"gh_allow_list": "hubot, monalisa"})
        runtime = Runtime(restricted, store=memory_store, identity=identity_provider, clock=clock)
        client = TestClient(create_app(runtime=runtime))
        identity_provider.register("code-1", "gho_cred", octocat)
        t = int(clock.now_ms())
        response = client.get(
            "/ghlogin",
            params={
                "code": "code-1",
                "token_id": keypair.token_id,
                "proof": keypair.sign("init", t),
                "t": str(t),
            },
        )
        assert response.status_code == 403
        assert response.json() == {"type": "generic_error", "message": "user not allowed"}
        assert memory_store.get_token(keypair.token_id) is None

    def test_bad_code_is_502(self, client, keypair, clock):
        t = int(clock.now_ms())
        response = client.get(
            "/ghlogin",
            params={
                "code": "never-issued",
                "token_id": keypair.token_id,
                "proof": keypair.sign("init", t),
                "t": str(t),
            },
        )
        assert response.status_code == 502
        assert response.json()["type"] == "generic_error"


class TestMkSession:
    def test_grants_session_with_epoch_ms_expiry(self, client, bound_keypair, clock):
        t = int(clock.now_ms())
        response = _mksession(client, bound_keypair, t)

        assert response.status_code == 200
        body = response.json()
        assert set(body) == {"session_id", "expiry"}
        assert body["expiry"] == to_epoch_ms(clock.now() + timedelta(minutes=60))

    def test_unknown_token_is_invalid_token(self, client, keypair, clock):
        response = _mksession(client, keypair, int(clock.now_ms()))
        assert response.status_code == 401
        assert response.json() == {"type": "invalid_token"}

    def test_malformed_token_id_is_400(self, client, keypair, clock):
        t = int(clock.now_ms())
        response = client.post(
            "/mksession",
            json={
                "request_time": t,
                "token_id": "zz",
                "proof_of_grant_request": keypair.sign("grant_session", t),
            },
        )
        assert response.status_code == 400
        assert response.json() == {"type": "generic_error", "message": "bad token_id"}

    def test_stale_request_time_is_invalid_proof(self, client, bound_keypair, clock):
        response = _mksession(client, bound_keypair, int(clock.now_ms()) - 300_001)
        assert response.status_code == 401
        assert response.json()["message"] == "invalid proof"

    @pytest.mark.parametrize(
        "body",
        [
            {"token_id": "ab", "proof_of_grant_request": "x"},
            {"request_time": "1700000000000", "token_id": "ab", "proof_of_grant_request": "x"},
            {"request_time": True, "token_id": "ab", "proof_of_grant_request": "x"},
            {"request_time": 1, "token_id": 5, "proof_of_grant_request": "x"},
        ],
    )
    def test_schema_violation_is_400(self, client, body):
        response = client.post("/mksession", json=body)
        assert response.status_code == 400
        assert response.json()["type"] == "generic_error"

    def test_non_json_body_is_400(self, client):
        response = client.post(
            "/mksession", content=b"not json", headers={"Content-Type": "application/json"}
        )
        assert response.status_code == 400


class TestProtectedEndpoints:
    def test_session_info(self, client, session_id, bound_keypair):
        response = client.get("/session", headers={"x-bbcp-session-id": session_id})
        assert response.status_code == 200
        assert response.json() == {
            "session_id": session_id,
            "token_id": bound_keypair.token_id,
            "ghid": "583231",
            "ghlogin": "octocat",
            "ghdisplayname": "The Octocat",
        }

    @pytest.mark.parametrize("path", ["/revoke_token_by_id", "/revoke_token_by_ghid"])
    def test_missing_or_bad_session_is_session_error(self, client, path):
        expected = {"type": "session_error", "message": "bad_session"}
        missing = client.post(path)
        unknown = client.post(path, headers={"x-bbcp-session-id": "nope"})
        assert missing.status_code == unknown.status_code == 401
        assert missing.json() == unknown.json() == expected

    def test_revoke_by_id_kills_current_session(self, client, session_id, memory_store, bound_keypair):
        headers = {"x-bbcp-session-id": session_id}
        response = client.post("/revoke_token_by_id", headers=headers)
        assert response.status_code == 200
        assert response.json() == {"ok": True}
        assert memory_store.get_active_token(bound_keypair.token_id) is None
        assert client.get("/session", headers=headers).status_code == 401

    def test_revoke_by_ghid_revokes_all_keys_of_identity(
        self, client, session_id, memory_store, identity_provider, bound_keypair, make_keypair, clock, octocat
    ):
        second = make_keypair()
        identity_provider.register("code-second", "gho_cred2", octocat)
        t = int(clock.now_ms())
        client.get(
            "/ghlogin",
            params={
                "code": "code-second",
                "token_id": second.token_id,
                "proof": second.sign("init", t),
                "t": str(t),
            },
        )
        assert memory_store.get_active_token(second.token_id) is not None

        response = client.post("/revoke_token_by_ghid", headers={"x-bbcp-session-id": session_id})
        assert response.status_code == 200
        assert memory_store.get_active_token(bound_keypair.token_id) is None
        assert memory_store.get_active_token(second.token_id) is None

    def test_session_header_is_configurable(
        self, settings, memory_store, identity_provider, clock, bound_keypair, session_id
    ):
        custom = settings.model_copy(update={"session_header": "x-session"})
        runtime = Runtime(custom, store=memory_store, identity=identity_provider, clock=clock)
        client = TestClient(create_app(runtime=runtime))
        assert client.get("/session", headers={"X-Session": session_id}).status_code == 200
        assert client.get("/session", headers={"x-bbcp-session-id": session_id}).status_code == 401


class TestAppPlumbing:
    def test_healthz(self, client):
        response = client.get("/healthz")
        assert response.status_code == 200
        assert response.json() == {"status": "ok", "store": True}

    def test_request_id_echoed(self, client):
        response = client.get("/healthz", headers={"X-Request-ID": "req-123"})
        assert response.headers["X-Request-ID"] == "req-123"

    def test_security_headers(self, client):
        response = client.get("/healthz")
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert response.headers["Cache-Control"] == "no-store"

    def test_unknown_route_uses_error_shape(self, client):
        response = client.get("/nope")
        assert response.status_code == 404
        assert response.json()["type"] == "generic_error"

    def test_unexpected_failure_is_500(self, settings, memory_store, clock, keypair):
        class ExplodingIdentity:
            async def exchange_code_for_credential(self, code):
                raise RuntimeError("boom")

            async def resolve_identity(self, credential):
                raise RuntimeError("boom")

            def authorization_url(self, scopes, redirect_url):
                return "https://github.test/"

        runtime = Runtime(settings, store=memory_store, identity=ExplodingIdentity(), clock=clock)
        client = TestClient(create_app(runtime=runtime), raise_server_exceptions=False)
        t = int(clock.now_ms())
        response = client.get(
            "/ghlogin",
            params={
                "code": "c",
                "token_id": keypair.token_id,
                "proof": keypair.sign("init", t),
                "t": str(t),
            },
        )
        assert response.status_code == 500
        assert response.json() == {"type": "generic_error", "message": "internal server error"}

    def test_lifespan_builds_and_closes_runtime(self, settings):
        app = create_app(settings=settings)
        with TestClient(app) as client:
            assert app.state.runtime is not None
            assert client.get("/healthz").status_code == 200
        assert app.state.runtime is None


class TestSessionPurgeTask:
    async def test_purges_expired_sessions_periodically(self, memory_store, clock, octocat):
        memory_store.upsert_token("aa" * 32, octocat.id, "cred")
        memory_store.create_session("old", "aa" * 32, octocat)
        clock.advance(hours=2)

        task = asyncio.create_task(_run_session_purge(memory_store, 0.01))
        for _ in range(100):
            await asyncio.sleep(0.01)
            if not memory_store.sessions:
                break
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert memory_store.sessions == {}
