from __future__ import annotations

import dataclasses

import pytest
from starlette.testclient import TestClient

import services.playback_service as playback_service
from app_factory import create_app


MOVIE = {
    "title": "Heat",
    "filename": "Heat.mkv",
    "path": "/movies/Heat.mkv",
    "type": "movie",
    "size": 1_500_000_000,
    "duration": 10_200,
    "year": 1995,
}


@pytest.fixture
def client(settings, clock):
    with TestClient(create_app(settings)) as c:
        yield c


def _user(client: TestClient, uid: str = "u1") -> dict:
    tok = client.app.state.medialink.identity.issue(uid)
    return {"Authorization": f"Bearer {tok}"}


def _claim_token(client: TestClient, uid: str = "u1") -> dict:
    resp = client.post("/v1/claimToken", headers=_user(client, uid))
    assert resp.status_code == 200, resp.text
    return resp.json()


def _link(client: TestClient, uid: str = "u1") -> dict:
    tok = _claim_token(client, uid)
    resp = client.post(
        "/v1/agentClaim",
        json={"claimPublicId": tok["claimPublicId"], "claimSecret": tok["claimSecret"], "agentName": "nas"},
    )
    assert resp.status_code == 200, resp.text
    return resp.json()


def _error(resp) -> tuple[str, str]:
    err = resp.json()["error"]
    return err["status"], err["message"]


def test_health_endpoints(client) -> None:
    assert client.get("/").json()["service"] == "medialink-cloud"
    assert client.get("/livez").json() == {"ok": True}

    health = client.get("/v1/health").json()
    assert health["ok"] is True
    assert health["checks"]["store"]["ok"] is True
    assert health["checks"]["hmac"]["ok"] is True
    assert health["checks"]["tmdb"]["configured"] is False

    assert client.get("/readyz").status_code == 200


def test_request_id_is_echoed_or_generated(client) -> None:
    resp = client.get("/livez", headers={"X-Request-Id": "abc-123"})
    assert resp.headers["X-Request-Id"] == "abc-123"

    generated = client.get("/livez").headers["X-Request-Id"]
    assert len(generated) == 32


def test_user_endpoints_require_id_token(client) -> None:
    resp = client.post("/v1/claimToken")
    assert resp.status_code == 401
    assert _error(resp) == ("UNAUTHENTICATED", "Missing bearer ID token.")

    resp = client.post("/v1/claimToken", headers={"Authorization": "Bearer junk"})
    assert resp.status_code == 401
    assert _error(resp) == ("UNAUTHENTICATED", "Invalid or expired ID token.")

    resp = client.post("/v1/playbackReport", json={"mediaId": "m1", "position": 1, "duration": 2})
    assert resp.status_code == 401


def test_link_ingest_and_play(client) -> None:
    linked = _link(client)
    key = linked["agentApiKey"]

    resp = client.post(
        "/v1/agentIngest",
        headers={"X-Api-Key": key},
        json={"items": [MOVIE, {**MOVIE, "path": "/movies/bad.mkv", "size": -1}]},
    )
    assert resp.status_code == 207
    results = resp.json()["results"]
    assert [r["status"] for r in results] == ["upserted", "error"]
    assert results[1]["path"] == "/movies/bad.mkv"
    media_id = results[0]["mediaId"]

    # Bearer works for agents too; all-good batches answer 200.
    resp = client.post(
        "/v1/agentIngest", headers={"Authorization": f"Bearer {key}"}, json={"items": [MOVIE]}
    )
    assert resp.status_code == 200
    assert resp.json()["results"][0]["mediaId"] == media_id

    user = _user(client)
    resp = client.post(
        "/v1/playbackReport", headers=user, json={"mediaId": media_id, "position": 600, "duration": 10_200}
    )
    assert resp.status_code == 200
    assert resp.json() == {"ok": True}

    resp = client.post(
        "/v1/playbackReport",
        headers=user,
        json={"mediaId": media_id, "position": 10_000, "duration": 10_200},
    )
    assert resp.status_code == 200


def test_claim_replay_and_expiry(client, clock) -> None:
    tok = _claim_token(client)
    body = {"claimPublicId": tok["claimPublicId"], "claimSecret": tok["claimSecret"]}

    assert client.post("/v1/agentClaim", json=body).status_code == 200
    resp = client.post("/v1/agentClaim", json=body)
    assert resp.status_code == 409
    assert _error(resp)[0] == "ALREADY_EXISTS"

    clock.advance(31)
    fresh = _claim_token(client)
    clock.advance(601)
    resp = client.post(
        "/v1/agentClaim",
        json={"claimPublicId": fresh["claimPublicId"], "claimSecret": fresh["claimSecret"]},
    )
    assert resp.status_code == 410
    assert _error(resp) == ("FAILED_PRECONDITION", "This claim token has expired.")

    resp = client.post("/v1/agentClaim", json={**body, "claimSecret": "sec-wrong"})
    assert resp.status_code == 403


def test_claim_token_cooldown(client) -> None:
    _claim_token(client)
    resp = client.post("/v1/claimToken", headers=_user(client))
    assert resp.status_code == 429
    assert _error(resp)[0] == "RESOURCE_EXHAUSTED"


def test_agent_claim_validation(client) -> None:
    resp = client.post("/v1/agentClaim", json={"claimPublicId": "pub-x"})
    assert resp.status_code == 400
    status, message = _error(resp)
    assert status == "INVALID_ARGUMENT"
    assert "claimSecret" in message


def test_ingest_check_order(client, settings) -> None:
    resp = client.post("/v1/agentIngest", json={"items": []})
    assert resp.status_code == 401
    assert _error(resp)[0] == "UNAUTHENTICATED"

    # The envelope is checked before the key is looked up.
    resp = client.post("/v1/agentIngest", headers={"X-Api-Key": "nope"}, json={"items": "x"})
    assert resp.status_code == 400
    assert _error(resp)[1].startswith("Invalid payload structure: ")

    resp = client.post("/v1/agentIngest", headers={"X-Api-Key": "nope"}, json={"items": []})
    assert resp.status_code == 403
    assert _error(resp) == ("PERMISSION_DENIED", "Invalid or unauthorized API key provided.")

    resp = client.post(
        "/v1/agentIngest",
        headers={"X-Api-Key": "nope", "Content-Type": "application/json"},
        content=b" " * (settings.ingest_max_body_bytes + 1),
    )
    assert resp.status_code == 413
    assert _error(resp)[0] == "INVALID_ARGUMENT"


def test_ingest_all_invalid_is_400(client) -> None:
    key = _link(client)["agentApiKey"]
    resp = client.post("/v1/agentIngest", headers={"X-Api-Key": key}, json={"items": [{"title": "x"}]})
    assert resp.status_code == 400
    assert resp.json()["results"][0]["status"] == "error"

    resp = client.post("/v1/agentIngest", headers={"X-Api-Key": key}, json={"items": []})
    assert resp.status_code == 200
    assert resp.json() == {"results": []}


def test_overflowing_numbers_are_rejected(client) -> None:
    key = _link(client)["agentApiKey"]
    # 1e400 parses to inf; json.dumps would write it as Infinity, so send raw text.
    item = (
        b'{"title":"Heat","filename":"Heat.mkv","path":"/movies/Heat.mkv",'
        b'"type":"movie","size":1e400,"duration":10200}'
    )
    resp = client.post(
        "/v1/agentIngest",
        headers={"X-Api-Key": key, "Content-Type": "application/json"},
        content=b'{"items":[' + item + b"]}",
    )
    assert resp.status_code == 400
    result = resp.json()["results"][0]
    assert result["status"] == "error"
    assert result["path"] == "/movies/Heat.mkv"

    media_id = client.post(
        "/v1/agentIngest", headers={"X-Api-Key": key}, json={"items": [MOVIE]}
    ).json()["results"][0]["mediaId"]
    for body in (
        b'{"mediaId":"%s","position":1e400,"duration":10200}',
        b'{"mediaId":"%s","position":600,"duration":1e400}',
    ):
        resp = client.post(
            "/v1/playbackReport",
            headers={**_user(client), "Content-Type": "application/json"},
            content=body % media_id.encode(),
        )
        assert resp.status_code == 400
        assert _error(resp)[0] == "INVALID_ARGUMENT"


def test_playback_unknown_media_is_412(client) -> None:
    resp = client.post(
        "/v1/playbackReport", headers=_user(client), json={"mediaId": "nope", "position": 5, "duration": 100}
    )
    assert resp.status_code == 412
    assert _error(resp) == ("FAILED_PRECONDITION", "Media not found.")


def test_enrich_without_tmdb_key(client) -> None:
    resp = client.post(
        "/v1/tmdbEnrich",
        headers=_user(client),
        json={"items": [{"mediaId": "m1", "type": "movie", "title": "Heat"}]},
    )
    assert resp.status_code == 412
    assert _error(resp) == ("FAILED_PRECONDITION", "TMDB_API_KEY not set")

    resp = client.post("/v1/tmdbEnrich", headers=_user(client), json={"items": []})
    assert resp.status_code == 400


def test_unexpected_error_is_generic_500(client, monkeypatch) -> None:
    async def _boom(*args, **kwargs):
        raise RuntimeError("secret internals")

    monkeypatch.setattr(playback_service, "report_playback", _boom)
    resp = client.post(
        "/v1/playbackReport",
        headers={**_user(client), "X-Request-Id": "rid-500"},
        json={"mediaId": "m1", "position": 5, "duration": 100},
    )
    assert resp.status_code == 500
    assert _error(resp) == ("INTERNAL", "An internal error occurred.")
    assert "secret internals" not in resp.text
    assert resp.headers["X-Request-Id"] == "rid-500"


def test_metrics_endpoint(client) -> None:
    _link(client)
    resp = client.get("/metrics")
    assert resp.status_code == 200
    assert resp.headers["content-type"].startswith("text/plain")
    body = resp.text
    assert "medialink_uptime_seconds" in body
    assert "# TYPE medialink_agents_linked_total counter" in body
    assert "medialink_claim_tokens_issued_total" in body


def test_claim_token_without_hmac_secret_is_500(settings, clock) -> None:
    app = create_app(dataclasses.replace(settings, hmac_secret=None))
    with TestClient(app) as c:
        resp = c.post("/v1/claimToken", headers=_user(c))
        assert resp.status_code == 500
        assert _error(resp) == ("FAILED_PRECONDITION", "Server configuration error.")

        resp = c.post("/v1/agentClaim", json={"claimPublicId": "pub-x", "claimSecret": "sec-x"})
        assert resp.status_code == 500
        assert _error(resp)[0] == "INTERNAL"


def test_private_metrics_need_a_user(settings, clock) -> None:
    app = create_app(dataclasses.replace(settings, metrics_public=False))
    with TestClient(app) as c:
        assert c.get("/metrics").status_code == 401
        assert c.get("/metrics", headers=_user(c)).status_code == 200
