from __future__ import annotations

import pytest

from passkey_rp.app import create_app
from passkey_rp.records import b64url_encode


@pytest.fixture
def client(temp_settings, service):
    app = create_app(temp_settings, service=service)
    app.config.update(TESTING=True)
    return app.test_client()


def _register(client, username: str = "alice", credential_id: bytes = b"cred-1") -> dict:
    options = client.post(
        "/register/options",
        json={"username": username, "displayName": "Alice", "requireResidentKey": False, "uid": "AQID"},
    ).get_json()["data"]
    verified = client.post(
        "/register/verify",
        json={
            "requestId": options["requestId"],
            "credential": {
                "id": b64url_encode(credential_id),
                "challenge": options["publicKeyCredentialCreationOptions"]["challenge"],
            },
        },
    )
    assert verified.status_code == 200
    return verified.get_json()["data"]


def test_health(client):
    assert client.get("/health").get_json() == {"status": "ok"}


def test_registration_and_authentication_routes(client):
    registration = _register(client)
    assert registration["credentialNickname"] == "My Security Key"
    assert registration["userIdentity"]["name"] == "alice"

    options = client.post("/authenticate/options", json={"username": "alice"}).get_json()["data"]
    response = client.post(
        "/authenticate/verify",
        json={
            "requestId": options["requestId"],
            "credential": {
                "id": b64url_encode(b"cred-1"),
                "challenge": options["publicKeyCredentialRequestOptions"]["challenge"],
                "signCount": 4,
            },
        },
    )

    body = response.get_json()
    assert response.status_code == 200
    assert body["success"] is True
    assert body["data"]["signatureCount"] == 4


def test_unknown_ceremony_is_a_client_error(client):
    response = client.post("/register/verify", json={"requestId": "nope", "credential": {"id": "AA"}})

    assert response.status_code == 400
    assert response.get_json()["error"] == "unknown_ceremony"


def test_malformed_body(client):
    response = client.post("/register/options", json={"username": "alice"})

    assert response.status_code == 400
    body = response.get_json()
    assert body["success"] is False
    assert body["error"] == "malformed_request"


def test_unknown_user(client):
    response = client.post("/authenticate/options", json={"username": "mallory"})

    assert response.status_code == 404
    assert response.get_json()["error"] == "unknown_user"


def test_duplicate_credential_conflict(client):
    _register(client, "alice")
    options = client.post(
        "/register/options",
        json={"username": "bob", "displayName": "Bob", "requireResidentKey": False, "uid": "BAUG"},
    ).get_json()["data"]
    response = client.post(
        "/register/verify",
        json={
            "requestId": options["requestId"],
            "credential": {
                "id": b64url_encode(b"cred-1"),
                "challenge": options["publicKeyCredentialCreationOptions"]["challenge"],
            },
        },
    )

    assert response.status_code == 409
    assert response.get_json()["error"] == "duplicate_credential"


def test_credential_management_routes(client):
    _register(client)
    credential_id = b64url_encode(b"cred-1")

    ids = client.post("/credentials/ids", json={"username": "alice"}).get_json()["data"]
    assert ids == [{"type": "public-key", "id": credential_id}]

    renamed = client.post(
        "/credentials/nickname",
        json={"username": "alice", "credentialId": credential_id, "nickname": "Laptop"},
    )
    assert renamed.get_json()["data"] is True

    listed = client.post("/credentials/list", json={"username": "alice"}).get_json()["data"]
    assert listed[0]["credentialNickname"] == "Laptop"

    missing = client.post(
        "/credentials/nickname",
        json={"username": "bob", "credentialId": credential_id, "nickname": "Mine"},
    )
    assert missing.status_code == 404

    removed = client.post("/credentials/remove", json={"username": "alice", "credentialId": credential_id})
    assert removed.get_json()["data"] is True
    again = client.post("/credentials/remove-all", json={"username": "alice"})
    assert again.get_json()["data"] is False


def test_dispatch_route(client):
    ok = client.post("/dispatch", json={"type": "getRegistrationsByUsername", "username": "alice"})
    assert ok.status_code == 200
    assert ok.get_json()["data"] == []

    bad = client.post("/dispatch", json={"type": "launchMissiles"})
    assert bad.status_code == 400
    assert bad.get_json()["error"] == "malformed_request"
