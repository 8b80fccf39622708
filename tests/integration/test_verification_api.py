"""Integration tests for e-mail verification endpoints."""

import pytest

from datasette_quote_intake.plugin import get_intake


@pytest.fixture
def request_id(make_request):
    return make_request().request_id


def current_token(datasette, request_id) -> str:
    return get_intake(datasette).kv.get(f"verify_request:{request_id}")


class TestSendVerification:
    async def test_status_before_sending(self, datasette, request_id):
        response = await datasette.client.get(f"/-/quote-intake/requests/{request_id}/verify")

        assert response.status_code == 200
        assert response.json() == {
            "request_id": request_id,
            "verified": False,
            "resend_available_in": 0,
        }

    async def test_send_then_cooldown(self, datasette, request_id):
        url = f"/-/quote-intake/requests/{request_id}/verify"

        first = await datasette.client.post(url)
        second = await datasette.client.post(url)

        assert first.status_code == 200
        assert first.json()["status"] == "logged"
        assert "token" not in first.text
        assert second.status_code == 429
        assert 0 < second.json()["wait_seconds"] <= 60

    async def test_unknown_request(self, datasette):
        response = await datasette.client.post("/-/quote-intake/requests/nope/verify")
        assert response.status_code == 404


class TestVerifyToken:
    async def test_token_verifies_once(self, datasette, request_id):
        await datasette.client.post(f"/-/quote-intake/requests/{request_id}/verify")
        token = current_token(datasette, request_id)

        first = await datasette.client.get(f"/-/quote-intake/verify?token={token}")
        second = await datasette.client.post("/-/quote-intake/verify", json={"token": token})

        assert first.status_code == 200
        assert first.json() == {"verified": True, "request_id": request_id}
        assert second.status_code == 409
        assert second.json()["code"] == "already_consumed"

        status = await datasette.client.get(f"/-/quote-intake/requests/{request_id}/verify")
        assert status.json()["verified"] is True

    async def test_unknown_token(self, datasette):
        response = await datasette.client.get("/-/quote-intake/verify?token=bogus")

        assert response.status_code == 404
        assert response.json()["code"] == "not_found"

    async def test_missing_token(self, datasette):
        response = await datasette.client.get("/-/quote-intake/verify")
        assert response.status_code == 400

    async def test_malformed_json_body(self, datasette):
        response = await datasette.client.post(
            "/-/quote-intake/verify",
            content=b"{not json",
            headers={"content-type": "application/json"},
        )
        assert response.status_code == 400

    async def test_non_string_token(self, datasette):
        response = await datasette.client.post("/-/quote-intake/verify", json={"token": 42})
        assert response.status_code == 400
