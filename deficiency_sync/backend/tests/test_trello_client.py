from __future__ import annotations

import json

import httpx
import pytest

from app.clients.trello import TrelloAuth, TrelloClient
from app.domain.deficiencies.errors import CardDeleted, ExternalAPIFailure

AUTH = TrelloAuth(auth_token="tok", api_key="key")


def _client(handler) -> TrelloClient:
    return TrelloClient(base_url="https://trello.test/1", timeout=1.0, transport=httpx.MockTransport(handler))


def test_update_card_sends_exact_fields_with_credentials():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["method"] = request.method
        seen["path"] = request.url.path
        seen["params"] = dict(request.url.params)
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"id": "card-1"})

    with _client(handler) as client:
        client.update_card("card-1", AUTH, {"idList": "list-closed"})

    assert seen["method"] == "PUT"
    assert seen["path"] == "/1/cards/card-1"
    assert seen["params"] == {"key": "key", "token": "tok"}
    assert seen["body"] == {"idList": "list-closed"}


def test_publish_comment_and_attachment():
    requests = []

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        if request.url.path.endswith("/attachments"):
            return httpx.Response(200, json={"id": "att-9"})
        return httpx.Response(200, json={"id": "action-1"})

    with _client(handler) as client:
        client.publish_comment("card-1", AUTH, "hello world")
        assert client.publish_attachment("card-1", AUTH, "https://img.test/a.jpg") == "att-9"

    assert requests[0].url.path == "/1/cards/card-1/actions/comments"
    assert requests[0].url.params["text"] == "hello world"
    assert requests[1].url.params["url"] == "https://img.test/a.jpg"


def test_create_card_returns_id_and_short_url():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.params["idList"] == "list-open"
        assert request.url.params["keyFromSource"] == "all"
        body = json.loads(request.content)
        assert body["name"] == "Broken handrail"
        assert body["due"] == "2030-11-18T23:59:59.000-06:00"
        return httpx.Response(200, json={"id": "card-7", "shortUrl": "https://trello.com/c/card-7"})

    with _client(handler) as client:
        card = client.create_card(AUTH, list_id="list-open", name="Broken handrail", due="2030-11-18T23:59:59.000-06:00")

    assert card.id == "card-7"
    assert card.short_url == "https://trello.com/c/card-7"


def test_404_from_any_endpoint_is_card_deleted():
    with _client(lambda r: httpx.Response(404, text="not found")) as client:
        with pytest.raises(CardDeleted) as exc:
            client.publish_comment("card-1", AUTH, "x")
        assert exc.value.status_code == 404

        with pytest.raises(CardDeleted):
            client.update_card("card-1", AUTH, {"dueComplete": True})


@pytest.mark.parametrize("status", [400, 401, 429, 500, 503])
def test_other_errors_are_external_api_failures(status):
    with _client(lambda r: httpx.Response(status, text="nope")) as client:
        with pytest.raises(ExternalAPIFailure) as exc:
            client.update_card("card-1", AUTH, {"due": None})
    assert exc.value.status_code == status
    assert not isinstance(exc.value, CardDeleted)


def test_transport_error_and_bad_json_are_external_api_failures():
    def boom(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    with _client(boom) as client:
        with pytest.raises(ExternalAPIFailure):
            client.publish_comment("card-1", AUTH, "x")

    with _client(lambda r: httpx.Response(200, text="<html>")) as client:
        with pytest.raises(ExternalAPIFailure):
            client.publish_comment("card-1", AUTH, "x")

    with _client(lambda r: httpx.Response(200, json={})) as client:
        with pytest.raises(ExternalAPIFailure):
            client.publish_attachment("card-1", AUTH, "https://img.test/a.jpg")
