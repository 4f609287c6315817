# backend/app/clients/trello.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional, Protocol

import httpx

from ..config import settings
from ..domain.deficiencies.errors import CardDeleted, ExternalAPIFailure


@dataclass(frozen=True)
class TrelloAuth:
    auth_token: str
    api_key: str


@dataclass(frozen=True)
class TrelloCard:
    id: str
    short_url: Optional[str]
    raw: dict[str, Any]


class TicketingClient(Protocol):
    """What the sync handlers need from the ticketing system."""

    def create_card(self, auth: TrelloAuth, *, list_id: str, name: str, desc: str = "",
                    due: Optional[str] = None, member_ids: Optional[list[str]] = None) -> TrelloCard: ...

    def update_card(self, card_id: str, auth: TrelloAuth, updates: dict[str, Any]) -> dict[str, Any]: ...

    def archive_card(self, card_id: str, auth: TrelloAuth, *, archiving: bool) -> dict[str, Any]: ...

    def publish_comment(self, card_id: str, auth: TrelloAuth, text: str) -> dict[str, Any]: ...

    def publish_attachment(self, card_id: str, auth: TrelloAuth, url: str) -> str: ...


class TrelloClient:
    """
    Blocking Trello REST client.

    - bounded timeout + transport-level connect retries
    - 404 from any endpoint -> CardDeleted (terminal, caller cleans up)
    - anything else that isn't 2xx -> ExternalAPIFailure (redeliverable)
    """

    def __init__(
        self,
        *,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        retries: Optional[int] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self.base = (base_url or settings.trello_base_url).rstrip("/")
        self.timeout = float(timeout if timeout is not None else settings.trello_timeout_seconds)
        retries = int(retries if retries is not None else settings.trello_connect_retries)
        self._http = httpx.Client(
            timeout=self.timeout,
            transport=transport or httpx.HTTPTransport(retries=retries),
        )

    def close(self) -> None:
        self._http.close()

    def __enter__(self) -> "TrelloClient":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.close()

    def _request(
        self,
        method: str,
        path: str,
        auth: TrelloAuth,
        *,
        params: Optional[dict[str, Any]] = None,
        json_body: Optional[dict[str, Any]] = None,
    ) -> Any:
        url = f"{self.base}{path}"
        query: dict[str, Any] = {"key": auth.api_key, "token": auth.auth_token}
        if params:
            query.update(params)

        try:
            r = self._http.request(method, url, params=query, json=json_body)
        except httpx.HTTPError as e:
            raise ExternalAPIFailure(f"Trello request failed: {e}", endpoint=path) from e

        if r.status_code == 404:
            raise CardDeleted(f"Trello resource not found: {method} {path}", status_code=404, endpoint=path)
        if r.status_code >= 400:
            raise ExternalAPIFailure(
                f"Trello API error {r.status_code}: {r.text[:200]}",
                status_code=r.status_code,
                endpoint=path,
            )

        try:
            return r.json()
        except ValueError as e:
            raise ExternalAPIFailure(
                "Trello API response was not JSON", status_code=r.status_code, endpoint=path
            ) from e

    def create_card(
        self,
        auth: TrelloAuth,
        *,
        list_id: str,
        name: str,
        desc: str = "",
        due: Optional[str] = None,
        member_ids: Optional[list[str]] = None,
    ) -> TrelloCard:
        body: dict[str, Any] = {"name": name, "desc": desc}
        if due:
            body["due"] = due
        if member_ids:
            body["idMembers"] = member_ids

        data = self._request("POST", "/cards", auth, params={"idList": list_id, "keyFromSource": "all"}, json_body=body)
        card_id = data.get("id") if isinstance(data, dict) else None
        if not isinstance(card_id, str) or not card_id:
            raise ExternalAPIFailure("Trello create card response has no id", endpoint="/cards")
        return TrelloCard(id=card_id, short_url=data.get("shortUrl"), raw=data)

    def update_card(self, card_id: str, auth: TrelloAuth, updates: dict[str, Any]) -> dict[str, Any]:
        """
        Partial update with Trello field names: `due` (ISO-8601 or None to
        clear), `dueComplete`, `idList`.
        """
        return self._request("PUT", f"/cards/{card_id}", auth, json_body=dict(updates))

    def archive_card(self, card_id: str, auth: TrelloAuth, *, archiving: bool) -> dict[str, Any]:
        return self._request("PUT", f"/cards/{card_id}", auth, json_body={"closed": bool(archiving)})

    def publish_comment(self, card_id: str, auth: TrelloAuth, text: str) -> dict[str, Any]:
        return self._request("POST", f"/cards/{card_id}/actions/comments", auth, params={"text": text})

    def publish_attachment(self, card_id: str, auth: TrelloAuth, url: str) -> str:
        data = self._request("POST", f"/cards/{card_id}/attachments", auth, params={"url": url})
        attachment_id = data.get("id") if isinstance(data, dict) else None
        if not isinstance(attachment_id, str) or not attachment_id:
            raise ExternalAPIFailure(
                "Trello attachment response has no id", endpoint=f"/cards/{card_id}/attachments"
            )
        return attachment_id
