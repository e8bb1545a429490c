"""
Upstream customer-portal client.

Two calls: the sales-extract endpoint that returns vouchers for a date chunk,
and the dashboard-cards endpoint that returns saved card configurations.
Every failure surfaces as a TransportError; nothing is retried here.
"""
from __future__ import annotations

from typing import Any, Optional

import requests
from loguru import logger

from app.core.config import settings
from app.core.errors import TransportError

SETTINGS_CARD_TITLE = "__DASHBOARD_SETTINGS__"


class UpstreamClient:
    """Thin requests wrapper around the customer-portal API."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = (base_url or settings.UPSTREAM_BASE_URL).rstrip("/")
        self.timeout = timeout or settings.REQUEST_TIMEOUT
        self.session = session or requests.Session()

    def _url(self, path: str) -> str:
        return f"{self.base_url}/{path.lstrip('/')}"

    @staticmethod
    def _headers(token: Optional[str]) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    def _request(self, method: str, path: str, token: Optional[str], **kwargs) -> dict:
        url = self._url(path)
        try:
            response = self.session.request(
                method, url, headers=self._headers(token), timeout=self.timeout, **kwargs
            )
        except requests.RequestException as exc:
            logger.warning(f"{method} {url} failed: {exc}")
            raise TransportError(f"Request to {path} failed: {exc}") from exc

        if not response.ok:
            logger.warning(f"{method} {url} -> {response.status_code}")
            raise TransportError(
                f"API error: {response.status_code} {response.reason or ''}".strip()
            )
        try:
            body = response.json()
        except ValueError as exc:
            raise TransportError(f"Response from {path} is not valid JSON") from exc
        if not isinstance(body, dict):
            raise TransportError(f"Unexpected response shape from {path}")
        return body

    def fetch_ledger_chunk(
        self,
        *,
        tallyloc_id: Any,
        company: str,
        guid: str,
        fromdate: str,
        todate: str,
        lastaltid: int = 0,
        vouchertype: Optional[str] = None,
        token: Optional[str] = None,
    ) -> dict:
        """POST one date chunk to the sales extract. Returns the JSON body."""
        payload = {
            "tallyloc_id": tallyloc_id,
            "company": company,
            "guid": guid,
            "fromdate": fromdate,
            "todate": todate,
            "lastaltid": lastaltid,
            "serverslice": "No",
            "vouchertype": vouchertype or settings.VOUCHER_TYPE_FILTER,
        }
        logger.debug(f"Fetching {fromdate} → {todate} (lastaltid={lastaltid})")
        return self._request("POST", settings.SALES_EXTRACT_PATH, token, json=payload)

    def fetch_card_configs(
        self,
        *,
        tallyloc_id: Any,
        co_guid: str,
        token: Optional[str] = None,
        dashboard_type: str = "sales",
    ) -> list[dict]:
        """GET the saved card configurations of a company."""
        params = {
            "dashboardType": dashboard_type,
            "tallylocId": tallyloc_id,
            "coGuid": co_guid,
            "isActive": "true",
        }
        body = self._request("GET", settings.CARDS_PATH, token, params=params)
        if body.get("status") != "success" or not isinstance(body.get("data"), list):
            raise TransportError("Card configuration response was not successful")
        return body["data"]


def split_card_configs(records: list[dict]) -> tuple[list[dict], dict]:
    """Separate the dashboard-settings record from the active cards."""
    settings_config: dict = {}
    cards: list[dict] = []
    for record in records or []:
        if not isinstance(record, dict):
            continue
        if record.get("title") == SETTINGS_CARD_TITLE:
            settings_config = record.get("cardConfig") or {}
        elif record.get("isActive"):
            cards.append(record)
    return cards, settings_config
