from __future__ import annotations

from typing import Any

import httpx

from cart_recovery.config import settings

_MAX_CHECKOUTS_PAGE_SIZE = 250


class ShopifyApiError(RuntimeError):
    def __init__(self, *, message: str, status_code: int = 502, upstream_status: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.upstream_status = upstream_status


class ShopifyApiClient:
    def __init__(self, *, timeout: float | None = None, api_version: str | None = None) -> None:
        self._timeout = timeout if timeout is not None else settings.SHOPIFY_REQUEST_TIMEOUT_SECONDS
        self._api_version = api_version or settings.SHOPIFY_ADMIN_API_VERSION

    def _admin_url(self, shop_domain: str, path: str) -> str:
        return f"https://{shop_domain}/admin/api/{self._api_version}/{path.lstrip('/')}"

    async def fetch_abandoned_checkouts(
        self,
        *,
        shop_domain: str,
        access_token: str,
        limit: int = 50,
    ) -> list[dict[str, Any]]:
        if limit < 1:
            raise ShopifyApiError(message="limit must be >= 1", status_code=400)
        page_size = min(limit, _MAX_CHECKOUTS_PAGE_SIZE)
        response = await self._request_json(
            method="GET",
            url=self._admin_url(shop_domain, "checkouts.json"),
            access_token=access_token,
            params={"limit": page_size, "status": "open"},
        )
        checkouts = response.get("checkouts")
        if not isinstance(checkouts, list):
            raise ShopifyApiError(message="Abandoned checkouts response is missing checkouts")
        return checkouts[:limit]

    async def get_customer(
        self,
        *,
        shop_domain: str,
        access_token: str,
        customer_id: str,
    ) -> dict[str, Any]:
        cleaned_id = str(customer_id).strip()
        if not cleaned_id.isdigit():
            raise ShopifyApiError(message=f"Invalid customer id: {customer_id!r}", status_code=400)
        response = await self._request_json(
            method="GET",
            url=self._admin_url(shop_domain, f"customers/{cleaned_id}.json"),
            access_token=access_token,
        )
        customer = response.get("customer")
        if not isinstance(customer, dict):
            raise ShopifyApiError(message=f"Customer not found: {cleaned_id}", status_code=404)
        return customer

    async def list_webhooks(self, *, shop_domain: str, access_token: str) -> list[dict[str, Any]]:
        response = await self._request_json(
            method="GET",
            url=self._admin_url(shop_domain, "webhooks.json"),
            access_token=access_token,
            params={"limit": 250},
        )
        webhooks = response.get("webhooks")
        if not isinstance(webhooks, list):
            raise ShopifyApiError(message="Webhook list response is missing webhooks")
        return [webhook for webhook in webhooks if isinstance(webhook, dict)]

    async def register_webhook(
        self,
        *,
        shop_domain: str,
        access_token: str,
        topic: str,
        callback_url: str,
    ) -> str:
        payload = {"webhook": {"topic": topic, "address": callback_url, "format": "json"}}
        try:
            response = await self._request_json(
                method="POST",
                url=self._admin_url(shop_domain, "webhooks.json"),
                access_token=access_token,
                payload=payload,
            )
        except ShopifyApiError as exc:
            if exc.upstream_status == 422 and "already been taken" in str(exc).lower():
                existing_id = await self._find_existing_webhook_id(
                    shop_domain=shop_domain,
                    access_token=access_token,
                    topic=topic,
                    callback_url=callback_url,
                )
                if existing_id:
                    return existing_id
            raise ShopifyApiError(
                message=f"Webhook registration failed for {topic}: {exc}",
                upstream_status=exc.upstream_status,
            ) from exc

        webhook = response.get("webhook") or {}
        webhook_id = webhook.get("id")
        if webhook_id in (None, ""):
            raise ShopifyApiError(message=f"Webhook registration for {topic} returned no id")
        return str(webhook_id)

    async def _find_existing_webhook_id(
        self,
        *,
        shop_domain: str,
        access_token: str,
        topic: str,
        callback_url: str,
    ) -> str | None:
        target_url = callback_url.rstrip("/")
        for webhook in await self.list_webhooks(shop_domain=shop_domain, access_token=access_token):
            if webhook.get("topic") != topic:
                continue
            address = webhook.get("address")
            if isinstance(address, str) and address.rstrip("/") == target_url:
                webhook_id = webhook.get("id")
                if webhook_id not in (None, ""):
                    return str(webhook_id)
        return None

    async def _request_json(
        self,
        *,
        method: str,
        url: str,
        access_token: str,
        params: dict[str, Any] | None = None,
        payload: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        headers = {
            "Content-Type": "application/json",
            "X-Shopify-Access-Token": access_token,
        }
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.request(method, url, params=params, json=payload, headers=headers)
        except httpx.RequestError as exc:
            raise ShopifyApiError(message=f"Network error while calling Shopify: {exc}") from exc

        if response.status_code >= 400:
            raise ShopifyApiError(
                message=f"Shopify API call failed ({response.status_code}): {response.text}",
                status_code=502,
                upstream_status=response.status_code,
            )

        try:
            body = response.json()
        except ValueError as exc:
            raise ShopifyApiError(message="Shopify API returned invalid JSON") from exc

        if not isinstance(body, dict):
            raise ShopifyApiError(message="Shopify API response must be a JSON object")
        return body
