"""
Selling Partner API Client
Listing price read/patch keyed by SKU + seller id, ASIN → SKU resolution for
harvested product ads, and catalog title/bullets for relevance classification.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

import httpx

from ppc_automation.ads_client import TRANSIENT_STATUSES
from ppc_automation.config import MissingCredentialsError, get_settings

logger = logging.getLogger(__name__)

SP_API_BASE_URLS = {
    "na": "https://sellingpartnerapi-na.amazon.com",
    "eu": "https://sellingpartnerapi-eu.amazon.com",
    "fe": "https://sellingpartnerapi-fe.amazon.com",
}


class SellingPartnerError(Exception):
    """Failed Selling Partner API call."""

    def __init__(self, status: int, message: str, code: Optional[str] = None, details: Any = None):
        super().__init__(message)
        self.status = status
        self.code = code
        self.details = details


class ListingNotFoundError(SellingPartnerError):
    """The listing is not (yet) visible for the SKU — often transient right after an update."""


class SellingPartnerClient:
    def __init__(
        self,
        access_token: str,
        marketplace_id: str,
        region: str = "na",
        seller_id: str = "",
        currency: str = "USD",
        http: Optional[httpx.AsyncClient] = None,
        max_retries: int = 3,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.access_token = access_token
        self.marketplace_id = marketplace_id
        self.region = region.lower()
        self.seller_id = seller_id
        self.currency = currency
        self._http = http
        self.max_retries = max_retries
        self._sleep = sleep

    @property
    def base_url(self) -> str:
        return SP_API_BASE_URLS.get(self.region, SP_API_BASE_URLS["na"])

    @property
    def headers(self) -> dict[str, str]:
        return {
            "x-amz-access-token": self.access_token,
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    async def _send(self, method: str, path: str, params: dict = None, body: Any = None) -> httpx.Response:
        url = f"{self.base_url}{path}"
        kwargs = {"headers": self.headers, "params": params or {}}
        if body is not None:
            kwargs["json"] = body
        if self._http is not None:
            return await self._http.request(method, url, **kwargs)
        async with httpx.AsyncClient(timeout=30.0) as http:
            return await http.request(method, url, **kwargs)

    async def request(self, method: str, path: str, params: dict = None, body: Any = None) -> Any:
        """
        Transient failures (429, 5xx, connection errors) are retried up to
        max_retries times; anything else raises SellingPartnerError.
        """
        delay = 1.0
        for attempt in range(self.max_retries + 1):
            try:
                resp = await self._send(method, path, params, body)
            except httpx.TransportError as e:
                if attempt >= self.max_retries:
                    raise SellingPartnerError(503, f"SP-API {method} {path} failed: {e}") from e
                logger.warning(f"SP-API {method} {path} transport error ({e}); retrying in {delay:.1f}s")
                await self._sleep(delay)
                delay *= 2
                continue
            if resp.status_code < 400:
                if not resp.content:
                    return {}
                try:
                    return resp.json()
                except ValueError as e:
                    raise SellingPartnerError(
                        resp.status_code, f"SP-API {method} {path} returned a non-JSON body", details=resp.text[:500],
                    ) from e
            if resp.status_code in TRANSIENT_STATUSES and attempt < self.max_retries:
                logger.warning(f"SP-API {method} {path} returned {resp.status_code}; retrying in {delay:.1f}s")
                await self._sleep(delay)
                delay *= 2
                continue
            details = _json_or_text(resp)
            code = _first_error_code(details)
            message = f"SP-API {method} {path} returned {resp.status_code}"
            if resp.status_code == 404 or code == "NOT_FOUND":
                raise ListingNotFoundError(resp.status_code, message, code or "NOT_FOUND", details)
            raise SellingPartnerError(resp.status_code, message, code, details)

    # ── Pricing / listings ────────────────────────────────────────────

    async def get_listing_info_by_sku(self, sku: str) -> tuple[Optional[float], str]:
        """Return (current listing price, seller id) for one SKU."""
        data = await self.request(
            "GET",
            "/products/pricing/v0/price",
            params={"MarketplaceId": self.marketplace_id, "ItemType": "Sku", "Skus": sku},
        )
        entries = data.get("payload") or []
        entry = next((e for e in entries if e.get("SellerSKU") == sku), entries[0] if entries else None)
        if not entry:
            raise ListingNotFoundError(404, f"No pricing entry for SKU {sku}", "NOT_FOUND", data)
        if (entry.get("status") or "").lower() != "success":
            code = _first_error_code(entry) or "NOT_FOUND"
            if code in ("NOT_FOUND", "InvalidInput"):
                raise ListingNotFoundError(404, f"Listing for SKU {sku} not found", "NOT_FOUND", entry)
            raise SellingPartnerError(400, f"Pricing lookup failed for SKU {sku}", code, entry)

        product = entry.get("Product") or {}
        seller_id = (
            ((product.get("Identifiers") or {}).get("SKUIdentifier") or {}).get("SellerId")
            or self.seller_id
        )
        price = None
        for offer in product.get("Offers") or []:
            amount = ((offer.get("BuyingPrice") or {}).get("ListingPrice") or {}).get("Amount")
            if isinstance(amount, (int, float)):
                price = float(amount)
                break
        return price, seller_id

    async def update_price(self, sku: str, new_price: float, seller_id: str) -> dict:
        if not seller_id:
            raise SellingPartnerError(400, f"No seller id available to update SKU {sku}")
        payload = {
            "productType": "PRODUCT",
            "patches": [{
                "op": "replace",
                "path": "/attributes/purchasable_offer",
                "value": [{
                    "marketplace_id": self.marketplace_id,
                    "currency": self.currency,
                    "our_price": [{"schedule": [{"value_with_tax": round(float(new_price), 2)}]}],
                }],
            }],
        }
        logger.info(f"[SP-API] Submitting price update for SKU {sku} to {new_price}")
        return await self.request(
            "PATCH",
            f"/listings/2021-08-01/items/{seller_id}/{sku}",
            params={"marketplaceIds": self.marketplace_id},
            body=payload,
        )

    async def get_sku_by_asin(self, asin: str) -> Optional[str]:
        """First seller SKU listed for the ASIN, or None."""
        if not self.seller_id:
            raise MissingCredentialsError("SP_API_SELLER_ID is required to resolve SKUs by ASIN.")
        data = await self.request(
            "GET",
            f"/listings/2021-08-01/items/{self.seller_id}",
            params={
                "marketplaceIds": self.marketplace_id,
                "identifiers": asin,
                "identifiersType": "ASIN",
                "includedData": "summaries",
            },
        )
        for item in data.get("items") or []:
            if item.get("sku"):
                return item["sku"]
        return None

    # ── Catalog ───────────────────────────────────────────────────────

    async def get_product_text_attributes(self, asin: str) -> dict:
        """{asin, title, bullet_points} from the catalog item."""
        data = await self.request(
            "GET",
            f"/catalog/2022-04-01/items/{asin}",
            params={"marketplaceIds": self.marketplace_id, "includedData": "summaries,attributes"},
        )
        summaries = data.get("summaries") or [{}]
        attributes = data.get("attributes") or {}
        bullets = [b.get("value") for b in attributes.get("bullet_point") or [] if b.get("value")]
        title = summaries[0].get("itemName")
        if not title:
            names = attributes.get("item_name") or [{}]
            title = names[0].get("value")
        return {"asin": asin, "title": title, "bullet_points": bullets}


def _json_or_text(resp: httpx.Response) -> Any:
    try:
        return resp.json()
    except ValueError:
        return {"message": resp.text[:500]}


def _first_error_code(details: Any) -> Optional[str]:
    if not isinstance(details, dict):
        return None
    errors = details.get("errors") or (details.get("Error") and [details["Error"]]) or []
    for err in errors:
        if isinstance(err, dict) and err.get("code"):
            return str(err["code"])
    return None


def create_sp_api_client(http: Optional[httpx.AsyncClient] = None) -> SellingPartnerClient:
    settings = get_settings()
    if not settings.sp_api_access_token:
        raise MissingCredentialsError("Selling Partner API access token is not configured (SP_API_ACCESS_TOKEN).")
    return SellingPartnerClient(
        access_token=settings.sp_api_access_token,
        marketplace_id=settings.sp_api_marketplace_id,
        region=settings.sp_api_region,
        seller_id=settings.sp_api_seller_id,
        currency=settings.sp_api_currency,
        http=http,
    )
