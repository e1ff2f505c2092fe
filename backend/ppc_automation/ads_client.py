"""
Amazon Ads API Client
Direct Sponsored Products v3 calls (plus Sponsored Brands / Display bid reads and
updates) over httpx: chunked bulk lookups with bounded fan-out, retry with
capped exponential backoff for transient failures, and normalization of the
per-item (multi-status) responses the mutation endpoints return.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

import httpx

from ppc_automation.config import MissingCredentialsError, get_settings
from ppc_automation.utils import chunked

logger = logging.getLogger(__name__)

# ── Region URL Mapping ────────────────────────────────────────────────
API_BASE_URLS = {
    "na": "https://advertising-api.amazon.com",
    "eu": "https://advertising-api-eu.amazon.com",
    "fe": "https://advertising-api-fe.amazon.com",
}

TRANSIENT_STATUSES = {429, 500, 502, 503, 504}

# v3 media types per resource
KEYWORD = "application/vnd.spKeyword.v3+json"
TARGET = "application/vnd.spTargetingClause.v3+json"
AD_GROUP = "application/vnd.spAdGroup.v3+json"
CAMPAIGN = "application/vnd.spCampaign.v3+json"
PRODUCT_AD = "application/vnd.spProductAd.v3+json"
NEGATIVE_KEYWORD = "application/vnd.spNegativeKeyword.v3+json"
NEGATIVE_TARGET = "application/vnd.spNegativeTargetingClause.v3+json"

_ID_FIELDS = (
    "campaignId", "adGroupId", "adId", "keywordId", "targetId",
    "negativeKeywordId", "negativeTargetId", "id",
)


class AdsApiError(Exception):
    """Non-2xx response (after retries) from the Amazon Ads API."""

    def __init__(self, status: int, message: str, details: Any = None):
        super().__init__(message)
        self.status = status
        self.details = details

    @property
    def is_not_found(self) -> bool:
        return self.status == 404


# ── Multi-status parsing ──────────────────────────────────────────────

@dataclass
class ItemResult:
    index: int
    ok: bool
    entity_id: Optional[str] = None
    code: Optional[str] = None
    message: Optional[str] = None
    raw: dict = field(default_factory=dict)


@dataclass
class MultiStatus:
    successes: list[ItemResult] = field(default_factory=list)
    errors: list[ItemResult] = field(default_factory=list)
    raw: Any = None

    @property
    def success_ids(self) -> list[str]:
        return [r.entity_id for r in self.successes if r.entity_id]

    @property
    def first_id(self) -> Optional[str]:
        ids = self.success_ids
        return ids[0] if ids else None

    def error_summary(self) -> list[dict]:
        return [
            {"index": e.index, "entityId": e.entity_id, "code": e.code, "message": e.message}
            for e in self.errors
        ]


def _item_id(item: dict) -> Optional[str]:
    for key in _ID_FIELDS:
        if item.get(key):
            return str(item[key])
    # v3 success records may nest the created object
    for nested in item.values():
        if isinstance(nested, dict):
            for key in _ID_FIELDS:
                if nested.get(key):
                    return str(nested[key])
    return None


def _item_message(item: dict) -> Optional[str]:
    for key in ("description", "details", "message"):
        if isinstance(item.get(key), str):
            return item[key]
    for err in item.get("errors") or []:
        if not isinstance(err, dict):
            continue
        if isinstance(err.get("message"), str):
            return err["message"]
        for val in (err.get("errorValue") or {}).values():
            if isinstance(val, dict) and val.get("message"):
                return val["message"]
    return None


def _item_code(item: dict) -> Optional[str]:
    if item.get("code"):
        return str(item["code"])
    for err in item.get("errors") or []:
        if isinstance(err, dict) and err.get("errorType"):
            return str(err["errorType"])
    return None


def parse_multi_status(response: Any, key: Optional[str] = None) -> MultiStatus:
    """
    Normalize a bulk create/update response into successes and errors.

    Amazon returns several shapes depending on endpoint and version:
    - {key: {"success": [...], "error": [...]}}   (v3 create/update)
    - {key: [{"code": "SUCCESS", ...}, ...]}         (per-item codes)
    - [{"code": "SUCCESS", ...}, ...]                (bare list)
    - {"success": [...], "error": [...]}             (unwrapped)
    """
    result = MultiStatus(raw=response)
    body = response
    if isinstance(body, dict) and key and key in body:
        body = body[key]

    if isinstance(body, dict) and ("success" in body or "error" in body):
        for pos, item in enumerate(body.get("success") or []):
            if isinstance(item, dict):
                result.successes.append(ItemResult(
                    index=item.get("index", pos), ok=True,
                    entity_id=_item_id(item), code="SUCCESS", raw=item,
                ))
        for pos, item in enumerate(body.get("error") or []):
            if isinstance(item, dict):
                result.errors.append(ItemResult(
                    index=item.get("index", pos), ok=False,
                    entity_id=_item_id(item), code=_item_code(item),
                    message=_item_message(item), raw=item,
                ))
        return result

    if isinstance(body, list):
        for pos, item in enumerate(body):
            if not isinstance(item, dict):
                continue
            code = _item_code(item)
            ok = code is None or code.upper() == "SUCCESS"
            target = result.successes if ok else result.errors
            target.append(ItemResult(
                index=item.get("index", pos), ok=ok,
                entity_id=_item_id(item), code=code or "SUCCESS",
                message=None if ok else _item_message(item), raw=item,
            ))
    return result


@dataclass
class ListResult:
    """Records returned by a chunked list call, plus ids whose chunk failed."""
    items: list[dict] = field(default_factory=list)
    failed_ids: list[str] = field(default_factory=list)


class AmazonAdsClient:
    """
    Authenticated Sponsored Products client for a single advertiser profile.
    Pass `http` to reuse a client (tests inject one with httpx.MockTransport).
    """

    def __init__(
        self,
        client_id: str,
        access_token: str,
        profile_id: Optional[str] = None,
        region: str = "na",
        http: Optional[httpx.AsyncClient] = None,
        chunk_size: Optional[int] = None,
        fan_out: Optional[int] = None,
        chunk_delay: Optional[float] = None,
        max_retries: Optional[int] = None,
        retry_base_delay: Optional[float] = None,
        retry_max_delay: Optional[float] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        settings = get_settings()
        self.client_id = client_id
        self.access_token = access_token
        self.profile_id = str(profile_id) if profile_id else None
        self.region = region.lower()
        self._http = http
        self.chunk_size = min(chunk_size or settings.ads_api_chunk_size, 100)
        self.fan_out = max(1, fan_out or settings.ads_api_fan_out)
        self.chunk_delay = settings.ads_api_chunk_delay_seconds if chunk_delay is None else chunk_delay
        self.max_retries = settings.ads_api_max_retries if max_retries is None else max_retries
        self.retry_base_delay = (
            settings.ads_api_retry_base_delay_seconds if retry_base_delay is None else retry_base_delay
        )
        self.retry_max_delay = (
            settings.ads_api_retry_max_delay_seconds if retry_max_delay is None else retry_max_delay
        )
        self._sleep = sleep

    @property
    def base_url(self) -> str:
        url = API_BASE_URLS.get(self.region)
        if not url:
            raise ValueError(f"Unsupported region: {self.region}. Use na, eu, or fe.")
        return url

    def headers(self, media_type: Optional[str] = None) -> dict[str, str]:
        h = {
            "Amazon-Advertising-API-ClientId": self.client_id,
            "Authorization": f"Bearer {self.access_token}",
        }
        if media_type:
            h["Content-Type"] = media_type
            h["Accept"] = media_type
        if self.profile_id:
            h["Amazon-Advertising-API-Scope"] = self.profile_id
        return h

    # ── Transport ─────────────────────────────────────────────────────

    def _retry_delay(self, attempt: int, response: Optional[httpx.Response]) -> float:
        if response is not None:
            retry_after = response.headers.get("Retry-After")
            if retry_after:
                try:
                    return min(float(retry_after), self.retry_max_delay)
                except ValueError:
                    pass
        return min(self.retry_base_delay * (2 ** attempt), self.retry_max_delay)

    async def _send(
        self, method: str, path: str, media_type: Optional[str], body: Any, params: Optional[dict] = None,
    ) -> httpx.Response:
        url = f"{self.base_url}{path}"
        kwargs = {"headers": self.headers(media_type)}
        if params:
            kwargs["params"] = params
        if body is not None:
            kwargs["json"] = body
        if self._http is not None:
            return await self._http.request(method, url, **kwargs)
        async with httpx.AsyncClient(timeout=30.0) as http:
            return await http.request(method, url, **kwargs)

    async def request(
        self,
        method: str,
        path: str,
        media_type: Optional[str] = None,
        body: Any = None,
        params: Optional[dict] = None,
    ) -> Any:
        """
        Perform one API call. Transient failures (429, 5xx, connection errors)
        are retried up to max_retries times; anything else raises AdsApiError.
        """
        attempt = 0
        while True:
            response = None
            try:
                response = await self._send(method, path, media_type, body, params)
            except httpx.TransportError as e:
                if attempt >= self.max_retries:
                    raise AdsApiError(503, f"{method} {path} failed: {e}") from e
                delay = self._retry_delay(attempt, None)
                logger.warning(f"Ads API {method} {path} transport error ({e}); retry {attempt + 1} in {delay:.1f}s")
            else:
                if response.status_code < 400:
                    if not response.content:
                        return {}
                    try:
                        return response.json()
                    except ValueError as e:
                        raise AdsApiError(
                            response.status_code,
                            f"{method} {path} returned a non-JSON body",
                            _response_details(response),
                        ) from e
                if response.status_code not in TRANSIENT_STATUSES or attempt >= self.max_retries:
                    details = _response_details(response)
                    logger.error(f"Ads API {method} {path} failed: {response.status_code} - {str(details)[:300]}")
                    raise AdsApiError(response.status_code, f"{method} {path} returned {response.status_code}", details)
                delay = self._retry_delay(attempt, response)
                logger.warning(
                    f"Ads API {method} {path} returned {response.status_code}; "
                    f"retry {attempt + 1}/{self.max_retries} in {delay:.1f}s"
                )
            attempt += 1
            await self._sleep(delay)

    # ── Chunked lookups ───────────────────────────────────────────────

    async def _chunked_list(
        self,
        path: str,
        media_type: str,
        filter_key: str,
        ids: list[str],
        response_keys: tuple[str, ...],
    ) -> ListResult:
        """
        POST {filter_key: {include: chunk}} for each chunk of at most chunk_size ids.
        Up to fan_out chunks run concurrently; waves are separated by chunk_delay.
        A chunk that still fails after retries is reported in failed_ids.
        """
        return await self._fan_out(
            path, ids, response_keys,
            lambda chunk: self.request("POST", path, media_type, {filter_key: {"include": chunk}}),
        )

    async def _chunked_get(self, path: str, filter_key: str, ids: list[str]) -> ListResult:
        """Sponsored Brands / Display lookups: GET with a comma-joined id filter, bare list response."""
        return await self._fan_out(
            path, ids, (),
            lambda chunk: self.request("GET", path, params={filter_key: ",".join(chunk)}),
        )

    async def _fan_out(
        self,
        path: str,
        ids: list[str],
        response_keys: tuple[str, ...],
        fetch: Callable[[list[str]], Awaitable[Any]],
    ) -> ListResult:
        result = ListResult()
        unique_ids = list(dict.fromkeys(str(i) for i in ids if i))
        chunks = list(chunked(unique_ids, self.chunk_size))

        for wave_no, wave_start in enumerate(range(0, len(chunks), self.fan_out)):
            if wave_no:
                await self._sleep(self.chunk_delay)
            wave = chunks[wave_start:wave_start + self.fan_out]
            responses = await asyncio.gather(*(fetch(chunk) for chunk in wave), return_exceptions=True)
            for chunk, response in zip(wave, responses):
                if isinstance(response, AdsApiError):
                    logger.error(f"Lookup {path} failed for a chunk of {len(chunk)} id(s): {response}")
                    result.failed_ids.extend(chunk)
                    continue
                if isinstance(response, BaseException):
                    raise response
                if isinstance(response, list):
                    result.items.extend(r for r in response if isinstance(r, dict))
                    continue
                for key in response_keys:
                    items = (response or {}).get(key)
                    if isinstance(items, list):
                        result.items.extend(items)
                        break
        return result

    async def list_keywords(self, keyword_ids: list[str]) -> ListResult:
        return await self._chunked_list("/sp/keywords/list", KEYWORD, "keywordIdFilter", keyword_ids, ("keywords",))

    async def list_targets(self, target_ids: list[str]) -> ListResult:
        return await self._chunked_list(
            "/sp/targets/list", TARGET, "targetIdFilter", target_ids, ("targetingClauses", "targets"),
        )

    async def list_ad_groups(self, ad_group_ids: list[str]) -> ListResult:
        return await self._chunked_list("/sp/adGroups/list", AD_GROUP, "adGroupIdFilter", ad_group_ids, ("adGroups",))

    async def list_campaigns(self, campaign_ids: list[str]) -> ListResult:
        return await self._chunked_list("/sp/campaigns/list", CAMPAIGN, "campaignIdFilter", campaign_ids, ("campaigns",))

    async def list_sb_keywords(self, keyword_ids: list[str]) -> ListResult:
        return await self._chunked_get("/sb/keywords", "keywordIdFilter", keyword_ids)

    async def list_sb_targets(self, target_ids: list[str]) -> ListResult:
        return await self._chunked_get("/sb/targets", "targetIdFilter", target_ids)

    async def list_sb_ad_groups(self, ad_group_ids: list[str]) -> ListResult:
        return await self._chunked_get("/sb/adGroups", "adGroupIdFilter", ad_group_ids)

    async def list_sd_targets(self, target_ids: list[str]) -> ListResult:
        return await self._chunked_get("/sd/targets", "targetIdFilter", target_ids)

    async def list_profiles(self) -> list[dict]:
        return await self.request("GET", "/v2/profiles")

    async def get_campaign(self, campaign_id: str) -> dict:
        return await self.request("GET", f"/sp/campaigns/{campaign_id}", CAMPAIGN)

    async def campaign_exists(self, campaign_id: Optional[str]) -> bool:
        """False only on a definite 404; other errors count as 'exists' so nothing is duplicated."""
        if not campaign_id:
            return False
        try:
            await self.get_campaign(campaign_id)
            return True
        except AdsApiError as e:
            if e.is_not_found:
                return False
            logger.error(f"Error checking campaign {campaign_id}: {e.details or e}")
            return True

    # ── Bulk mutations ────────────────────────────────────────────────

    async def _mutate(
        self, method: str, path: str, media_type: Optional[str], key: str, items: list[dict],
    ) -> MultiStatus:
        if not items:
            return MultiStatus()
        response = await self.request(method, path, media_type, {key: items})
        status = parse_multi_status(response, key)
        return self._log_rejections(method, path, status)

    async def _mutate_list(self, method: str, path: str, items: list[dict]) -> MultiStatus:
        if not items:
            return MultiStatus()
        status = parse_multi_status(await self.request(method, path, body=items))
        return self._log_rejections(method, path, status)

    @staticmethod
    def _log_rejections(method: str, path: str, status: MultiStatus) -> MultiStatus:
        for err in status.errors:
            logger.error(f"{method} {path} item {err.index} rejected: {err.code} - {err.message}")
        return status

    async def update_keyword_bids(self, updates: list[dict]) -> MultiStatus:
        return await self._mutate("PUT", "/sp/keywords", KEYWORD, "keywords", updates)

    async def update_target_bids(self, updates: list[dict]) -> MultiStatus:
        return await self._mutate("PUT", "/sp/targets", TARGET, "targetingClauses", updates)

    async def update_sb_keyword_bids(self, updates: list[dict]) -> MultiStatus:
        """Items carry keywordId, adGroupId, campaignId and bid; the response is a bare per-item list."""
        return await self._mutate_list("PUT", "/sb/keywords", updates)

    async def update_sb_target_bids(self, updates: list[dict]) -> MultiStatus:
        return await self._mutate_list("PUT", "/sb/targets", updates)

    async def update_sd_target_bids(self, updates: list[dict]) -> MultiStatus:
        return await self._mutate("PUT", "/sd/targets", None, "targets", updates)

    async def update_campaign_budgets(self, updates: list[dict]) -> MultiStatus:
        return await self._mutate("PUT", "/sp/campaigns", CAMPAIGN, "campaigns", updates)

    async def create_campaigns(self, campaigns: list[dict]) -> MultiStatus:
        return await self._mutate("POST", "/sp/campaigns", CAMPAIGN, "campaigns", campaigns)

    async def create_ad_groups(self, ad_groups: list[dict]) -> MultiStatus:
        return await self._mutate("POST", "/sp/adGroups", AD_GROUP, "adGroups", ad_groups)

    async def create_product_ads(self, product_ads: list[dict]) -> MultiStatus:
        return await self._mutate("POST", "/sp/productAds", PRODUCT_AD, "productAds", product_ads)

    async def create_keywords(self, keywords: list[dict]) -> MultiStatus:
        return await self._mutate("POST", "/sp/keywords", KEYWORD, "keywords", keywords)

    async def create_targets(self, targets: list[dict]) -> MultiStatus:
        return await self._mutate("POST", "/sp/targets", TARGET, "targetingClauses", targets)

    async def create_negative_keywords(self, negatives: list[dict]) -> MultiStatus:
        return await self._mutate("POST", "/sp/negativeKeywords", NEGATIVE_KEYWORD, "negativeKeywords", negatives)

    async def create_negative_targets(self, negatives: list[dict]) -> MultiStatus:
        return await self._mutate(
            "POST", "/sp/negativeTargets", NEGATIVE_TARGET, "negativeTargetingClauses", negatives,
        )


def _response_details(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return {"message": response.text[:500]}


def create_ads_client(profile_id: Optional[str], http: Optional[httpx.AsyncClient] = None) -> AmazonAdsClient:
    """Factory using the configured client id and supplied access token."""
    settings = get_settings()
    if not settings.ads_api_client_id or not settings.ads_api_access_token:
        raise MissingCredentialsError("Amazon Ads API credentials are not configured (ADS_API_CLIENT_ID / ADS_API_ACCESS_TOKEN).")
    return AmazonAdsClient(
        client_id=settings.ads_api_client_id,
        access_token=settings.ads_api_access_token,
        profile_id=profile_id,
        region=settings.ads_api_region,
        http=http,
    )
