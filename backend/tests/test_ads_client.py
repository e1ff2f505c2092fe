"""
Tests for the Amazon Ads client: chunking, retries and multi-status parsing.
"""

import json

import httpx
import pytest

from ppc_automation.ads_client import AdsApiError, AmazonAdsClient, parse_multi_status


class _Sleeps:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


def _client(handler, **kwargs) -> tuple[AmazonAdsClient, _Sleeps]:
    sleeps = _Sleeps()
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    client = AmazonAdsClient(
        client_id="cid", access_token="tok", profile_id="123", http=http, sleep=sleeps, **kwargs,
    )
    return client, sleeps


@pytest.mark.anyio
async def test_list_keywords_chunks_at_100_ids():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        ids = body["keywordIdFilter"]["include"]
        seen.append(ids)
        assert request.headers["Amazon-Advertising-API-Scope"] == "123"
        return httpx.Response(200, json={"keywords": [{"keywordId": i, "bid": 1.0} for i in ids]})

    client, _ = _client(handler)
    result = await client.list_keywords([str(i) for i in range(150)])

    assert sorted(len(chunk) for chunk in seen) == [50, 100]
    assert len(result.items) == 150
    assert result.failed_ids == []


@pytest.mark.anyio
async def test_fan_out_waves_are_separated_by_delay():
    def handler(request):
        return httpx.Response(200, json={"adGroups": []})

    client, sleeps = _client(handler, chunk_size=10, fan_out=2, chunk_delay=0.5)
    await client.list_ad_groups([str(i) for i in range(50)])  # 5 chunks → 3 waves
    assert sleeps.delays == [0.5, 0.5]


@pytest.mark.anyio
async def test_429_is_retried_honouring_retry_after():
    calls = []

    def handler(request):
        calls.append(request)
        if len(calls) == 1:
            return httpx.Response(429, headers={"Retry-After": "2"}, json={"message": "Too Many Requests"})
        return httpx.Response(200, json={"campaigns": [{"campaignId": "C1"}]})

    client, sleeps = _client(handler)
    result = await client.list_campaigns(["C1"])
    assert len(calls) == 2
    assert sleeps.delays == [2.0]
    assert result.items == [{"campaignId": "C1"}]


@pytest.mark.anyio
async def test_5xx_backoff_is_exponential_and_capped():
    def handler(request):
        return httpx.Response(503, json={"message": "unavailable"})

    client, sleeps = _client(handler, max_retries=4, retry_base_delay=1.0, retry_max_delay=5.0)
    with pytest.raises(AdsApiError) as exc:
        await client.request("GET", "/v2/profiles")
    assert exc.value.status == 503
    assert sleeps.delays == [1.0, 2.0, 4.0, 5.0]


@pytest.mark.anyio
async def test_client_errors_are_not_retried():
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(400, json={"code": "INVALID_ARGUMENT"})

    client, sleeps = _client(handler)
    with pytest.raises(AdsApiError) as exc:
        await client.update_keyword_bids([{"keywordId": "1", "bid": 0.5}])
    assert len(calls) == 1
    assert sleeps.delays == []
    assert exc.value.details == {"code": "INVALID_ARGUMENT"}


@pytest.mark.anyio
async def test_non_json_success_body_raises_api_error():
    def handler(request):
        return httpx.Response(200, text="<html>Service Unavailable</html>")

    client, sleeps = _client(handler)
    with pytest.raises(AdsApiError) as exc:
        await client.request("GET", "/v2/profiles")
    assert exc.value.status == 200
    assert "Service Unavailable" in exc.value.details["message"]
    assert sleeps.delays == []


@pytest.mark.anyio
async def test_connection_errors_are_retried_then_raised():
    calls = []

    def handler(request):
        calls.append(request)
        raise httpx.ConnectError("connection refused", request=request)

    client, sleeps = _client(handler, max_retries=2, retry_base_delay=1.0)
    with pytest.raises(AdsApiError) as exc:
        await client.request("GET", "/v2/profiles")
    assert exc.value.status == 503
    assert len(calls) == 3
    assert sleeps.delays == [1.0, 2.0]

@pytest.mark.anyio
async def test_failed_chunk_is_reported_not_raised():
    def handler(request):
        ids = json.loads(request.content)["targetIdFilter"]["include"]
        if "bad" in ids:
            return httpx.Response(400, json={"message": "bad id"})
        return httpx.Response(200, json={"targetingClauses": [{"targetId": i} for i in ids]})

    client, _ = _client(handler, chunk_size=1)
    result = await client.list_targets(["good", "bad"])
    assert result.items == [{"targetId": "good"}]
    assert result.failed_ids == ["bad"]


@pytest.mark.anyio
async def test_sb_keyword_lookup_uses_comma_joined_query_filter():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.method == "GET" and request.url.path == "/sb/keywords"
        ids = request.url.params["keywordIdFilter"].split(",")
        seen.append(ids)
        return httpx.Response(200, json=[{"keywordId": i, "bid": 1.5} for i in ids])

    client, _ = _client(handler, chunk_size=2)
    result = await client.list_sb_keywords(["k1", "k2", "k3"])

    assert sorted(seen) == [["k1", "k2"], ["k3"]]
    assert [r["keywordId"] for r in result.items] == ["k1", "k2", "k3"]


@pytest.mark.anyio
async def test_sb_keyword_bid_update_sends_bare_list():
    def handler(request):
        assert request.method == "PUT" and request.url.path == "/sb/keywords"
        assert json.loads(request.content) == [
            {"keywordId": "k1", "adGroupId": "AG1", "campaignId": "C1", "bid": 1.1},
            {"keywordId": "k2", "adGroupId": "AG1", "campaignId": "C1", "bid": 0.9},
        ]
        return httpx.Response(207, json=[
            {"code": "SUCCESS", "keywordId": "k1"},
            {"code": "INVALID_ARGUMENT", "keywordId": "k2", "details": "bid below minimum"},
        ])

    client, _ = _client(handler)
    status = await client.update_sb_keyword_bids([
        {"keywordId": "k1", "adGroupId": "AG1", "campaignId": "C1", "bid": 1.1},
        {"keywordId": "k2", "adGroupId": "AG1", "campaignId": "C1", "bid": 0.9},
    ])
    assert status.success_ids == ["k1"]
    assert status.errors[0].index == 1
    assert status.errors[0].message == "bid below minimum"


@pytest.mark.anyio
async def test_sd_target_bid_update_wraps_targets():
    def handler(request):
        assert request.method == "PUT" and request.url.path == "/sd/targets"
        assert json.loads(request.content) == {"targets": [{"targetId": "t1", "bid": 0.5}]}
        return httpx.Response(207, json={"targets": [{"code": "SUCCESS", "targetId": "t1"}]})

    client, _ = _client(handler)
    status = await client.update_sd_target_bids([{"targetId": "t1", "bid": 0.5}])
    assert status.success_ids == ["t1"]
    assert status.errors == []


@pytest.mark.anyio
async def test_campaign_exists_only_false_on_404():
    def handler(request):
        if request.url.path.endswith("/gone"):
            return httpx.Response(404, json={"message": "not found"})
        if request.url.path.endswith("/broken"):
            return httpx.Response(400, json={"message": "bad request"})
        return httpx.Response(200, json={"campaignId": "live"})

    client, _ = _client(handler)
    assert await client.campaign_exists("live") is True
    assert await client.campaign_exists("gone") is False
    assert await client.campaign_exists("broken") is True
    assert await client.campaign_exists(None) is False


def test_parse_v3_success_error_shape():
    status = parse_multi_status({"campaigns": {
        "success": [{"index": 0, "campaignId": "111", "campaign": {"campaignId": "111"}}],
        "error": [{"index": 1, "errors": [{"errorType": "duplicateValueError",
                                          "errorValue": {"duplicateValueError": {"message": "Name exists"}}}]}],
    }}, "campaigns")
    assert status.first_id == "111"
    assert status.errors[0].index == 1
    assert status.errors[0].code == "duplicateValueError"
    assert status.errors[0].message == "Name exists"


def test_parse_per_item_code_shape():
    status = parse_multi_status({"keywords": [
        {"code": "SUCCESS", "keywordId": "k1"},
        {"code": "INVALID_ARGUMENT", "description": "bid too low"},
    ]}, "keywords")
    assert status.success_ids == ["k1"]
    assert status.errors[0].index == 1
    assert status.errors[0].message == "bid too low"


def test_parse_bare_list_and_nested_ids():
    status = parse_multi_status([{"code": "SUCCESS", "adGroup": {"adGroupId": "ag9"}}])
    assert status.first_id == "ag9"
    assert status.errors == []
