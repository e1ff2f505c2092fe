"""
Tests for the Selling Partner client: retries and error mapping.
"""

import httpx
import pytest

from conftest import make_sp_client
from ppc_automation.sp_api_client import ListingNotFoundError, SellingPartnerError


def _pricing(sku, amount=12.5):
    return {"payload": [{
        "SellerSKU": sku,
        "status": "Success",
        "Product": {
            "Identifiers": {"SKUIdentifier": {"SellerId": "S-FROM-API"}},
            "Offers": [{"BuyingPrice": {"ListingPrice": {"Amount": amount}}}],
        },
    }]}


@pytest.mark.anyio
async def test_connection_error_is_retried():
    calls = []

    def handler(request):
        calls.append(request)
        if len(calls) == 1:
            raise httpx.ConnectError("connection reset", request=request)
        return httpx.Response(200, json=_pricing("A"))

    client = make_sp_client(handler, max_retries=2)
    assert await client.get_listing_info_by_sku("A") == (12.5, "S-FROM-API")
    assert len(calls) == 2


@pytest.mark.anyio
async def test_connection_error_after_retries_is_a_selling_partner_error():
    calls = []

    def handler(request):
        calls.append(request)
        raise httpx.ReadTimeout("timed out", request=request)

    client = make_sp_client(handler, max_retries=2)
    with pytest.raises(SellingPartnerError) as exc:
        await client.get_listing_info_by_sku("A")
    assert exc.value.status == 503
    assert len(calls) == 3


@pytest.mark.anyio
async def test_not_found_maps_to_listing_not_found():
    def handler(request):
        return httpx.Response(404, json={"errors": [{"code": "NOT_FOUND", "message": "missing"}]})

    with pytest.raises(ListingNotFoundError):
        await make_sp_client(handler).get_listing_info_by_sku("A")


@pytest.mark.anyio
async def test_non_json_success_body_is_a_selling_partner_error():
    def handler(request):
        return httpx.Response(200, text="<html>gateway</html>")

    with pytest.raises(SellingPartnerError):
        await make_sp_client(handler).get_sku_by_asin("B000000001")
