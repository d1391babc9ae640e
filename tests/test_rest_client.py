import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from spreadbot.models import OrderSide, OrderStatus, OrderType
from spreadbot.rest_client import BinanceRestClient
from spreadbot.retry_policy import ErrorKind, classify


async def start_venue(handler):
    app = web.Application()
    app.router.add_route('*', '/api/v3/order', handler)
    server = TestServer(app)
    await server.start_server()
    return server


def make_client(config, logger, server):
    config['venue']['rest_url'] = str(server.make_url('/'))
    return BinanceRestClient(config, "test-key", "test-secret", logger)


@pytest.mark.asyncio
async def test_signed_order_query(config, logger):
    seen = {}

    async def handler(request):
        seen['query'] = dict(request.query)
        seen['api_key'] = request.headers.get('X-MBX-APIKEY')
        return web.json_response({
            "symbol": "BTCUSD", "orderId": 7, "clientOrderId": "sbabc", "price": "98.00",
            "origQty": "1.00000000", "executedQty": "0.40000000", "status": "PARTIALLY_FILLED",
            "type": "LIMIT", "side": "BUY",
        })

    server = await start_venue(handler)
    client = make_client(config, logger, server)
    try:
        error, order = await client.get_order("BTCUSD", order_id=7)
    finally:
        await client.close()
        await server.close()

    assert error is None
    assert order.status is OrderStatus.PARTIALLY_FILLED
    assert order.executed_qty == 0.4
    assert seen['api_key'] == "test-key"
    assert seen['query']['orderId'] == "7"
    assert {'timestamp', 'recvWindow', 'signature'} <= set(seen['query'])


@pytest.mark.asyncio
async def test_unreadable_success_body_is_a_transient_error(config, logger):
    async def handler(request):
        return web.Response(text="<html>maintenance</html>", content_type="text/html")

    server = await start_venue(handler)
    client = make_client(config, logger, server)
    try:
        error, order = await client.place_order("BTCUSD", OrderSide.BUY, OrderType.LIMIT, 1.0, 98.0,
                                                client_order_id="sbabc")
    finally:
        await client.close()
        await server.close()

    assert order is None
    assert error.http_status == 200
    assert classify(error) is ErrorKind.TRANSIENT


@pytest.mark.asyncio
async def test_venue_error_payload(config, logger):
    async def handler(request):
        return web.json_response({"code": -2011, "msg": "Unknown order sent."}, status=400)

    server = await start_venue(handler)
    client = make_client(config, logger, server)
    try:
        error, order = await client.cancel_order("BTCUSD", 7)
    finally:
        await client.close()
        await server.close()

    assert order is None
    assert error.code == -2011
    assert classify(error, cancelling=True) is ErrorKind.ALREADY_RESOLVED
