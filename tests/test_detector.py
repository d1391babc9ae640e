import pytest

from conftest import make_quote
from spreadbot.detector import OpportunityDetector, arbitrage_opportunity, floor_to, momentum_opportunity
from spreadbot.quote_cache import QuoteCache


def test_floor_to_truncates():
    assert floor_to(0.2551020408, 6) == 0.255102
    assert floor_to(98.019, 2) == 98.01
    assert floor_to(1.999999999, 2) == 1.99


def test_buys_cheaper_book_and_sells_richer_one():
    btcusd = make_quote("BTCUSD", bid=99.90, ask=100.00)
    btcbusd = make_quote("BTCBUSD", bid=97.90, ask=98.00)

    opp = arbitrage_opportunity(btcusd, btcbusd, target_delta=0.25, trade_notional=25, min_notional=10,
                                quantity_decimals=6)

    assert opp.buy_symbol == "BTCBUSD"
    assert opp.buy_price == 98.00
    assert opp.sell_symbol == "BTCUSD"
    assert opp.sell_price == 99.90
    assert opp.edge == pytest.approx(1.65)
    assert opp.quantity == floor_to(25 / 98.00, 6)


def test_exit_spread_overrides_peer_bid():
    btcusd = make_quote("BTCUSD", bid=99.90, ask=100.00)
    btcbusd = make_quote("BTCBUSD", bid=97.90, ask=98.00)

    opp = arbitrage_opportunity(btcusd, btcbusd, 0.25, 25, 10, 6, exit_spread=1.5)

    assert opp.sell_price == pytest.approx(99.50)


def test_no_opportunity_when_both_edges_non_positive():
    a = make_quote("BTCUSD", bid=99.90, ask=100.00)
    b = make_quote("BTCBUSD", bid=99.95, ask=100.05)

    assert arbitrage_opportunity(a, b, 0.25, 25, 10, 6) is None


def test_tie_prefers_buying_self():
    a = make_quote("BTCUSD", bid=101.0, ask=100.0)
    b = make_quote("BTCBUSD", bid=101.0, ask=100.0)

    opp = arbitrage_opportunity(a, b, 0.5, 25, 10, 6)

    assert opp.buy_symbol == "BTCUSD"
    assert opp.sell_symbol == "BTCBUSD"


def test_quantity_capped_by_displayed_book():
    a = make_quote("BTCUSD", bid=99.90, ask=100.00, bid_qty=0.15)
    b = make_quote("BTCBUSD", bid=97.90, ask=98.00, ask_qty=0.2)

    opp = arbitrage_opportunity(a, b, 0.25, 25, 10, 6)
    assert opp.quantity == 0.15

    b = make_quote("BTCBUSD", bid=97.90, ask=98.00, ask_qty=0.12)
    opp = arbitrage_opportunity(a, b, 0.25, 25, 10, 6)
    assert opp.quantity == 0.12


def test_rejects_below_min_notional():
    a = make_quote("BTCUSD", bid=99.90, ask=100.00, bid_qty=0.05)
    b = make_quote("BTCBUSD", bid=97.90, ask=98.00)

    assert arbitrage_opportunity(a, b, 0.25, 25, 10, 6) is None


def test_zero_prices_are_ignored():
    a = make_quote("BTCUSD", bid=0.0, ask=100.00)
    b = make_quote("BTCBUSD", bid=97.90, ask=98.00)

    assert arbitrage_opportunity(a, b, 0.25, 25, 10, 6) is None


def test_momentum_buys_inside_the_spread():
    quote = make_quote("BTCUSD", bid=100.00, ask=101.00)

    opp = momentum_opportunity(quote, exit_spread=1.5, trade_notional=25, min_notional=10,
                               price_decimals=2, quantity_decimals=6, entry_offset=0.25)

    assert opp.buy_symbol == opp.sell_symbol == "BTCUSD"
    assert opp.buy_price == 100.25
    assert opp.sell_price == 101.75
    assert opp.quantity == floor_to(25 / 100.25, 6)


def test_detector_needs_both_symbols(config):
    detector = OpportunityDetector(config)
    cache = QuoteCache()
    cache.update("BTCUSD", make_quote("BTCUSD", bid=99.90, ask=100.00))

    assert detector.detect(cache) is None

    cache.update("BTCBUSD", make_quote("BTCBUSD", bid=97.90, ask=98.00))
    assert detector.detect(cache).buy_symbol == "BTCBUSD"


def test_detector_momentum_mode(config):
    config['strategy'].update(mode='momentum', symbols=['BTCUSD'], exit_spread=1.5)
    detector = OpportunityDetector(config)
    cache = QuoteCache()
    cache.update("BTCUSD", make_quote("BTCUSD", bid=100.00, ask=101.00))

    opp = detector.detect(cache)

    assert opp.sell_price == pytest.approx(opp.buy_price + 1.5)


def test_venue_min_notional_applies(config):
    detector = OpportunityDetector(config)
    detector.set_min_notional(30)
    cache = QuoteCache()
    cache.update("BTCUSD", make_quote("BTCUSD", bid=99.90, ask=100.00))
    cache.update("BTCBUSD", make_quote("BTCBUSD", bid=97.90, ask=98.00))

    assert detector.detect(cache) is None
