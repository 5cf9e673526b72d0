from __future__ import annotations

import random
import threading

from marketpulse.market.models import Instrument
from marketpulse.market.ticker_store import MAX_TICK_FLUCTUATION, TickerStore, simulate_price_tick
from tests.conftest import T0, make_globals, make_instrument


class TestSimulatedTick:
    def test_move_is_bounded_and_rounded(self):
        rng = random.Random(42)
        inst = make_instrument("bitcoin", 43250.5)
        for _ in range(500):
            update = simulate_price_tick(inst, rng, now=T0 + 30)
            assert abs(update["price"] / inst.price - 1) <= MAX_TICK_FLUCTUATION + 1e-12
            assert round(update["price"], 8) == update["price"]
            assert update["last_updated"] == T0 + 30

    def test_extreme_draws_hit_the_bounds(self):
        class _Fixed:
            def __init__(self, v):
                self.v = v

            def random(self):
                return self.v

        inst = make_instrument("ethereum", 1000.0)
        assert simulate_price_tick(inst, _Fixed(0.0))["price"] == 999.0
        assert simulate_price_tick(inst, _Fixed(0.5))["price"] == 1000.0

    def test_tiny_prices_stay_positive(self):
        inst = make_instrument("shiba", 0.00000912)
        update = simulate_price_tick(inst, random.Random(1))
        assert update["price"] > 0


class TestTickerStore:
    def test_replace_all_swaps_table_and_drops_bad_rows(self):
        store = TickerStore()
        kept = store.replace_all([
            make_instrument("bitcoin", 43000.0),
            make_instrument("broken", 0.0),
            make_instrument("bitcoin", 1.0),
            make_instrument("ethereum", 2600.0),
        ])
        assert kept == 2
        assert [i.id for i in store.list()] == ["bitcoin", "ethereum"]
        assert store.get("bitcoin").price == 43000.0
        assert store.find_symbol("eth").id == "ethereum"

    def test_perturb_preserves_unchanged_fields(self):
        store = TickerStore()
        store.replace_all([make_instrument("bitcoin", 43000.0, change=2.5)])
        before = store.get("bitcoin")

        changed = store.perturb(None, lambda inst: simulate_price_tick(inst, random.Random(3), now=T0 + 30))

        after = store.get("bitcoin")
        assert changed == 1
        assert after.price != before.price
        assert after.change_24h_pct == before.change_24h_pct
        assert after.market_cap == before.market_cap
        assert after.name == before.name

    def test_perturb_cannot_change_id_or_zero_a_price(self):
        store = TickerStore()
        store.replace_all([make_instrument("bitcoin", 43000.0)])

        store.perturb(["bitcoin"], lambda inst: {"id": "other", "price": 42000.0})
        assert store.get("bitcoin").price == 42000.0
        assert store.get("other") is None

        assert store.perturb(["bitcoin"], lambda inst: {"price": 0.0}) == 0
        assert store.get("bitcoin").price == 42000.0

    def test_perturb_only_touches_requested_ids(self):
        store = TickerStore()
        store.replace_all([make_instrument("bitcoin", 100.0), make_instrument("ethereum", 10.0)])
        store.perturb(["ethereum"], lambda inst: {"price": inst.price * 2})
        assert store.get("bitcoin").price == 100.0
        assert store.get("ethereum").price == 20.0

    def test_last_updated_never_moves_backwards(self):
        store = TickerStore()
        store.replace_all([make_instrument("bitcoin", 100.0, updated=T0 + 100)])

        store.perturb(None, lambda inst: {"price": 101.0, "last_updated": T0})
        assert store.get("bitcoin").last_updated == T0 + 100

        store.replace_all([make_instrument("bitcoin", 102.0, updated=T0 + 50)])
        assert store.get("bitcoin").last_updated == T0 + 100
        assert store.get("bitcoin").price == 102.0

    def test_globals_replaced_wholesale(self):
        store = TickerStore()
        assert store.globals is None
        store.set_globals(make_globals(total_cap=1e12))
        store.set_globals(make_globals(total_cap=2e12, fear_greed=None))
        assert store.globals.total_market_cap == 2e12
        assert store.globals.fear_greed_index is None

    def test_top_movers_split_by_sign(self):
        store = TickerStore()
        store.replace_all([
            make_instrument("a", 1.0, change=5.0),
            make_instrument("b", 1.0, change=-7.0),
            make_instrument("c", 1.0, change=1.0),
            make_instrument("d", 1.0, change=-1.0),
            make_instrument("e", 1.0, change=0.0),
        ])
        movers = store.top_movers(limit=1)
        assert [i.id for i in movers.gainers] == ["a"]
        assert [i.id for i in movers.losers] == ["b"]

    def test_readers_never_see_a_half_applied_table(self):
        """Concurrent readers only ever observe one of the two complete tables."""
        store = TickerStore()
        table_a = [make_instrument(f"coin{i}", 1.0) for i in range(50)]
        table_b = [make_instrument(f"coin{i}", 2.0) for i in range(50)]
        store.replace_all(table_a)

        torn = []
        stop = threading.Event()

        def _reader():
            while not stop.is_set():
                prices = {inst.price for inst in store.list()}
                if len(prices) != 1 or len(store.list()) != 50:
                    torn.append(prices)

        readers = [threading.Thread(target=_reader) for _ in range(4)]
        for t in readers:
            t.start()
        for n in range(300):
            store.replace_all(table_b if n % 2 else table_a)
            store.perturb(None, lambda inst: {"price": inst.price * 3})
        stop.set()
        for t in readers:
            t.join()

        assert torn == []
        assert all(isinstance(i, Instrument) for i in store.list())
