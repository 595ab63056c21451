"""
Tests for the sync engine against a synthetic upstream.
"""

from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from ordersync.storage.models import PositionSource, SyncPosition
from ordersync.sync.engine import SyncState, load_last_summary
from ordersync.upstream.models import OrderSnapshot

from conftest import IMPORTABLE, FakeResponse, order_record


def import_orders(order_store, ids, status=IMPORTABLE):
    for order_id in ids:
        order_store.upsert("natu", OrderSnapshot.from_api_response(order_record(order_id, status)))


class TestFirstImport:
    """Tests for stores with nothing imported yet."""

    def test_empty_store(self, engine, positions):
        """Test a store without orders completes without a position."""
        stats = engine.sync()

        assert not stats.failed
        assert stats.emitted == 0
        assert stats.forward_complete
        assert positions.load("natu") is None

    def test_new_orders_then_more(self, engine, upstream, order_store, positions):
        """Test new orders are imported and the position follows the frontier."""
        upstream.add(range(1, 6))

        stats = engine.sync()

        assert stats.created == 5
        assert order_store.count("natu") == 5
        position = positions.load("natu")
        assert (position.last_page, position.first_id, position.last_id) == (1, 5, 1)
        assert not position.sweep_pending

        upstream.add(range(6, 11))
        stats = engine.sync()

        assert stats.created == 5
        assert order_store.latest_external_id("natu") == 10
        position = positions.load("natu")
        assert (position.last_page, position.first_id, position.last_id) == (2, 5, 1)
        assert position.source == PositionSource.LIVE_SCAN

    def test_non_importable_orders_are_skipped(self, engine, upstream, order_store):
        upstream.add(range(1, 6))
        upstream.set_status(3, "Annulé")

        stats = engine.sync()

        assert stats.created == 4
        assert order_store.get("natu", 3) is None

    def test_repeated_pass_emits_nothing(self, engine, upstream):
        """Test a pass over unchanged upstream data is a no-op."""
        upstream.add(range(1, 13))
        engine.sync()

        stats = engine.sync()

        assert stats.emitted == 0
        assert stats.created == stats.updated == 0
        assert not stats.failed


class TestBackwardScan:
    """Tests for status changes found behind the frontier."""

    def test_late_importable_and_status_change(self, make_engine, sync_config, upstream, order_store):
        """Test an order skipped earlier is imported once it becomes importable three passes later."""
        engine = make_engine(replace(sync_config, backward_window_pages=5))
        upstream.add(range(17071, 17101))
        upstream.set_status(17097, "En attente")

        first = engine.sync()
        assert first.created == 29
        assert order_store.get("natu", 17097) is None

        # Two passes import newer orders while 17097 stays unimportable
        for newest in (17105, 17110):
            upstream.add(range(newest - 4, newest + 1))
            intermediate = engine.sync()
            assert intermediate.created == 5
            assert intermediate.updated == 0
            assert order_store.latest_external_id("natu") == newest
            assert order_store.get("natu", 17097) is None

        upstream.set_status(17097, IMPORTABLE)
        upstream.set_status(17090, "Expédié")
        upstream.add(range(17111, 17116))

        stats = engine.sync()

        assert stats.created == 6
        assert stats.updated == 1
        assert stats.emitted == 7
        assert order_store.get("natu", 17097).status == "PENDING"
        shipped = order_store.get("natu", 17090)
        assert (shipped.upstream_status, shipped.status) == ("Expédié", "SHIPPED")
        assert stats.backward_pages == 5

    def test_window_bounds_the_scan(self, engine, upstream, order_store):
        """Test changes beyond the backward window wait for a later pass."""
        upstream.add(range(1, 31))
        engine.sync()
        upstream.set_status(2, "Livré")
        upstream.add(range(31, 36))

        stats = engine.sync()

        assert stats.backward_pages == 3
        assert stats.updated == 0
        assert order_store.get("natu", 2).upstream_status == IMPORTABLE


class TestPositionRecovery:
    """Tests for passes that cannot trust the saved position."""

    def test_stale_position_with_removed_order(self, engine, upstream, order_store, positions):
        """Test a stale position is recovered by search and marked recovered."""
        import_orders(order_store, range(1, 31))
        positions.save("natu", SyncPosition(
            last_page=1, first_id=30, last_id=26,
            captured_at=datetime.now(timezone.utc) - timedelta(hours=100),
        ))
        upstream.add(range(1, 30))
        upstream.add(range(31, 36))

        stats = engine.sync()

        assert stats.degraded
        assert stats.recovery_probes == 2
        assert stats.created == 5
        position = positions.load("natu")
        assert position.source == PositionSource.RECOVERED
        assert (position.last_page, position.first_id, position.last_id) == (2, 29, 25)

    def test_missing_position_is_located(self, engine, upstream, order_store, positions):
        import_orders(order_store, range(1, 21))
        upstream.add(range(1, 26))

        stats = engine.sync()

        assert not stats.degraded
        assert stats.recovery_probes > 0
        assert stats.created == 5
        assert positions.load("natu").source == PositionSource.LIVE_SCAN


class TestForwardHorizon:
    """Tests for sweeps that span several passes."""

    def test_sweep_resumes_where_it_stopped(self, make_engine, sync_config, upstream, order_store, positions):
        """Test a cut-short first import continues over the following passes."""
        engine = make_engine(replace(sync_config, forward_max_pages=2))
        upstream.add(range(1, 21))

        first = engine.sync()

        assert first.created == 10
        assert not first.forward_complete
        position = positions.load("natu")
        assert (position.last_page, position.floor_id) == (2, 0)

        second = engine.sync()
        assert second.created == 5
        assert positions.load("natu").last_page == 3

        third = engine.sync()
        assert third.created == 5
        assert third.forward_complete
        assert not positions.load("natu").sweep_pending
        assert order_store.count("natu") == 20

    def test_drifted_resume_page_is_relocated(self, make_engine, sync_config, upstream, positions):
        """Test a resume page that moved is found again before continuing."""
        engine = make_engine(replace(sync_config, forward_max_pages=2))
        upstream.add(range(1, 21))
        engine.sync()

        upstream.add(range(21, 26))
        stats = engine.sync()

        assert stats.recovery_probes == 3
        assert stats.created == 5
        position = positions.load("natu")
        assert (position.last_page, position.first_id, position.last_id) == (4, 10, 6)
        assert position.floor_id == 0


class TestUpstreamFailures:
    """Tests for rate limits, page errors and malformed pages."""

    def test_rate_limited_page_is_retried(self, engine, upstream, session, clock):
        """Test a 429 waits out Retry-After and refetches the same page."""
        upstream.add(range(1, 13))
        session.script(2, FakeResponse(429, headers={"Retry-After": "7"}))

        stats = engine.sync()

        assert session.pages_requested() == [None, 1, 2, 2, 3]
        assert 7.0 in clock.sleeps
        assert stats.created == 12
        assert not stats.failed

    def test_transient_error_is_retried(self, engine, upstream, session):
        upstream.add(range(1, 6))
        session.script(1, FakeResponse(503))

        stats = engine.sync()

        assert session.pages_requested() == [None, 1, 1]
        assert stats.created == 5

    def test_exhausted_retries_stop_the_scan(self, engine, upstream, session, positions):
        """Test a page that keeps failing ends the scan but not the pass."""
        upstream.add(range(1, 6))
        session.script(1, FakeResponse(503), FakeResponse(503), FakeResponse(503))

        stats = engine.sync()

        assert not stats.failed
        assert stats.page_errors == 1
        assert stats.created == 0
        assert positions.load("natu") is None

    def test_malformed_page_is_skipped(self, engine, upstream, session):
        upstream.add(range(1, 16))
        session.script(2, FakeResponse(200, raw="<html>"))

        stats = engine.sync()

        assert stats.malformed_pages == 1
        assert stats.created == 10
        assert not stats.failed

    def test_too_many_malformed_pages_abort(self, engine, upstream, session, order_store):
        """Test the pass fails once malformed pages exceed the threshold."""
        upstream.add(range(1, 21))
        for page in (1, 2, 3):
            session.script(page, FakeResponse(200, raw="<html>"))

        stats = engine.sync()

        assert stats.failed
        assert stats.error.startswith("PassAbortedError")
        assert stats.malformed_pages == 3
        assert order_store.count() == 0

    def test_authentication_failure(self, engine, upstream, session, positions):
        upstream.add(range(1, 6))
        session.script(1, FakeResponse(401))

        stats = engine.sync()

        assert stats.failed
        assert stats.error.startswith("AuthenticationFailedError")
        assert positions.load("natu") is None
        assert engine.state == SyncState.IDLE

    def test_connection_check_is_retried(self, engine, upstream, session):
        """Test a transient failure of the connection test is retried."""
        upstream.add(range(1, 6))
        session.script(None, FakeResponse(503))

        stats = engine.sync()

        assert session.pages_requested() == [None, None, 1]
        assert stats.created == 5
        assert not stats.failed

    def test_rate_limited_connection_check_waits(self, engine, upstream, session, clock):
        """Test a 429 on the connection test backs off instead of failing the pass."""
        upstream.add(range(1, 6))
        session.script(None, FakeResponse(429, headers={"Retry-After": "3"}))

        stats = engine.sync()

        assert session.pages_requested() == [None, None, 1]
        assert 3.0 in clock.sleeps
        assert stats.created == 5
        assert not stats.failed

    @pytest.mark.parametrize("status", [401, 403])
    def test_connection_check_rejected_token(self, engine, upstream, session, status):
        """Test a rejected token on the connection test is an authentication failure."""
        upstream.add(range(1, 6))
        session.script(None, FakeResponse(status))

        stats = engine.sync()

        assert stats.failed
        assert stats.error.startswith("AuthenticationFailedError")
        assert session.pages_requested() == [None]

    def test_unreachable_store_ends_pass_early(self, engine, upstream, session, positions):
        """Test a store that stays unreachable is retried a bounded number of times."""
        upstream.add(range(1, 6))
        session.script(None, FakeResponse(503), FakeResponse(503), FakeResponse(503))

        stats = engine.sync()

        assert session.pages_requested() == [None, None, None]
        assert stats.page_errors == 1
        assert not stats.failed
        assert stats.created == 0
        assert positions.load("natu") is None

    def test_invalid_pagination_metadata_is_skipped(self, engine, upstream, session):
        """Test a page with unusable next_page counts as malformed, not as a crash."""
        upstream.add(range(1, 16))
        session.script(2, FakeResponse(200, {
            "data": [order_record(i) for i in range(10, 5, -1)],
            "meta": {"next_page": "abc"},
        }))

        stats = engine.sync()

        assert stats.malformed_pages == 1
        assert stats.created == 10
        assert not stats.failed


class TestReconcile:
    """Tests for handing deltas to the persister."""

    def test_dry_run_persists_nothing(self, make_engine, sync_config, upstream, order_store, positions):
        engine = make_engine(replace(sync_config, dry_run=True))
        upstream.add(range(1, 6))

        stats = engine.sync()

        assert stats.emitted == 5
        assert stats.created == 0
        assert order_store.count() == 0
        assert positions.load("natu") is None

    def test_persist_failure_keeps_position(self, engine, upstream, order_store, positions, monkeypatch):
        """Test the position does not advance past orders that were not saved."""
        upstream.add(range(1, 6))
        real_upsert = order_store.upsert

        def flaky_upsert(store_id, snapshot):
            if snapshot.id == 3:
                raise RuntimeError("disk I/O error")
            return real_upsert(store_id, snapshot)

        monkeypatch.setattr(order_store, "upsert", flaky_upsert)

        stats = engine.sync()

        assert stats.errors == 1
        assert stats.created == 4
        assert positions.load("natu") is None

    def test_summary_is_recorded(self, engine, upstream, fake_redis):
        upstream.add(range(1, 6))

        stats = engine.sync()

        summary = load_last_summary(fake_redis, "natu")
        assert summary["created"] == 5
        assert summary["failed"] is False
        assert summary["position"]["lastPage"] == 1
        assert stats.state == SyncState.RECONCILE
        assert engine.state == SyncState.IDLE
