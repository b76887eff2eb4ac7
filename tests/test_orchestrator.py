"""Tests for the run orchestrator: sequencing, guard and failure mapping."""

from __future__ import annotations

import logging
import os
import time

import pytest
import requests

import relay_list_sync as rls
from tests.conftest import FEED_URL, FEED_V4_URL, FEED_V6_URL, LISTS_URL, FakeSession, make_response

ITEMS_URL = f"{LISTS_URL}/list-1/items"
EXISTING = {"result": [{"id": "list-1", "name": "icloud_private_relay", "kind": "ip", "description": ""}]}


def happy_routes(feed_body, feed_url=FEED_URL):
    return {
        ("GET", feed_url): make_response(200, feed_body),
        ("GET", LISTS_URL): make_response(200, EXISTING),
        ("PUT", ITEMS_URL): make_response(200, {"result": {"operation_id": "op-1"}}),
    }


class TestHappyPath:

    def test_end_to_end_request_body(self, config, logger):
        session = FakeSession(happy_routes(["1.2.3.4", "1.2.3.0/24", "999.1.1.1", "10.0.0.0/33"]))
        outcome = rls.run_sync(config, logger, session=session)

        assert outcome.state == rls.RunState.DONE
        assert outcome.succeeded
        assert outcome.item_count == 2
        assert outcome.list_id == "list-1"
        assert outcome.fetched_count == 4
        assert outcome.rejected_count == 2
        assert session.calls_to("PUT")[0][2]["json"] == [{"ip": "1.2.3.4"}, {"ip": "1.2.3.0/24"}]

    def test_steps_run_in_order(self, config, logger):
        session = FakeSession(happy_routes(["1.1.1.1"]))
        rls.run_sync(config, logger, session=session)
        assert [(m, u) for m, u, _ in session.calls] == [
            ("GET", FEED_URL),
            ("GET", LISTS_URL),
            ("PUT", ITEMS_URL),
        ]

    def test_created_list_id_is_used_for_reconciliation(self, config, logger):
        new_items_url = f"{LISTS_URL}/new-9/items"
        session = FakeSession({
            ("GET", FEED_URL): make_response(200, ["1.1.1.1"]),
            ("GET", LISTS_URL): make_response(200, {"result": []}),
            ("POST", LISTS_URL): make_response(200, {"result": {"id": "new-9"}}),
            ("PUT", new_items_url): make_response(200, {"result": {}}),
        })
        outcome = rls.run_sync(config, logger, session=session)

        assert outcome.state == rls.RunState.DONE
        assert outcome.list_id == "new-9"
        assert len(session.calls_to("POST")) == 1
        assert len(session.calls_to("PUT", new_items_url)) == 1

    def test_dual_stack_preserves_v4_then_v6_order(self, dual_config, logger):
        session = FakeSession({
            ("GET", FEED_V4_URL): make_response(200, ["1.1.1.1"]),
            ("GET", FEED_V6_URL): make_response(200, ["2001:db8::/32"]),
            ("GET", LISTS_URL): make_response(200, EXISTING),
            ("PUT", ITEMS_URL): make_response(200, {"result": {}}),
        })
        outcome = rls.run_sync(dual_config, logger, session=session)

        assert outcome.state == rls.RunState.DONE
        assert session.calls_to("PUT")[0][2]["json"] == [{"ip": "1.1.1.1"}, {"ip": "2001:db8::/32"}]

    def test_single_family_rejects_ipv6_by_default(self, config, logger):
        session = FakeSession(happy_routes(["1.1.1.1", "2001:db8::/32"]))
        outcome = rls.run_sync(config, logger, session=session)
        assert outcome.item_count == 1
        assert outcome.rejected == {"2001:db8::/32": 1}

    def test_single_family_accepts_ipv6_when_allowed(self, config, logger):
        config.allow_ipv6 = True
        session = FakeSession(happy_routes(["1.1.1.1", "2001:db8::/32"]))
        outcome = rls.run_sync(config, logger, session=session)
        assert outcome.item_count == 2


class TestEmptyGuard:

    @pytest.mark.parametrize("feed", [[], ["999.1.1.1", "not-an-ip", None]])
    def test_empty_validated_set_touches_nothing(self, config, logger, feed):
        session = FakeSession(happy_routes(feed))
        outcome = rls.run_sync(config, logger, session=session)

        assert outcome.state == rls.RunState.ABORTED_EMPTY
        assert not outcome.succeeded
        assert isinstance(outcome.error, rls.EmptyValidatedSetError)
        assert [u for _, u, _ in session.calls] == [FEED_URL]


class TestFailures:

    def test_fetch_failure_ends_run(self, config, logger, caplog):
        session = FakeSession({("GET", FEED_URL): make_response(503)})
        with caplog.at_level(logging.ERROR, logger=logger.name):
            outcome = rls.run_sync(config, logger, session=session)

        assert outcome.state == rls.RunState.FAILED
        assert isinstance(outcome.error, rls.FetchError)
        assert len(session.calls) == 1
        assert any(record.exc_info for record in caplog.records)

    def test_lookup_failure_skips_reconcile(self, config, logger):
        routes = happy_routes(["1.1.1.1"])
        routes[("GET", LISTS_URL)] = make_response(401, {"errors": [{"code": 10000}]})
        session = FakeSession(routes)
        outcome = rls.run_sync(config, logger, session=session)

        assert outcome.state == rls.RunState.FAILED
        assert isinstance(outcome.error, rls.ListLookupError)
        assert session.calls_to("PUT") == []

    def test_create_failure(self, config, logger):
        session = FakeSession({
            ("GET", FEED_URL): make_response(200, ["1.1.1.1"]),
            ("GET", LISTS_URL): make_response(200, {"result": []}),
            ("POST", LISTS_URL): make_response(400, {"errors": [{"code": 10021}]}),
        })
        outcome = rls.run_sync(config, logger, session=session)
        assert isinstance(outcome.error, rls.ListCreateError)
        assert session.calls_to("PUT") == []

    def test_update_failure(self, config, logger):
        routes = happy_routes(["1.1.1.1"])
        routes[("PUT", ITEMS_URL)] = make_response(400, {"errors": [{"code": 10001}]})
        outcome = rls.run_sync(config, logger, session=FakeSession(routes))

        assert outcome.state == rls.RunState.FAILED
        assert isinstance(outcome.error, rls.ListUpdateError)
        assert outcome.list_id == "list-1"
        assert outcome.item_count == 0

    def test_unexpected_exception_is_contained(self, config, logger):
        routes = happy_routes(["1.1.1.1"])
        routes[("GET", LISTS_URL)] = RuntimeError("bug")
        outcome = rls.run_sync(config, logger, session=FakeSession(routes))
        assert outcome.state == rls.RunState.FAILED
        assert isinstance(outcome.error, RuntimeError)


class TestDryRun:

    def test_dry_run_never_calls_the_api(self, config, logger):
        config.dry_run = True
        session = FakeSession(happy_routes(["1.1.1.1", "2.2.2.2"]))
        outcome = rls.run_sync(config, logger, session=session)

        assert outcome.state == rls.RunState.SKIPPED_DRY_RUN
        assert outcome.succeeded
        assert outcome.validated_count == 2
        assert [u for _, u, _ in session.calls] == [FEED_URL]


class TestRunLock:

    def test_held_lock_skips_the_run(self, config, logger, tmp_path):
        lock_path = tmp_path / "sync.lock"
        lock_path.write_text("12345")
        config.lock_file = str(lock_path)
        session = FakeSession(happy_routes(["1.1.1.1"]))

        outcome = rls.run_sync(config, logger, session=session)

        assert outcome.state == rls.RunState.SKIPPED_LOCKED
        assert session.calls == []
        assert lock_path.exists()

    def test_lock_is_released_after_run(self, config, logger, tmp_path):
        lock_path = tmp_path / "sync.lock"
        config.lock_file = str(lock_path)
        outcome = rls.run_sync(config, logger, session=FakeSession(happy_routes(["1.1.1.1"])))

        assert outcome.state == rls.RunState.DONE
        assert not lock_path.exists()

    def test_stale_lock_is_replaced(self, config, logger, tmp_path):
        lock_path = tmp_path / "sync.lock"
        lock_path.write_text("12345")
        old = time.time() - 7 * 3600
        os.utime(lock_path, (old, old))
        config.lock_file = str(lock_path)

        outcome = rls.run_sync(config, logger, session=FakeSession(happy_routes(["1.1.1.1"])))

        assert outcome.state == rls.RunState.DONE
        assert not lock_path.exists()

    def test_recent_lock_is_not_stale(self, logger, tmp_path):
        lock_path = tmp_path / "sync.lock"
        lock_path.write_text("12345")
        old = time.time() - 5 * 3600
        os.utime(lock_path, (old, old))

        with pytest.raises(rls.LockHeldError):
            rls.RunLock(str(lock_path), logger=logger).acquire()
        assert lock_path.read_text() == "12345"

    def test_lock_is_released_after_failure(self, config, logger, tmp_path):
        lock_path = tmp_path / "sync.lock"
        config.lock_file = str(lock_path)
        session = FakeSession({("GET", FEED_URL): requests.ConnectionError("down")})
        outcome = rls.run_sync(config, logger, session=session)

        assert outcome.state == rls.RunState.FAILED
        assert not lock_path.exists()


class TestWebhook:

    def test_generic_webhook_reports_outcome(self, config, logger):
        config.webhook_url = "https://hooks.example.test/sync"
        routes = happy_routes(["1.1.1.1"])
        routes[("POST", config.webhook_url)] = make_response(204)
        session = FakeSession(routes)

        rls.run_sync(config, logger, session=session)

        payload = session.calls_to("POST", config.webhook_url)[0][2]["json"]
        assert payload["event"] == "relay_list_sync_complete"
        assert payload["state"] == "done"
        assert payload["item_count"] == 1
        assert payload["error"] is None

    def test_webhook_failure_does_not_change_outcome(self, config, logger):
        config.webhook_url = "https://hooks.example.test/sync"
        routes = happy_routes(["1.1.1.1"])
        routes[("POST", config.webhook_url)] = requests.ConnectionError("nope")
        outcome = rls.run_sync(config, logger, session=FakeSession(routes))
        assert outcome.state == rls.RunState.DONE

    def test_slack_and_discord_formats(self, config):
        outcome = rls.SyncOutcome(state=rls.RunState.FAILED, error=rls.FetchError("Failed to fetch ip feed (503)"))
        slack = rls._format_slack_webhook(config, outcome)
        discord = rls._format_discord_webhook(config, outcome)

        assert ":warning:" in slack["text"]
        assert "503" in slack["text"]
        fields = {f["name"]: f["value"] for f in discord["embeds"][0]["fields"]}
        assert fields["State"] == "failed"
        assert "503" in fields["Error"]


class TestRejectedLogging:

    def test_rejected_entries_logged_up_to_twenty(self, config, logger, caplog):
        bad = [f"bad-{i}" for i in range(25)]
        session = FakeSession(happy_routes(["1.1.1.1"] + bad))
        with caplog.at_level(logging.DEBUG, logger=logger.name):
            outcome = rls.run_sync(config, logger, session=session)

        rejected_lines = [r.getMessage() for r in caplog.records if r.getMessage().startswith("Rejected entry")]
        assert outcome.rejected_count == 25
        assert len(rejected_lines) == 20
        assert rejected_lines[0] == 'Rejected entry "bad-0" (×1)'
        assert not any('"bad-20"' in line for line in rejected_lines)
        assert "25 entries rejected by validation" in caplog.text
