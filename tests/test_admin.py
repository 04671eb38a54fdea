"""Tests for operator endpoints, CLI commands and the processed-event ledger.

Covers:
- Bearer token protection on /admin/*
- Event replay by id (bypasses the ledger)
- Configuration report
- flask replay-event / prune-processed-events / verify-webhook-config
"""

import json
from datetime import datetime, timedelta, timezone

from conftest import make_event, stripe_subscription
from subsync.extensions import db
from subsync.models.payment import PaymentRecord
from subsync.models.stripe_event import ProcessedEvent
from subsync.models.subscription import Subscription
from subsync.services import event_ledger
from subsync.services.events import WebhookEvent

AUTH = {"Authorization": "Bearer admin-token-test"}


class TestAdminAuth:

    def test_missing_token_returns_401(self, client, gateway):
        resp = client.get("/admin/webhooks/config")
        assert resp.status_code == 401

    def test_wrong_token_returns_403(self, client, gateway):
        resp = client.get(
            "/admin/webhooks/config", headers={"Authorization": "Bearer nope"}
        )
        assert resp.status_code == 403

    def test_disabled_without_configured_token(self, app, client, gateway):
        original = app.config["ADMIN_API_TOKEN"]
        app.config["ADMIN_API_TOKEN"] = None
        try:
            resp = client.get("/admin/webhooks/config", headers=AUTH)
        finally:
            app.config["ADMIN_API_TOKEN"] = original
        assert resp.status_code == 404


class TestWebhookConfig:

    def test_reports_configuration(self, client, gateway):
        resp = client.get("/admin/webhooks/config", headers=AUTH)

        assert resp.status_code == 200
        assert json.loads(resp.data) == {
            "webhook_secret_configured": True,
            "api_key_configured": True,
            "ok": True,
        }

    def test_reports_missing_api_key(self, client, gateway):
        gateway.is_configured = False
        resp = client.get("/admin/webhooks/config", headers=AUTH)
        data = json.loads(resp.data)
        assert data["api_key_configured"] is False
        assert data["ok"] is False


class TestReplay:

    def test_replay_refetches_and_processes(self, client, make_subscription, gateway):
        make_subscription(status="active")
        gateway.retrieve_event.return_value = make_event(
            "customer.subscription.paused", {"id": "sub_test_123"}, event_id="evt_replay"
        )
        gateway.retrieve_subscription.return_value = stripe_subscription(status="paused")

        resp = client.post("/admin/webhooks/evt_replay/replay", headers=AUTH)

        assert resp.status_code == 200
        assert json.loads(resp.data) == {"status": "Subscription paused successfully"}
        gateway.retrieve_event.assert_called_once_with("evt_replay")
        assert db.session.get(Subscription, "sub_test_123").status == "paused"

    def test_replay_ignores_ledger(self, client, make_subscription, gateway, db_session):
        """A replayed event runs even though it was processed before."""
        make_subscription(status="past_due")
        db_session.add(ProcessedEvent(
            stripe_event_id="evt_paid", event_type="invoice.payment_succeeded"
        ))
        db_session.commit()
        gateway.retrieve_event.return_value = make_event("invoice.payment_succeeded", {
            "id": "in_1", "subscription": "sub_test_123", "customer": "cus_test_123",
            "amount_paid": 999, "currency": "usd",
        }, event_id="evt_paid")

        resp = client.post("/admin/webhooks/evt_paid/replay", headers=AUTH)

        assert resp.status_code == 200
        assert PaymentRecord.query.count() == 1
        assert db.session.get(Subscription, "sub_test_123").status == "active"
        assert ProcessedEvent.query.filter_by(stripe_event_id="evt_paid").count() == 1

    def test_replay_unknown_event_returns_404(self, client, gateway):
        gateway.retrieve_event.return_value = None

        resp = client.post("/admin/webhooks/evt_missing/replay", headers=AUTH)

        assert resp.status_code == 404
        assert json.loads(resp.data)["kind"] == "event_not_found"


class TestCli:

    def test_replay_event_command(self, app, make_subscription, gateway):
        make_subscription(status="active")
        gateway.retrieve_event.return_value = make_event(
            "customer.subscription.paused", {"id": "sub_test_123"}, event_id="evt_cli"
        )
        gateway.retrieve_subscription.return_value = stripe_subscription(status="paused")

        result = app.test_cli_runner().invoke(args=["replay-event", "evt_cli"])

        assert result.exit_code == 0
        assert "Subscription paused successfully" in result.output

    def test_replay_event_command_unknown_event(self, app, gateway):
        gateway.retrieve_event.return_value = None
        result = app.test_cli_runner().invoke(args=["replay-event", "evt_nope"])
        assert result.exit_code != 0
        assert "not found" in result.output

    def test_verify_webhook_config_command(self, app, gateway):
        result = app.test_cli_runner().invoke(args=["verify-webhook-config"])
        assert result.exit_code == 0
        assert "Webhook secret present: True" in result.output

    def test_verify_webhook_config_fails_without_key(self, app, gateway):
        gateway.is_configured = False
        result = app.test_cli_runner().invoke(args=["verify-webhook-config"])
        assert result.exit_code != 0

    def test_prune_command(self, app, db_session):
        old = datetime.now(timezone.utc) - timedelta(days=45)
        db_session.add(ProcessedEvent(
            stripe_event_id="evt_old", event_type="invoice.upcoming", processed_at=old
        ))
        db_session.add(ProcessedEvent(stripe_event_id="evt_new", event_type="invoice.upcoming"))
        db_session.commit()

        result = app.test_cli_runner().invoke(args=["prune-processed-events"])

        assert result.exit_code == 0
        assert "Pruned 1 processed events" in result.output
        assert [e.stripe_event_id for e in ProcessedEvent.query.all()] == ["evt_new"]


class TestEventLedger:

    def test_record_once(self, app):
        event = WebhookEvent.from_envelope(make_event("invoice.upcoming", {"id": "in_1"}))

        assert event_ledger.record_processed(event) is True
        db.session.commit()
        assert event_ledger.record_processed(event) is False
        assert event_ledger.is_processed(event.id)

    def test_prune_respects_retention(self, app, db_session):
        now = datetime(2026, 6, 1, tzinfo=timezone.utc)
        for event_id, age in (("evt_a", 31), ("evt_b", 29), ("evt_c", 1)):
            db_session.add(ProcessedEvent(
                stripe_event_id=event_id,
                event_type="invoice.upcoming",
                processed_at=now - timedelta(days=age),
            ))
        db_session.commit()

        deleted = event_ledger.prune_processed_events(30, now=now)

        assert deleted == 1
        remaining = {e.stripe_event_id for e in ProcessedEvent.query.all()}
        assert remaining == {"evt_b", "evt_c"}
