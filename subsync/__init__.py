import os
import logging

import click
from flask import Flask, jsonify

from subsync.config import config_by_name
from subsync.extensions import db, migrate, limiter


def create_app(config_name=None):
    """Application factory."""

    if config_name is None:
        config_name = os.environ.get("FLASK_ENV", "development")

    app = Flask(__name__)
    app.config.from_object(config_by_name[config_name])

    # --- Validate required env vars (skip in testing) ---
    if config_name != "testing":
        try:
            config_by_name[config_name].validate()
        except RuntimeError as e:
            app.logger.warning(f"Config validation: {e}")

    # --- Init extensions ---
    db.init_app(app)
    migrate.init_app(app, db)
    limiter.init_app(app)

    # --- Import models so Alembic can discover them ---
    with app.app_context():
        from subsync import models  # noqa: F401

    # --- Stripe gateway (injected into processors) ---
    from subsync.services.stripe_gateway import init_stripe_gateway
    init_stripe_gateway(app)

    # --- Register blueprints ---
    from subsync.blueprints.webhooks import webhooks_bp
    from subsync.blueprints.admin import admin_bp

    app.register_blueprint(webhooks_bp)
    app.register_blueprint(admin_bp)

    # --- Error handlers (JSON only, there are no pages) ---
    @app.errorhandler(401)
    def unauthorized(e):
        return jsonify({"error": "Unauthorized"}), 401

    @app.errorhandler(403)
    def forbidden(e):
        return jsonify({"error": "Forbidden"}), 403

    @app.errorhandler(404)
    def not_found(e):
        return jsonify({"error": "Not found"}), 404

    @app.errorhandler(429)
    def rate_limited(e):
        return jsonify({"error": "Too many requests"}), 429

    @app.errorhandler(500)
    def server_error(e):
        return jsonify({"error": "Internal server error"}), 500

    # --- CLI commands ---
    register_cli(app)

    # --- Logging ---
    if not app.debug:
        logging.basicConfig(level=logging.INFO)

    return app


def register_cli(app):
    """Register custom CLI commands with the Flask app."""

    @app.cli.command("replay-event")
    @click.argument("event_id")
    def replay_event(event_id):
        """Re-fetch a Stripe event by ID and process it again.

        Usage:
            flask replay-event evt_1234
        """
        from subsync.errors import WebhookError
        from subsync.services.stripe_gateway import get_stripe_gateway
        from subsync.services.webhook_handler import WebhookHandler

        handler = WebhookHandler(get_stripe_gateway(), app.config)
        try:
            outcome = handler.replay(event_id)
        except WebhookError as e:
            raise click.ClickException(e.message)

        click.echo(f"Replayed {event_id}: HTTP {outcome.status_code} {outcome.body}")
        if outcome.status_code != 200 or outcome.body.get("status") == "failed":
            raise click.ClickException(f"Replay of {event_id} did not complete.")

    @app.cli.command("prune-processed-events")
    @click.option("--days", type=int, default=None,
                  help="Retention window in days (default: PROCESSED_EVENT_RETENTION_DAYS).")
    def prune_processed_events(days):
        """Delete processed-event ledger rows older than the retention window.

        Usage:
            flask prune-processed-events
            flask prune-processed-events --days 7
        """
        from subsync.services.event_ledger import prune_processed_events as prune

        if days is None:
            days = app.config["PROCESSED_EVENT_RETENTION_DAYS"]
        deleted = prune(days)
        click.echo(f"Pruned {deleted} processed events older than {days} days.")

    @app.cli.command("verify-webhook-config")
    def verify_webhook_config():
        """Check that STRIPE_WEBHOOK_SECRET and STRIPE_SECRET_KEY are set.

        Exits non-zero when either is missing.
        """
        from subsync.services.stripe_gateway import get_stripe_gateway
        from subsync.services.webhook_handler import WebhookHandler

        report = WebhookHandler(get_stripe_gateway(), app.config).verify_configuration()

        api_key = app.config.get("STRIPE_SECRET_KEY") or ""
        key_mode = "Live" if api_key.startswith("sk_live_") else "Test"
        click.echo(f"Stripe key mode:        {key_mode}")
        click.echo(f"Webhook secret present: {report['webhook_secret_configured']}")
        click.echo(f"API key present:        {report['api_key_configured']}")
        if not report["ok"]:
            raise click.ClickException("Webhook configuration is incomplete.")
