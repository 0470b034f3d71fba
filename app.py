import os
import logging
from logging.handlers import RotatingFileHandler

import click
from flask import Flask, session, g, jsonify
from werkzeug.exceptions import HTTPException

from config import Config
from extensions import db, login_manager, init_extensions
from logger import LOG_FORMAT
from models import User
from rewards.errors import InternalError, internal_error_response
from rewards.security import rate_limiter
from utils import utcnow


HTTP_ERROR_CODES = {
    400: "invalid-argument",
    401: "unauthenticated",
    403: "permission-denied",
    404: "not-found",
    405: "method-not-allowed",
}


# --------------------------------------------------------------------------------------------------------
#       Application factory
# --------------------------------------------------------------------------------------------------------
def create_app(config_class=Config):
    app = Flask(__name__)
    app.config.from_object(config_class)

    if not app.debug and not app.testing:
        app.config.update(
            SESSION_COOKIE_SECURE=True,
            SESSION_COOKIE_HTTPONLY=True,
            REMEMBER_COOKIE_SECURE=True,
            REMEMBER_COOKIE_HTTPONLY=True,
        )

    setup_logging(app)

    if app.config["SQLALCHEMY_DATABASE_URI"].startswith("sqlite:///"):
        os.makedirs(os.path.join(os.path.abspath(os.path.dirname(__file__)), "instance"), exist_ok=True)

    # --------------------------------------------------------------------------------------------------------------------------
    # Initialize extensions
    # ----------------------------------------------------------------------------------------------------------------------------
    init_extensions(app)
    rate_limiter.init_app(app)

    register_blueprints(app)
    register_error_handlers(app)
    register_commands(app)

    @login_manager.user_loader
    def load_user(user_id):
        return db.session.get(User, int(user_id))

    # ----------------------
    # Global before_request
    # ----------------------
    @app.before_request
    def load_logged_in_user():
        g.user = None
        user_id = session.get("user_id")
        if user_id:
            g.user = db.session.get(User, user_id)

    @app.route("/healthz")
    def healthz():
        return {"status": "ok", "timestamp": utcnow().isoformat()}, 200

    return app


def setup_logging(app):
    """Rotating file log for the app and the rewards engine"""
    logs_dir = 'logs'
    if not os.path.exists(logs_dir):
        os.makedirs(logs_dir)

    file_handler = RotatingFileHandler('logs/app.log', maxBytes=10240, backupCount=10, encoding='utf-8')
    file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    file_handler.setLevel(logging.INFO)

    app.logger.handlers.clear()
    app.logger.addHandler(file_handler)
    app.logger.setLevel(logging.DEBUG if app.debug else logging.INFO)

    for name in ("rewards", "blueprints"):
        engine_logger = logging.getLogger(name)
        engine_logger.setLevel(logging.INFO)
        if not any(isinstance(h, RotatingFileHandler) for h in engine_logger.handlers):
            engine_logger.addHandler(file_handler)

    if app.debug:
        console_handler = logging.StreamHandler()
        console_handler.setLevel(logging.DEBUG)
        app.logger.addHandler(console_handler)


# ------------------------------------------------------------------------------------------------------------------------
# Register blueprints
# -----------------------------------------------------------------------------------------------------------------------
def register_blueprints(app):
    from activity import activity_bp
    from blueprints.activation import bp as activation_bp
    from blueprints.admin import admin_bp
    from blueprints.auth import bp as auth_bp
    from blueprints.payouts import bp as payouts_bp
    from blueprints.pools import bp as pools_bp
    from blueprints.profile import bp as profile_bp
    from blueprints.wallet import bp as wallet_bp
    from blueprints.withdrawals import bp as withdrawals_bp

    app.register_blueprint(auth_bp)
    app.register_blueprint(profile_bp)
    app.register_blueprint(activity_bp)
    app.register_blueprint(activation_bp)
    app.register_blueprint(wallet_bp)
    app.register_blueprint(pools_bp)
    app.register_blueprint(payouts_bp)
    app.register_blueprint(withdrawals_bp)
    app.register_blueprint(admin_bp)


# ------------------------------------------------------------------------------------------------------------------------
# Error handlers: business rejections are returned by the routes, only fatal errors land here
# ------------------------------------------------------------------------------------------------------------------------
def register_error_handlers(app):

    @app.errorhandler(HTTPException)
    def handle_http_error(e):
        return jsonify({
            "success": False,
            "error": e.description,
            "code": HTTP_ERROR_CODES.get(e.code, "internal" if e.code >= 500 else "invalid-argument"),
        }), e.code

    @app.errorhandler(InternalError)
    def handle_internal_error(e):
        db.session.rollback()
        app.logger.error(f"Internal error: {e} (cause: {e.cause!r})")
        return internal_error_response()

    @app.errorhandler(Exception)
    def handle_unexpected_error(e):
        db.session.rollback()
        app.logger.exception(f"Unhandled exception: {e}")
        return internal_error_response()


# ------------------------------------------------------------------------------------------------------------------------
# CLI: flask <command>
# ------------------------------------------------------------------------------------------------------------------------
def register_commands(app):

    @app.cli.command("seed-ranks")
    def seed_ranks():
        """Insert the default rank ladder."""
        from rewards.config import RankCatalog
        created = RankCatalog.seed_default_ranks()
        click.echo(f"Seeded {created} rank(s).")

    @app.cli.command("create-admin")
    @click.option("--username", required=True)
    @click.option("--email", required=True)
    @click.option("--password", prompt=True, hide_input=True, confirmation_prompt=True)
    def create_admin(username, email, password):
        """Create an admin account, or promote an existing user by email."""
        from rewards.accounts import RegistrationService

        user = User.query.filter_by(email=email.strip().lower()).first()
        if user:
            user.role = "admin"
            db.session.commit()
            click.echo(f"User (id={user.id}, email={user.email}) is now admin.")
            return

        result = RegistrationService.register(username, email, password, role="admin")
        if not result.ok:
            raise click.ClickException(result.rejection.message)
        click.echo(f"Created admin id={result.data['user']['id']}.")

    @app.cli.command("process-activations")
    @click.option("--limit", default=100, show_default=True)
    def process_activations(limit):
        """Re-deliver commissions for completed activations that were never processed."""
        from rewards.activation import ActivationProcessor
        stats = ActivationProcessor.sweep_unprocessed(limit)
        click.echo(f"found={stats['found']} processed={stats['processed']} failed={stats['failed']}")

    @app.cli.command("process-payouts")
    def process_payouts():
        """Promote due payouts to ready and expire stale ones."""
        from rewards.payouts import PayoutQueueHelper
        stats = PayoutQueueHelper.process_queue()
        click.echo(f"promoted={stats['promoted']} expired={stats['expired']}")

    @app.cli.command("refresh-referrals")
    def refresh_referrals():
        """Recount active direct referrals for every sponsor and restamp pool eligibility."""
        from rewards.pools import IncomePoolHelper
        from rewards.settings import PlatformSettingsHelper

        settings = PlatformSettingsHelper.load()
        sponsor_ids = [row[0] for row in db.session.query(User.sponsor_id)
                       .filter(User.sponsor_id.isnot(None)).distinct().all()]
        updated = 0
        for sponsor_id in sponsor_ids:
            if IncomePoolHelper.update_direct_referrals(sponsor_id, settings).ok:
                updated += 1
        click.echo(f"Refreshed {updated} sponsor(s).")


# ----------------------
# Create app instance
# ----------------------
app = create_app()

# ----------------------
# Local development
# ----------------------
if __name__ == "__main__":
    port = int(os.environ.get("PORT", 5000))
    debug_mode = app.config.get("DEBUG", False)
    app.run(debug=debug_mode, host="0.0.0.0", port=port)
