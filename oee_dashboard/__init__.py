import os

from flask import Flask, jsonify
from supabase import create_client

from .auth.routes import auth_bp
from .context import MetricsCache
from .errors import OEEAppError, TransientStoreError
from .main.routes import main_bp
from .permissions import AccessResolver
from .sharing.routes import sharing_bp


def create_app():
    app = Flask(__name__)
    app.secret_key = os.environ["SECRET_KEY"]

    supabase_url = os.environ["SUPABASE_URL"]
    service_key = os.environ["SUPABASE_SERVICE_KEY"]
    app.config["SUPABASE"] = create_client(supabase_url, service_key)
    app.config["SUPABASE_AUTH"] = create_client(
        supabase_url,
        os.environ.get("SUPABASE_ANON_KEY") or service_key,
    )
    app.config["SUPABASE_URL"] = supabase_url

    app.config["LOCAL_TIMEZONE"] = os.environ.get("LOCAL_TIMEZONE") or "UTC"
    app.config["DASHBOARD_LOCALE"] = os.environ.get("DASHBOARD_LOCALE") or "en"
    # Service loggers (oee_dashboard.*) are children of app.logger.
    app.logger.setLevel(os.environ.get("LOG_LEVEL", "INFO").upper())

    app.config["ACCESS_RESOLVER"] = AccessResolver()
    app.config["METRICS_CACHE"] = MetricsCache(
        max_entries=int(os.environ.get("METRICS_CACHE_SIZE") or 256)
    )

    app.register_blueprint(auth_bp)
    app.register_blueprint(main_bp)
    app.register_blueprint(sharing_bp)

    @app.errorhandler(OEEAppError)
    def handle_app_error(exc: OEEAppError):
        if isinstance(exc, TransientStoreError):
            app.logger.error("Data service failure: %s", exc.message)
        return jsonify(exc.to_response()), exc.status_code

    return app
