"""Flask application factory for Chunk Uploader."""

import atexit
import os

from flask import Flask

from chunk_uploader.config import get_package_version, get_settings
from chunk_uploader.services.engine_runner import EngineRunner


def create_app(runner: EngineRunner | None = None) -> Flask:
    """Create and configure the Flask application.

    Args:
        runner: Engine to expose; a new one is built from settings if omitted
    """
    app = Flask(__name__)

    # Load configuration
    settings = get_settings()
    app.config["SECRET_KEY"] = os.environ.get("SECRET_KEY", "dev-secret-key-change-in-production")

    # Store settings and the engine in app config for easy access
    app.config["SETTINGS"] = settings
    if runner is None:
        runner = EngineRunner(settings)
        atexit.register(runner.stop)
    app.config["ENGINE"] = runner.start()

    # Register blueprints
    from chunk_uploader.routes.logs import logs_bp
    from chunk_uploader.routes.upload import register_event_stream, upload_bp

    app.register_blueprint(upload_bp, url_prefix="/api/upload")
    app.register_blueprint(logs_bp, url_prefix="/api/logs")
    register_event_stream(runner.events)

    # Log application startup
    from chunk_uploader.services.log_service import get_log_service

    log = get_log_service()
    log.info(
        "app",
        "app_started",
        f"Application started (v{get_package_version()})",
        {"version": get_package_version(), "server_url": settings.server_url},
    )

    return app
