# backend/pharmaconnect/__init__.py
from flask import Flask, request

from .config import Config, OrderPolicy
from .extensions import db, migrate



def create_app(overrides: dict | None = None) -> Flask:
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(Config)
    if overrides:
        app.config.update(overrides)

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)

    # Import models so Alembic can discover metadata reliably
    from . import models  # noqa: F401

    # Order policy is read once here; services never consult the environment
    from .services.notification_service import NotificationDispatcher
    from .services.order_service import OrderLifecycle

    policy = OrderPolicy.from_mapping(app.config)
    app.extensions["order_lifecycle"] = OrderLifecycle(policy, NotificationDispatcher())

    # Register blueprints
    from .routes.system import system_bp
    from .routes.orders import orders_bp
    from .routes.returns import returns_bp
    from .routes.invoices import invoices_bp
    from .routes.ratings import ratings_bp
    from .routes.notifications import notifications_bp

    app.register_blueprint(system_bp)
    app.register_blueprint(orders_bp)
    app.register_blueprint(returns_bp)
    app.register_blueprint(invoices_bp)
    app.register_blueprint(ratings_bp)
    app.register_blueprint(notifications_bp)

    @app.after_request
    def add_cors_headers(response):
        origin = request.headers.get("Origin")
        allowed_origins = {
            "http://localhost:5173",
            "http://127.0.0.1:5173",
            "http://localhost:3000",
            "http://127.0.0.1:3000",
        }
        if origin in allowed_origins:
            response.headers["Access-Control-Allow-Origin"] = origin
            response.headers["Vary"] = "Origin"
            response.headers["Access-Control-Allow-Headers"] = "Authorization, Content-Type"
            response.headers["Access-Control-Allow-Methods"] = "GET,POST,PUT,DELETE,OPTIONS"
        return response

    # Register CLI commands
    from .cli import register_commands
    register_commands(app)

    return app
