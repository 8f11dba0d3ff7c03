# backend/backoffice/__init__.py
from flask import Flask, jsonify

from .config import Config
from .extensions import db, migrate



def create_app(config_overrides: dict | None = None) -> Flask:
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(Config)
    if config_overrides:
        app.config.update(config_overrides)

    app.logger.setLevel(app.config.get("LOG_LEVEL", "INFO"))

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)

    # Import models so Alembic can discover metadata reliably
    from . import models  # noqa: F401

    # Register blueprints
    from .routes.system import system_bp
    from .routes.inventory import inventory_bp
    from .routes.allocation import allocation_bp
    from .routes.orders import orders_bp
    from .routes.statements import statements_bp
    from .routes.mileage import mileage_bp

    app.register_blueprint(system_bp)
    app.register_blueprint(inventory_bp)
    app.register_blueprint(allocation_bp)
    app.register_blueprint(orders_bp)
    app.register_blueprint(statements_bp)
    app.register_blueprint(mileage_bp)

    @app.errorhandler(404)
    def not_found(_error):
        return jsonify({"error": "Not found"}), 404

    # Register CLI commands
    from .cli import register_commands
    register_commands(app)

    return app
