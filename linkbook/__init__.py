from flask import Flask, jsonify

from linkbook.api import api_bp
from linkbook.auth import auth_bp
from linkbook.config import Config
from linkbook.extensions import db, login_manager, migrate
from linkbook.services.cache import TTLCache


def create_app(config_object=Config):
    app = Flask(__name__)
    app.config.from_object(config_object)
    app.logger.setLevel(app.config.get("LOG_LEVEL", "INFO"))

    db.init_app(app)
    migrate.init_app(app, db)
    login_manager.init_app(app)

    app.extensions["metadata_cache"] = TTLCache(
        app.config["METADATA_CACHE_TTL_SECONDS"]
    )
    app.extensions["tags_folders_cache"] = TTLCache(
        app.config["TAGS_CACHE_TTL_SECONDS"]
    )

    app.register_blueprint(auth_bp)
    app.register_blueprint(api_bp)

    @login_manager.unauthorized_handler
    def unauthorized():
        return jsonify({"error": "authentication required"}), 401

    @app.cli.command("init-db")
    def init_db_command():
        db.create_all()
        print(f"Initialized {app.config['APP_NAME']} database.")

    with app.app_context():
        db.create_all()

    return app
