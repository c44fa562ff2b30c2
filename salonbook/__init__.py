from flask import Flask
from flask_cors import CORS

from .config import Config
from .extensions import db
from .redis_client import init_redis
from .routes import register_routes


def create_app(config_object=None):
    app = Flask(__name__, instance_relative_config=True)

    app.config.from_object(config_object or Config)
    if config_object is None:
        app.config.from_envvar("APP_SETTINGS", silent=True)

    db.init_app(app)
    init_redis(app)

    # Booking widgets are embedded on tenant sites
    CORS(app,
         origins=app.config.get("CORS_ORIGINS", ["*"]),
         supports_credentials=True,
         allow_headers=["Content-Type", "Idempotency-Key"],
         methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]
    )

    register_routes(app)

    return app
