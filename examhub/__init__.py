from flask import Flask, jsonify
from flask_sqlalchemy import SQLAlchemy
from flask_migrate import Migrate
from flask_login import LoginManager
from pathlib import Path
from sqlalchemy.engine import make_url
from sqlalchemy.exc import ArgumentError

db = SQLAlchemy()
migrate = Migrate()
login_manager = LoginManager()

from .config import Config
from .db_maintenance import ensure_database_schema
from .errors import AuthenticationError
from .logging_config import configure_logging


def create_app(config_class: type[Config] | None = None) -> Flask:
    app = Flask(__name__)
    config = config_class or Config
    app.config.from_object(config)
    app.json.sort_keys = False

    Path(app.instance_path).mkdir(parents=True, exist_ok=True)

    db_uri = app.config.get("SQLALCHEMY_DATABASE_URI")
    if db_uri:
        try:
            url = make_url(db_uri)
        except ArgumentError:
            url = None
        if url and url.drivername == "sqlite" and url.database and url.database != ":memory:":
            db_path = Path(url.database)
            if not db_path.is_absolute():
                db_path = Path(app.root_path) / db_path
            db_path.parent.mkdir(parents=True, exist_ok=True)

    configure_logging(app)

    db.init_app(app)
    migrate.init_app(app, db)
    login_manager.init_app(app)

    from .auth import TokenService, bearer_token, get_token_service
    from .models import User
    from .services.session_guard import build_session_guard

    app.extensions["token_service"] = TokenService(
        app.config["SECRET_KEY"],
        ttl_minutes=app.config["TOKEN_TTL_MINUTES"],
        refresh_ttl_minutes=app.config["REFRESH_TOKEN_TTL_MINUTES"],
    )
    app.extensions["session_guard"] = build_session_guard(app)

    @login_manager.request_loader
    def load_user_from_request(_request) -> User | None:
        token = bearer_token()
        if not token:
            return None
        try:
            claims = get_token_service().decode(token)
        except AuthenticationError:
            return None
        user = db.session.get(User, claims.user_id)
        if not user or not user.is_active or claims.version != user.token_version:
            return None
        return user

    @login_manager.unauthorized_handler
    def unauthorized():
        raise AuthenticationError("Authentication token required.")

    from .api import api_bp

    app.register_blueprint(api_bp)

    @app.get("/health")
    def health():
        guard = app.extensions["session_guard"]
        return jsonify({"status": "ok", "sessionGuard": "enabled" if guard.enabled else "disabled"})

    with app.app_context():
        ensure_database_schema(
            db.engine,
            app.logger,
            admin_email=app.config.get("ADMIN_EMAIL"),
            admin_password=app.config.get("ADMIN_PASSWORD"),
        )

    return app
