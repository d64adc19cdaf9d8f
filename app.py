"""Flask application factory for the campus complaints service."""
import os
from typing import Optional

import click
from flask import Flask, jsonify, request
from flask_wtf.csrf import CSRFError
from sqlalchemy import create_engine, text
from sqlalchemy.engine.url import make_url
from sqlalchemy.exc import OperationalError
from dotenv import load_dotenv
from utils.logger import init_logging
from utils.security import apply_security_headers, password_meets_policy
from extensions import csrf, db, migrate, login_manager, complaint_feed


def _error_payload(message: str, status: int):
    return jsonify({"error": message}), status


def register_error_handlers(app: Flask) -> None:
    @app.errorhandler(400)
    def bad_request(error):
        return _error_payload(getattr(error, "description", None) or "Bad request", 400)

    @app.errorhandler(CSRFError)
    def csrf_error(error):
        app.logger.warning("CSRF validation failed", extra={"path": request.path, "reason": error.description})
        return _error_payload(error.description or "CSRF validation failed", 400)

    @app.errorhandler(403)
    def forbidden(error):
        app.logger.warning("403 Forbidden", extra={"path": request.path, "method": request.method})
        return _error_payload("Forbidden", 403)

    @app.errorhandler(404)
    def not_found_error(error):
        app.logger.warning("404 Not Found", extra={"path": request.path, "method": request.method})
        return _error_payload("Not found", 404)

    @app.errorhandler(405)
    def method_not_allowed(error):
        return _error_payload("Method not allowed", 405)

    @app.errorhandler(500)
    def internal_error(error):
        app.logger.exception("500 Internal Server Error")
        return _error_payload("Internal server error", 500)


def ensure_default_roles_and_admin(app: Flask) -> None:
    """Ensure baseline roles exist and a default admin can log in without registering."""
    from models import ROLE_ADMIN, ROLE_STAFF, ROLE_STUDENT, Role, User  # Local import to avoid circular dependency

    default_roles = [
        (ROLE_STUDENT, "Students who file complaints"),
        (ROLE_STAFF, "Staff who triage and respond to complaints"),
        (ROLE_ADMIN, "Administrators with full complaint access"),
    ]

    role_cache: dict[str, Role] = {}
    for name, description in default_roles:
        role_cache[name] = Role.get_or_create(name, description=description)

    admin_email = (app.config.get("DEFAULT_ADMIN_EMAIL") or "").lower().strip()
    admin_password = app.config.get("DEFAULT_ADMIN_PASSWORD") or ""
    if not admin_email or not admin_password:
        return

    admin_role = role_cache[ROLE_ADMIN]
    admin_user = User.query.filter_by(email=admin_email).first()

    if admin_user:
        updates = False
        if admin_user.role != admin_role:
            admin_user.role = admin_role
            updates = True
        if not admin_user.is_active:
            admin_user.is_active = True
            updates = True
        if updates:
            db.session.add(admin_user)
            db.session.commit()
        return

    admin_user = User(
        full_name="System Administrator",
        email=admin_email,
        role=admin_role,
        is_active=True,
    )
    admin_user.set_password(admin_password)
    db.session.add(admin_user)
    db.session.commit()


def ensure_database_exists(database_uri: str) -> None:
    """Create the target database if it does not exist (PostgreSQL + SQLite support)."""
    url = make_url(database_uri)

    if url.drivername.startswith("sqlite"):
        # For SQLite just make sure the parent directory exists.
        if url.database and url.database != ":memory:":
            os.makedirs(os.path.dirname(url.database) or ".", exist_ok=True)
        return

    if url.drivername.startswith("postgres"):
        db_name = url.database
        admin_url = url.set(database=os.getenv("POSTGRES_DB_ADMIN", "postgres"))
        engine = create_engine(admin_url, isolation_level="AUTOCOMMIT")
        try:
            with engine.connect() as conn:
                exists = conn.execute(
                    text("SELECT 1 FROM pg_database WHERE datname = :name"), {"name": db_name}
                ).scalar()
                if not exists:
                    conn.execute(text(f'CREATE DATABASE "{db_name}"'))
        except OperationalError:
            # If we cannot connect/create, let the normal app startup fail loudly later.
            pass
        finally:
            engine.dispose()


def register_cli(app: Flask) -> None:
    @app.cli.command("create-staff")
    @click.argument("email")
    @click.argument("full_name")
    @click.argument("password")
    @click.option("--admin", is_flag=True, help="Grant the Admin role instead of Staff.")
    def create_staff(email, full_name, password, admin):
        """Create a staff account, or promote an existing account to staff."""
        from models import ROLE_ADMIN, ROLE_STAFF, Role, User

        ok, reason = password_meets_policy(password)
        if not ok:
            raise click.BadParameter(reason, param_hint="password")

        role = Role.get_or_create(ROLE_ADMIN if admin else ROLE_STAFF)
        normalized = email.lower().strip()
        user = User.query.filter_by(email=normalized).first()
        if user is None:
            user = User(full_name=full_name.strip(), email=normalized, role=role, is_active=True)
        else:
            user.role = role
            user.full_name = full_name.strip() or user.full_name
        user.set_password(password)
        db.session.add(user)
        db.session.commit()
        app.logger.info("Staff account provisioned", extra={"user_id": user.id, "role": role.name})
        click.echo(f"{user.email} is now {role.name}")


def create_app(config_name: Optional[str] = None, test_config: Optional[dict] = None) -> Flask:
    """Application factory with environment-aware configuration."""
    load_dotenv()

    app = Flask(__name__, instance_relative_config=True)

    # Resolve configuration
    from config import DevelopmentConfig, ProductionConfig, TestingConfig

    config_key = (config_name or os.getenv("FLASK_CONFIG") or os.getenv("FLASK_ENV") or "production").lower()
    config_map = {
        "development": DevelopmentConfig,
        "dev": DevelopmentConfig,
        "production": ProductionConfig,
        "prod": ProductionConfig,
        "testing": TestingConfig,
        "test": TestingConfig,
    }
    config_class = config_map.get(config_key, ProductionConfig)
    app.config.from_object(config_class())

    # Optional instance-specific overrides
    app.config.from_pyfile("config.py", silent=True)
    if test_config:
        app.config.update(test_config)

    ensure_database_exists(app.config["SQLALCHEMY_DATABASE_URI"])
    os.makedirs(app.instance_path, exist_ok=True)

    # Initialize logging early
    logger = init_logging(app)
    app.logger = logger

    # Initialize extensions
    csrf.init_app(app)
    db.init_app(app)
    migrate.init_app(app, db)
    complaint_feed.init_app(app)
    login_manager.init_app(app)
    login_manager.session_protection = "strong"

    @login_manager.user_loader
    def load_user(user_id):
        from models import User  # Local import to avoid circular dependency

        if not user_id:
            return None
        return db.session.get(User, str(user_id))

    @login_manager.unauthorized_handler
    def unauthorized():
        return _error_payload("Authentication required", 401)

    # Blueprints
    from routes import main_bp, auth_bp, complaints_bp

    app.register_blueprint(main_bp)
    app.register_blueprint(auth_bp, url_prefix="/auth")
    app.register_blueprint(complaints_bp)

    register_cli(app)

    # Error handlers
    register_error_handlers(app)

    @app.after_request
    def _after_request(response):
        return apply_security_headers(response, force_https=app.config.get("PREFERRED_URL_SCHEME") == "https")

    # Ensure tables exist so first run creates the database structure automatically.
    with app.app_context():
        db.create_all()
        ensure_default_roles_and_admin(app)

    return app
