import logging
import os

from flask import Flask, jsonify, session
from flask_limiter import Limiter
from flask_limiter.errors import RateLimitExceeded
from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()

from .models import Organization  # noqa: E402
from .shared.cache import TTLCache  # noqa: E402
from .shared.ratelimit import rate_limit_key  # noqa: E402

TEMPLATE_CACHE_TTL_SECONDS = 60
CERTIFICATE_CACHE_TTL_SECONDS = 30

SECURITY_HEADERS = {
    "X-DNS-Prefetch-Control": "off",
    "X-Download-Options": "noopen",
    "X-Permitted-Cross-Domain-Policies": "none",
    "X-Content-Type-Options": "nosniff",
}


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def create_app(overrides: dict | None = None):
    app = Flask(__name__)
    app.secret_key = os.getenv("SECRET_KEY", "dev")

    DB_USER = os.getenv("DB_USER", "certifyhub")
    DB_PASSWORD = os.getenv("POSTGRES_PASSWORD", "postgres")
    DB_HOST = os.getenv("DB_HOST", "db")
    DB_NAME = os.getenv("DB_NAME", "certifyhub")
    DATABASE_URL = os.getenv(
        "DATABASE_URL",
        f"postgresql+psycopg2://{DB_USER}:{DB_PASSWORD}@{DB_HOST}/{DB_NAME}",
    )

    app.config["SQLALCHEMY_DATABASE_URI"] = DATABASE_URL
    app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False
    app.config["MAX_CONTENT_LENGTH"] = 25 * 1024 * 1024
    app.config["SITE_ROOT"] = os.getenv("SITE_ROOT", "/srv")
    app.config["PUBLIC_BASE_URL"] = os.getenv("PUBLIC_BASE_URL", "")
    app.config["BULK_MAX_ROWS"] = int(os.getenv("BULK_MAX_ROWS", "500"))
    app.config["RATE_LIMIT_ENABLED"] = _env_flag("RATE_LIMIT_ENABLED", True)
    app.config["RATELIMIT_STORAGE_URI"] = os.getenv("RATELIMIT_STORAGE_URI", "memory://")
    app.config["RATE_LIMITS"] = {
        "verify": "10 per minute",
        "bulk": "60 per minute",
        "default": "120 per minute",
    }
    app.config["BULK_SESSION_IDLE_SECONDS"] = int(os.getenv("BULK_SESSION_IDLE_SECONDS", "1800"))
    app.config["BULK_SESSIONS_PER_USER"] = int(os.getenv("BULK_SESSIONS_PER_USER", "5"))
    if overrides:
        app.config.update(overrides)

    db.init_app(app)

    from .services.certificates import CertificateService
    from .services.templates import TemplateService
    from .routes.bulk import BulkSessionRegistry

    app.extensions["template_service"] = TemplateService(
        TTLCache(TEMPLATE_CACHE_TTL_SECONDS)
    )
    app.extensions["certificate_service"] = CertificateService(
        TTLCache(CERTIFICATE_CACHE_TTL_SECONDS)
    )
    app.extensions["bulk_sessions"] = BulkSessionRegistry(
        idle_seconds=app.config["BULK_SESSION_IDLE_SECONDS"],
        max_per_user=app.config["BULK_SESSIONS_PER_USER"],
    )

    limiter = Limiter(
        key_func=rate_limit_key,
        app=app,
        default_limits=[app.config["RATE_LIMITS"]["default"]],
        strategy="fixed-window",
        storage_uri=app.config["RATELIMIT_STORAGE_URI"],
        headers_enabled=True,
        enabled=app.config["RATE_LIMIT_ENABLED"],
    )
    app.extensions["rate_limiter"] = limiter

    @app.errorhandler(RateLimitExceeded)
    def rate_limited(exc):
        app.logger.warning("[RATE-LIMIT] key=%s limit=%s", rate_limit_key(), exc.description)
        return jsonify({"error": "Too Many Requests"}), 429

    @app.after_request
    def add_security_headers(response):
        for header, value in SECURITY_HEADERS.items():
            response.headers[header] = value
        response.headers.pop("Server", None)
        response.headers.pop("X-Powered-By", None)
        return response

    @app.get("/health")
    def health():  # pragma: no cover - simple healthcheck
        return "OK", 200

    @app.get("/whoami")
    def whoami():
        org_id = session.get("organization_id")
        organization = db.session.get(Organization, org_id) if org_id else None
        return jsonify(
            {
                "user_id": session.get("user_id"),
                "organization_id": organization.id if organization else None,
                "can_issue": bool(organization and organization.is_approved),
            }
        )

    from .routes.bulk import bp as bulk_bp
    from .routes.certificates import bp as certificates_bp
    from .routes.certificates import verify_bp

    limiter.limit(app.config["RATE_LIMITS"]["bulk"])(bulk_bp)
    limiter.limit(app.config["RATE_LIMITS"]["verify"])(verify_bp)
    app.register_blueprint(bulk_bp)
    app.register_blueprint(certificates_bp)
    app.register_blueprint(verify_bp)

    app.logger.setLevel(logging.INFO)
    return app
