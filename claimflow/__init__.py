"""Application factory and extension initialization for ClaimFlow."""
from __future__ import annotations

import logging
import os
from typing import Optional

from dotenv import load_dotenv
from flask import Flask
from flask_login import LoginManager
from flask_migrate import Migrate
from flask_sqlalchemy import SQLAlchemy
from flask_wtf import CSRFProtect

from config import config_by_name

# Global extension instances -------------------------------------------------

db = SQLAlchemy()
migrate = Migrate()
login_manager = LoginManager()
csrf = CSRFProtect()


def create_app(config_name: Optional[str] = None) -> Flask:
    """Flask application factory."""
    load_dotenv()

    app = Flask(__name__, instance_relative_config=True)

    config_name = config_name or os.getenv("FLASK_CONFIG", "development")
    config_class = config_by_name.get(config_name.lower())
    if config_class is None:
        raise ValueError(f"Unknown Flask configuration '{config_name}'")

    app.config.from_object(config_class)

    logging.basicConfig(
        level=app.config["LOG_LEVEL"],
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    # Ensure instance folder exists for SQLite DBs or uploads
    os.makedirs(app.instance_path, exist_ok=True)

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)
    login_manager.init_app(app)
    login_manager.login_view = "auth.login"
    csrf.init_app(app)

    # Import all models to ensure they are registered with SQLAlchemy
    from claimflow.models import (  # noqa: F401
        ApprovalRule,
        ApprovalStep,
        AuditLog,
        Company,
        Expense,
        ExpenseApproval,
        ExpenseLine,
        User,
    )

    # Routing workflow backed by the SQL stores
    from claimflow.services.expense_workflow import build_workflow

    app.extensions["claimflow.workflow"] = build_workflow(app.config)

    # Register blueprints
    from claimflow.admin import admin_bp
    from claimflow.auth import auth_bp
    from claimflow.employee import employee_bp
    from claimflow.manager import manager_bp

    app.register_blueprint(auth_bp)
    app.register_blueprint(admin_bp)
    app.register_blueprint(employee_bp)
    app.register_blueprint(manager_bp)

    @login_manager.user_loader
    def load_user(user_id: str) -> Optional[User]:
        user = db.session.get(User, int(user_id))
        if user is None or not user.is_active:
            return None
        return user

    @login_manager.unauthorized_handler
    def unauthorized():
        from claimflow.utils.helpers import json_response

        return json_response({"error": "Authentication required."}, status=401)

    @app.shell_context_processor
    def shell_context():
        return {"db": db, "User": User, "Expense": Expense}

    return app
