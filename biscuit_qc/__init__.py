import os
from pathlib import Path

from flask import Flask, current_app, jsonify, request, session
from supabase import create_client
from werkzeug.exceptions import HTTPException

from .auth.routes import auth_bp
from .main.routes import main_bp
from .records.routes import records_bp
from .storage import KeyValueStore
from .time_slots import LockWindowSettings


def create_app():
    app = Flask(__name__)
    app.secret_key = os.environ["SECRET_KEY"]

    supabase = create_client(
        os.environ["SUPABASE_URL"],
        os.environ["SUPABASE_SERVICE_KEY"],
    )
    app.config["SUPABASE"] = supabase
    app.config["SUPABASE_URL"] = os.environ["SUPABASE_URL"]

    store_path = os.environ.get("QC_STORE_PATH") or (
        Path(app.instance_path) / "qc_store.db"
    )
    store = KeyValueStore(store_path)
    app.config["STORE"] = store
    app.config["LOCK_WINDOW"] = LockWindowSettings(store)

    app.register_blueprint(auth_bp)
    app.register_blueprint(main_bp)
    app.register_blueprint(records_bp)

    @app.errorhandler(HTTPException)
    def json_api_errors(exc: HTTPException):
        # Browser routes keep werkzeug's HTML pages; the API speaks JSON.
        if not request.path.startswith("/api/"):
            return exc
        response = jsonify({"error": exc.name, "description": exc.description})
        response.status_code = exc.code or 500
        return response

    @app.context_processor
    def inject_user_context():
        username = session.get("username")
        return {
            "username": username,
            "user_role": session.get("role") or username,
            "user_id": session.get("user_id"),
        }

    return app


def get_supabase():
    return current_app.config["SUPABASE"]


def get_store() -> KeyValueStore:
    return current_app.config["STORE"]