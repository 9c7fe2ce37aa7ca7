from __future__ import annotations

import logging
import os
from typing import Any

from flask import Flask, abort, jsonify, request
from werkzeug.exceptions import BadRequest, HTTPException

from .document import FlagDocumentError, from_document, to_document
from .editor import SaveRequest
from .projects import (
    InvalidProjectNameError,
    ProjectExistsError,
    ProjectNotFoundError,
    ProjectStore,
)
from .store import KeyValueStore, SqliteKeyValueStore

APP_NAME = "flag-editor"
DEFAULT_DB_PATH = "./flags.db"


def _configure_observability(app: Flask, app_name: str) -> None:
    app.config["APP_NAME"] = app_name
    level_name = os.environ.get("APP_LOG_LEVEL", "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)
    app.logger.setLevel(level)
    logging.getLogger("flag_editor").setLevel(level)


def _is_api_request() -> bool:
    return request.path.startswith("/api/")


def _configure_error_handlers(app: Flask) -> None:
    @app.errorhandler(BadRequest)
    def handle_bad_request(error: BadRequest) -> Any:
        app.logger.warning("bad_request", extra={"path": request.path, "method": request.method, "error": str(error)})
        if _is_api_request():
            return jsonify({"error": "invalid request payload"}), 400
        return error

    @app.errorhandler(FlagDocumentError)
    @app.errorhandler(InvalidProjectNameError)
    @app.errorhandler(ProjectExistsError)
    def handle_invalid_flags(error: ValueError) -> Any:
        app.logger.warning("bad_request", extra={"path": request.path, "method": request.method, "error": str(error)})
        return jsonify({"error": str(error)}), 400

    @app.errorhandler(ProjectNotFoundError)
    def handle_not_found(error: ProjectNotFoundError) -> Any:
        message = error.args[0] if error.args else "not found"
        app.logger.info("http_error", extra={"path": request.path, "method": request.method, "status_code": 404, "error": message})
        return jsonify({"error": message}), 404

    @app.errorhandler(HTTPException)
    def handle_http_error(error: HTTPException) -> Any:
        app.logger.warning(
            "http_error",
            extra={"path": request.path, "method": request.method, "status_code": error.code, "error": error.description},
        )
        if _is_api_request():
            return jsonify({"error": error.description}), error.code
        return error

    @app.errorhandler(Exception)
    def handle_unexpected_error(error: Exception) -> Any:
        app.logger.exception("unexpected_error", extra={"path": request.path, "method": request.method})
        if _is_api_request():
            return jsonify({"error": "internal server error"}), 500
        raise error


def _json_body() -> dict[str, Any]:
    body = request.get_json(force=True, silent=False)
    if not isinstance(body, dict):
        raise BadRequest("request body must be a JSON object")
    return body


def _projects(app: Flask) -> ProjectStore:
    return app.extensions["flag_editor.projects"]


def create_app(database_path: str | None = None, store: KeyValueStore | None = None) -> Flask:
    app = Flask(__name__)
    _configure_observability(app, APP_NAME)
    _configure_error_handlers(app)
    if store is None:
        app.config["DATABASE_PATH"] = database_path or os.environ.get("FLAG_EDITOR_DB_PATH", DEFAULT_DB_PATH)
        store = SqliteKeyValueStore(app.config["DATABASE_PATH"])
    app.extensions["flag_editor.projects"] = ProjectStore(store)

    @app.get("/health")
    def health() -> Any:
        return jsonify({"status": "ok", "app": app.config["APP_NAME"], "message": "Server is running"})

    @app.get("/ready")
    def ready() -> Any:
        _projects(app).list_projects()
        return jsonify({"status": "ready", "app": app.config["APP_NAME"], "message": "Server is ready to accept requests"})

    @app.get("/api/flags")
    def list_flag_files() -> Any:
        return jsonify({"files": _projects(app).list_projects()})

    @app.get("/api/flags/<name>")
    def get_flag_file(name: str) -> Any:
        return jsonify(_projects(app).get_project(name))

    @app.post("/api/flags")
    def create_flag_file() -> Any:
        body = _json_body()
        name = str(body.get("name", ""))
        content = _projects(app).create_project(name, body.get("flags") or {}, body.get("metadata"))
        return jsonify({"name": name.strip(), "content": content}), 201

    @app.put("/api/flags/<name>")
    def update_flag_file(name: str) -> Any:
        body = _json_body()
        if "flags" not in body:
            abort(400, description="flags is required")
        content = _projects(app).update_project(name, body["flags"], body.get("metadata"))
        return jsonify({"name": name, "content": content})

    @app.delete("/api/flags/<name>")
    def delete_flag_file(name: str) -> Any:
        _projects(app).delete_project(name)
        return "", 204

    @app.put("/api/flags/<name>/flags/<key>")
    def save_single_flag(name: str, key: str) -> Any:
        body = _json_body()
        if "flag" not in body:
            abort(400, description="flag is required")
        original_key = body.get("originalKey")
        # normalize through the codec so stored documents match what the editor emits
        document = to_document(from_document(body["flag"]))
        save = SaveRequest(key=key, document=document, original_key=str(original_key) if original_key else None)
        content = _projects(app).apply_save(name, save)
        return jsonify({"name": name, "content": content})

    @app.delete("/api/flags/<name>/flags/<key>")
    def delete_single_flag(name: str, key: str) -> Any:
        content = _projects(app).delete_flag(name, key)
        return jsonify({"name": name, "content": content})

    return app
