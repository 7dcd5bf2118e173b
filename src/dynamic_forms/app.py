from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Mapping
from typing import Any

from flask import Flask, jsonify, request
from werkzeug.exceptions import BadRequest, HTTPException

from .config import ConfigurationError, CustomFnConfig, validate_form_config
from .form import DynamicForm
from .http_conditions import DEFAULT_HTTP_TIMEOUT_SECONDS

DEFAULT_SETTLE_TIMEOUT_SECONDS = 10.0


def _configure_observability(app: Flask, app_name: str) -> None:
    app.config["APP_NAME"] = app_name
    level_name = os.environ.get("APP_LOG_LEVEL", "INFO").upper()
    level = getattr(logging, level_name, logging.INFO)
    app.logger.setLevel(level)
    logging.getLogger("dynamic_forms").setLevel(level)


def _is_api_request() -> bool:
    return request.path.startswith("/api/")


def _configure_error_handlers(app: Flask) -> None:
    @app.errorhandler(ConfigurationError)
    def handle_configuration_error(error: ConfigurationError) -> Any:
        app.logger.info(
            "config_rejected",
            extra={"path": request.path, "issue_count": len(error.issues), "kinds": error.kinds},
        )
        return jsonify({"error": "invalid form config", "issues": [issue.to_dict() for issue in error.issues]}), 422

    @app.errorhandler(BadRequest)
    def handle_bad_request(error: BadRequest) -> Any:
        app.logger.warning("bad_request", extra={"path": request.path, "method": request.method, "error": str(error)})
        if _is_api_request():
            return jsonify({"error": "invalid request payload"}), 400
        return error

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


def _float_env(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    return float(raw)


async def _evaluate_form(
    config: Mapping[str, Any],
    value: Mapping[str, Any],
    *,
    custom_fn_config: CustomFnConfig | None,
    settle: bool,
    http_timeout: float,
    settle_timeout: float,
) -> dict[str, Any]:
    form = DynamicForm(config, custom_fn_config=custom_fn_config, value=value, http_timeout=http_timeout)
    try:
        if settle:
            await form.settle(timeout=settle_timeout)
        return {"valid": form.valid, "pending": form.pending, "fields": form.snapshot()}
    finally:
        await form.aclose()


def create_forms_app(custom_fn_config: CustomFnConfig | Mapping[str, Any] | None = None) -> Flask:
    """Service that validates form configs and evaluates form state for a value."""
    app = Flask(__name__)
    _configure_observability(app, "forms")
    _configure_error_handlers(app)
    app.config["HTTP_TIMEOUT"] = _float_env("DYNAMIC_FORMS_HTTP_TIMEOUT", DEFAULT_HTTP_TIMEOUT_SECONDS)
    app.config["SETTLE_TIMEOUT"] = _float_env("DYNAMIC_FORMS_SETTLE_TIMEOUT", DEFAULT_SETTLE_TIMEOUT_SECONDS)
    app.config["CUSTOM_FN_CONFIG"] = custom_fn_config

    @app.get("/healthz")
    def healthz() -> Any:
        return jsonify({"status": "ok", "app": app.config["APP_NAME"]})

    @app.post("/api/validate-config")
    def validate_config() -> Any:
        body = _json_body()
        config = body.get("config", body)
        if not isinstance(config, dict):
            return jsonify({"error": "config must be an object"}), 400
        issues = validate_form_config(config, app.config["CUSTOM_FN_CONFIG"])
        return jsonify({"valid": not issues, "issues": [issue.to_dict() for issue in issues]})

    @app.post("/api/evaluate")
    def evaluate() -> Any:
        body = _json_body()
        config = body.get("config")
        value = body.get("value") or {}
        if not isinstance(config, dict):
            return jsonify({"error": "config must be an object"}), 400
        if not isinstance(value, dict):
            return jsonify({"error": "value must be an object"}), 400

        try:
            result = asyncio.run(
                _evaluate_form(
                    config,
                    value,
                    custom_fn_config=app.config["CUSTOM_FN_CONFIG"],
                    settle=bool(body.get("settle", True)),
                    http_timeout=app.config["HTTP_TIMEOUT"],
                    settle_timeout=app.config["SETTLE_TIMEOUT"],
                )
            )
        except asyncio.TimeoutError:
            return jsonify({"error": "form did not settle in time"}), 504
        app.logger.info(
            "form_evaluated",
            extra={"field_count": len(result["fields"]), "valid": result["valid"], "pending": result["pending"]},
        )
        return jsonify(result)

    return app
