from flask import Flask, jsonify, current_app
from werkzeug.exceptions import HTTPException
import traceback

from countertop.config import MAX_UPLOAD_BYTES


def create_app(engine=None):
    app = Flask(__name__)
    # Two images plus form overhead; per-image limits are enforced by the blueprint
    app.config["MAX_CONTENT_LENGTH"] = 3 * MAX_UPLOAD_BYTES

    # --- Blueprints ---
    try:
        from countertop.services.texture_api import register_blueprint as register_texture_replace
        register_texture_replace(app, engine)
        print("[texture_replace] enabled")
    except Exception as e:
        print(f"[texture_replace] disabled: {e}")

    @app.route("/")
    def index():
        return jsonify(service="countertop-visualizer", endpoints=["/texture-replace/", "/texture-replace/health"])

    @app.errorhandler(400)
    @app.errorhandler(413)
    @app.errorhandler(415)
    @app.errorhandler(422)
    def _json_known(err):
        return jsonify(error=getattr(err, "description", str(err)), code=err.code), err.code

    @app.errorhandler(Exception)
    def _catch_all(e):
        if isinstance(e, HTTPException):
            orig = getattr(e, "original_exception", None)
            if orig is not None:
                current_app.logger.error("500 original: %r\n%s", orig, traceback.format_exc())
                return jsonify(error=f"{type(orig).__name__}: {orig}", code=500), 500
            return jsonify(error=e.description, code=e.code), e.code
        current_app.logger.error("UNHANDLED: %r\n%s", e, traceback.format_exc())
        return jsonify(error=f"{type(e).__name__}: {e}", code=500), 500

    return app
