import base64
import binascii
import time

from flask import Blueprint, request, abort, jsonify, current_app

from countertop.config import MAX_UPLOAD_BYTES
from countertop.cv.errors import InvalidImageError, TextureReplacementError
from countertop.services.texture_replacement import (
    TextureReplacementOptions,
    create_default_engine,
)

bp = Blueprint("texture_replace", __name__, url_prefix="/texture-replace")

EXTENSION_KEY = "texture_replace"
MAX_BYTES = MAX_UPLOAD_BYTES
MIME_TYPES = {"JPEG": "image/jpeg", "PNG": "image/png"}
TRUE_VALUES = ("1", "true", "yes", "on")


def _read_image(field: str) -> bytes:
    """Image bytes from a multipart file or a base64 data URL form field."""
    upload = request.files.get(field)
    if upload is not None:
        data = upload.read(MAX_BYTES + 1)
        if len(data) > MAX_BYTES:
            abort(413, f"{field} too large: > {MAX_BYTES}")
        return data

    value = request.form.get(field)
    if not value:
        abort(400, f"{field} is required")

    _, _, payload = value.partition(",")
    if not payload:
        abort(400, f"{field}: invalid data URL format")
    # base64 inflates by 4/3
    if len(payload) * 3 // 4 > MAX_BYTES:
        abort(413, f"{field} too large: > {MAX_BYTES}")
    try:
        return base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError):
        abort(400, f"{field}: invalid base64 payload")


def _parse_options(form) -> TextureReplacementOptions:
    defaults = TextureReplacementOptions()
    try:
        preserve = form.get("preserveLighting")
        return TextureReplacementOptions(
            feather_radius=int(form.get("featherRadius", defaults.feather_radius)),
            preserve_lighting=defaults.preserve_lighting if preserve is None else preserve.lower() in TRUE_VALUES,
            output_quality=int(form.get("outputQuality", defaults.output_quality)),
            max_output_size=int(form.get("maxOutputSize", defaults.max_output_size)),
            output_format=form.get("outputFormat", defaults.output_format),
        )
    except ValueError as e:
        abort(400, f"invalid options: {e}")


def _data_url(data: bytes, fmt: str) -> str:
    return f"data:{MIME_TYPES[fmt]};base64,{base64.b64encode(data).decode('ascii')}"


@bp.route("/", methods=["POST"])
def replace_countertop():
    """
    Replace the countertop in a kitchen photo with a material sample.

    POST /texture-replace/  (multipart/form-data)
        roomImage         file or data URL
        inspirationImage  file or data URL
        featherRadius, preserveLighting, outputQuality, maxOutputSize,
        outputFormat, debug   optional

    Returns:
    {
        "success": true,
        "image": "data:image/jpeg;base64,...",
        "metadata": {...},
        "quality": {"overall_score": 0.93, "breakdown": {...}, "recommendations": []},
        "processing_time": 1.2
    }
    """
    start_time = time.time()

    room_image = _read_image("roomImage")
    material_image = _read_image("inspirationImage")
    options = _parse_options(request.form)
    current_app.logger.info(
        f"Texture replacement request: room={len(room_image)}B material={len(material_image)}B"
    )

    engine = current_app.extensions[EXTENSION_KEY]
    try:
        result = engine.replace_texture(room_image, material_image, options)
    except InvalidImageError as e:
        current_app.logger.warning(f"Rejected image: {e}")
        abort(400, str(e))
    except TextureReplacementError as e:
        current_app.logger.error(f"Texture replacement failed: {e}")
        abort(500, str(e))

    quality = engine.assess_replacement_quality(result)
    metadata = result.metadata
    response = {
        "success": True,
        "image": _data_url(result.final_image, options.output_format),
        "metadata": {
            "segmentation_confidence": round(metadata.segmentation_confidence, 3),
            "perspective_confidence": round(metadata.perspective_confidence, 3),
            "lighting_confidence": round(metadata.lighting_confidence, 3),
            "processing_time_ms": metadata.processing_time_ms,
            "texture_scale": round(metadata.texture_scale, 3),
        },
        "quality": quality.to_dict(),
        "processing_time": round(time.time() - start_time, 2),
    }

    if request.form.get("debug", "").lower() in TRUE_VALUES:
        debug = result.debug_images
        response["debug_images"] = {
            name: _data_url(data, options.output_format) if data else None
            for name, data in (
                ("original_mask", debug.original_mask),
                ("processed_texture", debug.processed_texture),
                ("warped_texture", debug.warped_texture),
                ("lighting", debug.lighting),
                ("before_blending", debug.before_blending),
            )
        }

    current_app.logger.info(
        f"Texture replacement completed: overall={quality.overall_score:.3f} in {metadata.processing_time_ms}ms"
    )
    return jsonify(response)


@bp.route("/health", methods=["GET"])
def health_check():
    """Health check endpoint."""
    engine = current_app.extensions[EXTENSION_KEY]
    return jsonify({
        "status": "healthy",
        "segmentation_strategies": [s.name for s in engine.segmenter.strategies],
        "blender": engine.relighting_engine.blender.name,
        "max_upload_bytes": MAX_BYTES,
    })


# Register the blueprint
def register_blueprint(app, engine=None):
    """Register the texture replacement blueprint with the Flask app."""
    app.extensions[EXTENSION_KEY] = engine or create_default_engine()
    app.register_blueprint(bp)
