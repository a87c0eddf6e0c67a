# Overview: Flask API routes for AI image generation.

# backend/edunexia/routes/ai.py
from flask import Blueprint, request, jsonify, current_app

from ..services.replicate_client import (
    ReplicateClient,
    ImageGenerationError,
    ReplicateNotConfiguredError,
)
from ..decorators import require_auth

ai_bp = Blueprint("ai", __name__, url_prefix="/api/ai")

MAX_PROMPT_LENGTH = 2000
MIN_DIMENSION = 128
MAX_DIMENSION = 1536


def _dimension(data: dict, key: str):
    value = data.get(key, 1024)
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"{key} must be an integer")
    if not MIN_DIMENSION <= value <= MAX_DIMENSION:
        raise ValueError(f"{key} must be between {MIN_DIMENSION} and {MAX_DIMENSION}")
    return value


@ai_bp.post("/generate-image")
@require_auth
def generate_image():
    """
    Generate an image from a text prompt.

    Request body:
    - prompt: str (required)
    - negative_prompt: str (optional)
    - width, height: int (optional, default 1024)

    Returns {"images": [url, ...]} with at least one URL.
    """
    data = request.get_json(silent=True) or {}
    prompt = data.get("prompt")
    if not isinstance(prompt, str) or not prompt.strip():
        return jsonify({"error": "prompt required"}), 400
    if len(prompt) > MAX_PROMPT_LENGTH:
        return jsonify({"error": f"prompt must be at most {MAX_PROMPT_LENGTH} characters"}), 400

    negative_prompt = data.get("negative_prompt")
    if negative_prompt is not None and not isinstance(negative_prompt, str):
        return jsonify({"error": "negative_prompt must be a string"}), 400

    try:
        width = _dimension(data, "width")
        height = _dimension(data, "height")
    except ValueError as e:
        return jsonify({"error": str(e)}), 400

    try:
        images = ReplicateClient.from_app().generate_image(
            prompt.strip(),
            negative_prompt=negative_prompt,
            width=width,
            height=height,
        )
    except ReplicateNotConfiguredError as e:
        return jsonify({"error": str(e)}), 503
    except ImageGenerationError as e:
        current_app.logger.warning("Image generation failed: %s", e)
        return jsonify({"error": str(e)}), 502

    return jsonify({"images": images})
