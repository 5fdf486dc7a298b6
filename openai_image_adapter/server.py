"""MCP Server for OpenAI image generation.

This server exposes the image generation adapter to AI agents via MCP.
It provides tools for inspecting model capabilities, generating or editing
images, and saving the results to disk.
"""
from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

from fastmcp import FastMCP

from .adapter import AdapterOptions, OpenAIImageGenerationAdapter
from .core import (
    API_KEY_ENV,
    DEFAULT_BASE_URL,
    DEFAULT_MODEL_ID,
    MODEL_CAPABILITIES,
    _http_get_bytes,
    decode_data_url,
    get_api_key,
    get_model_capabilities,
    infer_extension,
    read_image_file,
    validate_api_key,
    write_image_to_file,
)

logger = logging.getLogger(__name__)

MODEL_ENV = "OPENAI_IMAGE_MODEL"
BASE_URL_ENV = "OPENAI_BASE_URL"
EXTRA_PARAMS_ENV = "OPENAI_IMAGE_EXTRA_PARAMS"

# Create the MCP server instance (logging configured at run-time by run_server.py)
mcp = FastMCP("OpenAI Image Generator")


class _ModelState:  # pylint: disable=too-few-public-methods
    """Internal state holder for the currently selected model."""

    __slots__ = ("_model_id",)

    def __init__(self) -> None:
        self._model_id: Optional[str] = None

    @property
    def current_model(self) -> str:
        """Get the currently selected model, or default from environment."""
        return self._model_id or os.getenv(MODEL_ENV) or DEFAULT_MODEL_ID

    @current_model.setter
    def current_model(self, value: Optional[str]) -> None:
        self._model_id = value


# Singleton state instance
_state = _ModelState()


def get_current_model() -> str:
    """Get the currently selected model ID."""
    return _state.current_model


def set_current_model(model_id: str) -> None:
    """Set the current model ID to use for image generation."""
    _state.current_model = model_id


def _base_url() -> str:
    return os.getenv(BASE_URL_ENV) or DEFAULT_BASE_URL


def _extra_params_from_env() -> Optional[Dict[str, Any]]:
    raw = os.getenv(EXTRA_PARAMS_ENV)
    if not raw:
        return None
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ValueError(f"{EXTRA_PARAMS_ENV} must be a JSON object: {exc}") from exc
    if not isinstance(parsed, dict):
        raise ValueError(f"{EXTRA_PARAMS_ENV} must be a JSON object.")
    return parsed


def _build_adapter(model: Optional[str] = None) -> OpenAIImageGenerationAdapter:
    return OpenAIImageGenerationAdapter(
        AdapterOptions(
            openai_api_key=get_api_key(),
            model=model or get_current_model(),
            extra_params=_extra_params_from_env(),
            base_url=_base_url(),
        )
    )


def _resolve_input_files(input_files: List[str], adapter: OpenAIImageGenerationAdapter) -> List[str]:
    """Pass URLs through; read local paths into data URLs the model accepts."""
    resolved = []
    for entry in input_files:
        if entry.startswith(("http://", "https://", "data:")):
            resolved.append(entry)
            continue
        resolved.append(read_image_file(entry, allowed_extensions=adapter.input_file_extension_supported()))
    return resolved


def _wrap_tool(fn):
    """Execute a tool handler and normalize common error handling."""
    try:
        return fn()
    except (ValueError, RuntimeError, OSError) as exc:  # noqa: PERF203 safe surface errors
        logger.debug("Tool call failed: %s", exc)
        return {"success": False, "error": str(exc)}


@mcp.tool()
def list_supported_models() -> dict:
    """List the image models this server knows capabilities for.

    Returns:
        A dictionary containing:
        - success: Boolean indicating if the operation succeeded
        - models: Model names with their output sizes, max image count and input file types
        - current_model: The currently selected model
    """
    models = [{"name": name, **caps.to_dict()} for name, caps in MODEL_CAPABILITIES.items()]
    return {
        "success": True,
        "models": models,
        "current_model": get_current_model(),
        "count": len(models),
    }


@mcp.tool()
def get_model_capabilities_info(model: Optional[str] = None) -> dict:
    """Get output sizes, max image count and accepted input file types for a model.

    Args:
        model: Model name. Defaults to the currently selected model.
    """
    def _run():
        name = model or get_current_model()
        caps = get_model_capabilities(name)
        if caps is None:
            raise ValueError(
                f"Unknown model '{name}'. Known models: {', '.join(MODEL_CAPABILITIES)}"
            )
        return {"success": True, "model": name, **caps.to_dict()}

    return _wrap_tool(_run)


@mcp.tool()
def set_image_model(model_name: str) -> dict:
    """Set the model to use for image generation.

    Args:
        model_name: The model ID to use (e.g., "gpt-image-1", "dall-e-3").
    """
    if not model_name or not isinstance(model_name, str) or not model_name.strip():
        return {
            "success": False,
            "error": "Model name is required and must be a string.",
        }

    name = model_name.strip()
    set_current_model(name)
    payload = {
        "success": True,
        "model": name,
        "message": f"Model set to '{name}'. Ready for image generation.",
    }
    if get_model_capabilities(name) is None:
        payload["warning"] = f"No capability data for '{name}'; size and count limits will not be checked."
    return payload


@mcp.tool()
def get_current_image_model() -> dict:
    """Get the currently selected image generation model."""
    current = get_current_model()
    return {
        "success": True,
        "model": current,
        "api_key_configured": get_api_key() is not None,
        "message": f"Current model: {current}",
    }


def _numbered_path(output_path: str, index: int, count: int) -> Path:
    """Target path for the ``index``-th of ``count`` images: ``out.png`` -> ``out_2.png``."""
    path = Path(output_path)
    if count <= 1:
        return path
    return path.with_name(f"{path.stem}_{index + 1}{path.suffix}")


def _save_image_url(image_url: str, path: Path) -> dict:
    """Write a data URL or downloaded http(s) URL to ``path``."""
    if image_url.startswith("data:"):
        buffer, mime_type = decode_data_url(image_url)
    elif image_url.startswith("http"):
        buffer, mime_type = _http_get_bytes(image_url)
    else:
        raise ValueError("image_url must be a data URL or an http(s) URL.")

    if not path.suffix:
        path = path.with_suffix(infer_extension(mime_type))

    saved_path = write_image_to_file(buffer, path)
    return {
        "saved_path": str(saved_path.absolute()),
        "mime_type": mime_type,
        "size_bytes": len(buffer),
    }


@mcp.tool()
def generate_images(
    prompt: str,
    input_files: Optional[List[str]] = None,
    size: Optional[str] = None,
    n: int = 1,
    model: Optional[str] = None,
    output_path: Optional[str] = None,
) -> dict:
    """Generate images with OpenAI, or edit reference images when input_files are given.

    Args:
        prompt: A detailed text description of the image (or of the edit to make).
        input_files: Optional reference images: http(s) URLs, data URLs, or local
                     file paths. Local files must have an extension the model accepts.
        size: Optional output size such as "1024x1024". Defaults to the model's first size.
        n: Number of images to generate.
        model: Optional model to use. If not provided, uses the currently selected model.
        output_path: Optional file path to save the images to instead of returning them.
                     With n > 1 the files are numbered (out_1.png, out_2.png, ...).
                     When the path has no extension, one is chosen from the image type.

    Returns:
        A dictionary containing:
        - success: Boolean indicating if generation succeeded
        - image_urls: Image URLs or data URLs (if successful and output_path is not set)
        - saved_paths: Absolute paths of the written files (if output_path is set)
        - count: Number of images produced
        - model_used: The model that was used
        - error: Error message (if failed)
    """
    def _run():
        adapter = _build_adapter(model)
        adapter.validate()
        files = _resolve_input_files(input_files or [], adapter)
        result = adapter.generate(prompt, input_files=files, size=size, n=n)
        if not result.ok:
            return {"success": False, "error": result.error, "model_used": adapter.model}

        payload = {
            "success": True,
            "count": len(result.image_urls),
            "model_used": adapter.model,
        }
        if not output_path:
            payload["image_urls"] = result.image_urls
            return payload

        count = len(result.image_urls)
        saved = [
            _save_image_url(url, _numbered_path(output_path, index, count))
            for index, url in enumerate(result.image_urls)
        ]
        payload["saved_paths"] = [item["saved_path"] for item in saved]
        payload["size_bytes"] = sum(item["size_bytes"] for item in saved)
        return payload

    return _wrap_tool(_run)


@mcp.tool()
def save_image_to_file(image_url: str, output_path: str) -> dict:
    """Save a generated image (data URL or http URL) to a file.

    Args:
        image_url: An entry of image_urls returned by generate_images.
        output_path: Where to write the image. When it has no extension, one
                     is chosen from the image MIME type. Parent directories are created.
    """
    return _wrap_tool(lambda: {"success": True, **_save_image_url(image_url, Path(output_path))})


@mcp.tool()
def check_api_status() -> dict:
    """Check if the OpenAI API key is configured and valid.

    Returns:
        A dictionary containing:
        - success: Boolean indicating if the check succeeded
        - api_key_configured: Whether an API key is set
        - api_key_valid: Whether the API key is valid (if configured)
        - total_models / image_models: Model counts visible to the key
        - current_model: The currently selected model
    """
    current = get_current_model()
    if get_api_key() is None:
        return {
            "success": True,
            "api_key_configured": False,
            "api_key_valid": False,
            "current_model": current,
            "message": f"No API key configured. Set the {API_KEY_ENV} environment variable.",
        }

    validation = validate_api_key(base_url=_base_url())
    if validation.get("valid"):
        return {
            "success": True,
            "api_key_configured": True,
            "api_key_valid": True,
            "total_models": validation.get("total_models", 0),
            "image_models": validation.get("image_models", 0),
            "current_model": current,
            "message": "API key is valid and working.",
        }

    return {
        "success": True,
        "api_key_configured": True,
        "api_key_valid": False,
        "current_model": current,
        "error": validation.get("error", "Unknown validation error"),
    }


__all__ = [name for name in globals() if not name.startswith("_")]
