"""Core request/response logic for the OpenAI image generation adapter.

This module provides:
- Per-model capability tables (output sizes, batch limits, input file types)
- API key and .env handling
- Request construction for the generations (JSON) and edits (multipart) endpoints
- Response normalization into image URLs / data URLs, with MIME sniffing
- File I/O helpers used by the MCP server
"""
from __future__ import annotations

import base64
import binascii
import io
import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import requests
from PIL import Image

logger = logging.getLogger(__name__)

# Environment variable name for the OpenAI API key
API_KEY_ENV = "OPENAI_API_KEY"

# Look for .env in the project root (parent directory of this file's parent)
DOTENV_CANDIDATES = [
    Path(__file__).resolve().parents[1] / ".env",
    Path(__file__).resolve().parents[1] / ".env.local",
]

DEFAULT_BASE_URL = "https://api.openai.com/v1"
DEFAULT_MODEL_ID = "gpt-image-1"
DEFAULT_MIME_TYPE = "image/png"
FALLBACK_MIME_TYPE = "application/octet-stream"

# Strings longer than this are truncated in debug logs
LOG_VALUE_LIMIT = 100

GET_TIMEOUT = 30
DOWNLOAD_TIMEOUT = 60
POST_TIMEOUT = 120


@dataclass(frozen=True)
class ModelCapabilities:
    """What a single image model accepts and produces."""
    max_images: int
    output_sizes: Tuple[str, ...]
    input_extensions: Tuple[str, ...]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "max_images": self.max_images,
            "output_sizes": list(self.output_sizes),
            "default_size": self.output_sizes[0] if self.output_sizes else None,
            "input_extensions": list(self.input_extensions),
        }


_GPT_IMAGE_CAPABILITIES = ModelCapabilities(
    max_images=10,
    output_sizes=("1024x1024", "1536x1024", "1024x1536", "auto"),
    input_extensions=("png", "jpg", "jpeg"),
)

# First output size of each model is used when the caller does not pick one
MODEL_CAPABILITIES: Dict[str, ModelCapabilities] = {
    "gpt-image-1": _GPT_IMAGE_CAPABILITIES,
    "gpt-image-1-mini": _GPT_IMAGE_CAPABILITIES,
    "gpt-image-1.5": _GPT_IMAGE_CAPABILITIES,
    "dall-e-2": ModelCapabilities(
        max_images=10,
        output_sizes=("256x256", "512x512", "1024x1024"),
        input_extensions=("png",),
    ),
    "dall-e-3": ModelCapabilities(
        max_images=1,
        output_sizes=("1024x1024", "1792x1024", "1024x1792"),
        input_extensions=("png", "jpg", "jpeg"),
    ),
}

IMAGE_MODEL_PREFIXES = ("gpt-image", "dall-e")


class ProviderError(RuntimeError):
    """Raised when the image provider (or an input file host) fails a request."""

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


@dataclass
class GenerationResult:
    """Normalized outcome of a generate/edit call: image references or an error."""
    image_urls: List[str] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> Dict[str, Any]:
        """Wire shape expected by hosts: ``imageURLs`` on success, ``error`` otherwise."""
        if self.error is not None:
            return {"error": self.error}
        return {"imageURLs": list(self.image_urls)}


def _prime_dotenv_env() -> None:
    """Load environment variables from .env files for local development."""
    for env_file in DOTENV_CANDIDATES:
        try:
            if not env_file.exists():
                continue
            for raw_line in env_file.read_text().splitlines():
                line = raw_line.strip()
                if line.startswith("export "):
                    line = line[len("export "):].lstrip()
                if not line or line.startswith("#") or "=" not in line:
                    continue
                name, val = line.split("=", 1)
                name = name.strip()
                if not name or name in os.environ:
                    continue
                cleaned = val.strip().strip('"').strip("'")
                if cleaned:
                    os.environ[name] = cleaned
        except OSError:
            continue


_prime_dotenv_env()


def get_api_key(api_key: Optional[str] = None) -> Optional[str]:
    """Get the API key from parameter or environment. Returns None if not set."""
    key = api_key or os.getenv(API_KEY_ENV)
    if key and key.strip():
        return key.strip()
    return None


def require_api_key(api_key: Optional[str] = None) -> str:
    """Get the API key from parameter, environment, or raise an error."""
    key = get_api_key(api_key)
    if not key:
        raise ValueError("API Key is required")
    return key


def get_model_capabilities(model: Optional[str]) -> Optional[ModelCapabilities]:
    """Look up the capability row for ``model``; None for models we know nothing about."""
    if not model:
        return None
    return MODEL_CAPABILITIES.get(model)


def output_images_max_count_supported(model: Optional[str]) -> Optional[int]:
    """Largest ``n`` the model accepts, or None when no limit is known."""
    caps = get_model_capabilities(model)
    return caps.max_images if caps else None


def output_dimensions_supported(model: Optional[str]) -> List[str]:
    caps = get_model_capabilities(model)
    return list(caps.output_sizes) if caps else []


def input_file_extension_supported(model: Optional[str]) -> List[str]:
    caps = get_model_capabilities(model)
    return list(caps.input_extensions) if caps else []


def build_url(path: str, *, base_url: str = DEFAULT_BASE_URL) -> str:
    """Build an API endpoint URL, e.g. ``images/generations``."""
    return f"{base_url.rstrip('/')}/{path.lstrip('/')}"


def _validate_prompt(prompt: Any) -> None:
    if not prompt or not isinstance(prompt, str):
        raise ValueError("Prompt is required and must be a string.")


def build_generation_body(
    prompt: str,
    *,
    model: str,
    n: int = 1,
    size: Optional[str] = None,
    extra_params: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Build the JSON body for the generations endpoint.

    Extra params are applied last, so they can override any of the base keys.
    """
    _validate_prompt(prompt)

    body: Dict[str, Any] = {"prompt": prompt, "model": model, "n": n}
    if size:
        body["size"] = size
    body.update(extra_params or {})
    return body


def _form_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value)
    return str(value)


def build_edit_form(
    prompt: str,
    *,
    model: str,
    n: int = 1,
    size: Optional[str] = None,
    extra_params: Optional[Dict[str, Any]] = None,
) -> List[Tuple[str, str]]:
    """Build the text fields of the multipart body for the edits endpoint."""
    _validate_prompt(prompt)

    fields: List[Tuple[str, str]] = [
        ("prompt", prompt),
        ("model", model),
        ("n", str(n)),
    ]
    if size:
        fields.append(("size", size))
    for key, value in (extra_params or {}).items():
        fields.append((key, _form_value(value)))
    return fields


def decode_data_url(url: str) -> Tuple[bytes, str]:
    """Split a ``data:`` URL into raw bytes and its declared MIME type."""
    if not url.startswith("data:"):
        raise ValueError(f"Not a data URL: {strip_large_values(url)}")
    header, sep, payload = url.partition(",")
    if not sep:
        raise ValueError("Malformed data URL: missing ',' separator.")
    mime_type = header[len("data:"):].split(";", 1)[0].strip() or DEFAULT_MIME_TYPE
    try:
        return base64.b64decode(payload), mime_type
    except (binascii.Error, ValueError) as exc:
        raise ValueError(f"Unable to decode data URL: {exc}") from exc


def load_input_file(file_url: str, *, index: int) -> Tuple[str, Tuple[str, bytes, str]]:
    """Turn a reference image URL into a multipart ``image[]`` part.

    Raises:
        ProviderError: If an http(s) URL cannot be downloaded.
        ValueError: If the URL is neither http(s) nor a data URL.
    """
    if file_url.startswith("http"):
        buffer, _ = _http_get_bytes(file_url)
    elif file_url.startswith("data:"):
        buffer, _ = decode_data_url(file_url)
    else:
        raise ValueError(
            "Unsupported file URL for attachment, it should be an absolute URL starting with http "
            f"or a data URL, but got: {strip_large_values(file_url)}"
        )
    return "image[]", (f"image_{index + 1}.png", buffer, DEFAULT_MIME_TYPE)


def strip_large_values(obj: Any) -> Any:
    """Copy ``obj`` with long strings truncated, for log output."""
    if isinstance(obj, str):
        return obj[:LOG_VALUE_LIMIT] + "..." if len(obj) > LOG_VALUE_LIMIT else obj
    if isinstance(obj, (list, tuple)):
        return [strip_large_values(item) for item in obj]
    if isinstance(obj, dict):
        return {key: strip_large_values(value) for key, value in obj.items()}
    return obj


def guess_mime_type_by_b64(b64: str, default: str = FALLBACK_MIME_TYPE) -> str:
    """Guess the MIME type of a bare base64 payload (no data URL prefix).

    Uses Pillow to identify the image from its header bytes; returns
    ``default`` when the payload cannot be decoded or identified.
    """
    try:
        buffer = base64.b64decode(b64, validate=True)
    except (binascii.Error, ValueError, TypeError):
        return default

    try:
        with Image.open(io.BytesIO(buffer)) as im:
            return Image.MIME.get(im.format or "", default)
    except (OSError, ValueError, SyntaxError):
        return default


def response_items(payload: Any) -> List[Dict[str, Any]]:
    """Return the ``data[]`` list of an Images API response.

    Raises:
        ProviderError: If the response body is not a JSON object.
    """
    if not isinstance(payload, dict):
        raise ProviderError("Invalid JSON from API: expected an object")
    items = payload.get("data")
    return items if isinstance(items, list) else []


def normalize_image_items(items: Iterable[Dict[str, Any]], *, default_mime: str = DEFAULT_MIME_TYPE) -> List[str]:
    """Reshape ``data[]`` items from the Images API into URLs or data URLs.

    Items carrying neither ``url`` nor ``b64_json`` are dropped.
    """
    urls: List[str] = []
    for item in items:
        if not isinstance(item, dict):
            continue
        if item.get("url"):
            urls.append(item["url"])
        elif item.get("b64_json"):
            b64 = item["b64_json"]
            mime_type = guess_mime_type_by_b64(b64, default=default_mime)
            urls.append(f"data:{mime_type};base64,{b64}")
    return urls


def extract_error_message(response: requests.Response) -> str:
    """Pull the provider's ``error.message`` out of an error response."""
    try:
        payload = response.json()
    except ValueError:
        payload = None
    if isinstance(payload, dict):
        err = payload.get("error")
        if isinstance(err, dict) and err.get("message"):
            return str(err["message"])
        if isinstance(err, str) and err:
            return err
    text = (response.text or "").strip()
    return text[:400] if text else f"HTTP {response.status_code}"


def _auth_headers(api_key: str) -> Dict[str, str]:
    return {"Authorization": f"Bearer {api_key}"}


def _parse_json_response(response: requests.Response) -> Dict[str, Any]:
    if not response.ok:
        raise ProviderError(extract_error_message(response), status_code=response.status_code)
    try:
        payload = response.json()
    except ValueError as exc:
        raise ProviderError(f"Invalid JSON from API: {exc}", status_code=response.status_code) from exc
    if not isinstance(payload, dict):
        raise ProviderError("Invalid JSON from API: expected an object", status_code=response.status_code)
    return payload


def _http_request_json(*, url: str, api_key: str, method: str, timeout: int, **kwargs: Any) -> Dict[str, Any]:
    headers = {**_auth_headers(api_key), **kwargs.pop("headers", {})}
    logger.debug("%s %s", method, url)
    try:
        response = requests.request(method, url, headers=headers, timeout=timeout, **kwargs)
    except requests.RequestException as exc:
        raise ProviderError(f"Network error: {exc}") from exc
    return _parse_json_response(response)


def _http_get_json(url: str, api_key: str) -> Dict[str, Any]:
    """Make an HTTP GET request and return JSON response."""
    return _http_request_json(url=url, api_key=api_key, method="GET", timeout=GET_TIMEOUT)


def _http_post_json(url: str, payload: Dict[str, Any], api_key: str) -> Dict[str, Any]:
    """Make an HTTP POST request with a JSON body and return JSON response."""
    return _http_request_json(
        url=url,
        api_key=api_key,
        method="POST",
        timeout=POST_TIMEOUT,
        json=payload,
        headers={"Content-Type": "application/json"},
    )


def _http_post_multipart(
    url: str,
    fields: Sequence[Tuple[str, str]],
    files: Sequence[Tuple[str, Tuple[str, bytes, str]]],
    api_key: str,
) -> Dict[str, Any]:
    """Make a multipart/form-data POST and return JSON response."""
    # requests sets the multipart Content-Type (with boundary) itself
    return _http_request_json(
        url=url,
        api_key=api_key,
        method="POST",
        timeout=POST_TIMEOUT,
        data=list(fields),
        files=list(files),
    )


def _http_get_bytes(url: str) -> Tuple[bytes, str]:
    """Download bytes from a URL."""
    try:
        response = requests.get(url, timeout=DOWNLOAD_TIMEOUT)
    except requests.RequestException as exc:
        raise ProviderError(f"Network error downloading: {exc}") from exc
    if not response.ok:
        detail = (response.text or "")[:200]
        raise ProviderError(f"Download error {response.status_code}: {detail}", status_code=response.status_code)
    content_type = response.headers.get("content-type") or DEFAULT_MIME_TYPE
    return response.content, content_type.split(";", 1)[0].strip()


def _is_image_generation_model(model_id: str) -> bool:
    return model_id.lower().startswith(IMAGE_MODEL_PREFIXES)


def list_available_models(
    api_key: Optional[str] = None,
    image_only: bool = True,
    *,
    base_url: str = DEFAULT_BASE_URL,
) -> List[str]:
    """List model IDs visible to the API key.

    Args:
        api_key: Optional API key (uses environment variable if not provided).
        image_only: If True, only return image generation models.
        base_url: Base URL for the API.
    """
    key = require_api_key(api_key)
    try:
        response = _http_get_json(build_url("models", base_url=base_url), key)
    except ProviderError as exc:
        raise ProviderError(f"Failed to list models: {exc}", status_code=exc.status_code) from exc

    model_ids = [m.get("id", "") for m in response.get("data") or [] if isinstance(m, dict)]
    if image_only:
        model_ids = [m for m in model_ids if _is_image_generation_model(m)]
    return sorted(m for m in model_ids if m)


def validate_api_key(api_key: Optional[str] = None, *, base_url: str = DEFAULT_BASE_URL) -> Dict[str, Any]:
    """Validate an API key by attempting to list models."""
    try:
        models = list_available_models(api_key=api_key, image_only=False, base_url=base_url)
    except ValueError as e:
        return {"valid": False, "error": str(e)}
    except RuntimeError as e:
        return {"valid": False, "error": f"API validation failed: {e}"}

    return {
        "valid": True,
        "total_models": len(models),
        "image_models": len([m for m in models if _is_image_generation_model(m)]),
    }


def infer_extension(mime_type: str = DEFAULT_MIME_TYPE) -> str:
    """Get file extension from MIME type."""
    mapping = {
        "image/png": ".png",
        "image/jpeg": ".jpg",
        "image/webp": ".webp",
        "image/gif": ".gif",
    }
    return mapping.get(mime_type.lower(), ".png")


_EXT_TO_MIME = {
    "png": "image/png",
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "webp": "image/webp",
    "gif": "image/gif",
}


def read_image_file(image_path: "Path | str", allowed_extensions: Optional[Sequence[str]] = None) -> str:
    """Read an image file from disk and return it as a data URL.

    Args:
        image_path: Path to the image file.
        allowed_extensions: Extensions (without dot) the target model accepts.
            Defaults to every image type this module knows.

    Raises:
        FileNotFoundError: If the image file doesn't exist.
        ValueError: If the file type is not supported.
    """
    path = Path(image_path)
    if not path.exists():
        raise FileNotFoundError(f"Image file not found: {path}")

    allowed = [e.lower() for e in allowed_extensions] if allowed_extensions else list(_EXT_TO_MIME)
    ext = path.suffix.lower().lstrip(".")
    if ext not in allowed or ext not in _EXT_TO_MIME:
        raise ValueError(f"Unsupported image format: .{ext}. Supported: {', '.join(allowed)}")

    image_base64 = base64.b64encode(path.read_bytes()).decode("utf-8")
    return f"data:{_EXT_TO_MIME[ext]};base64,{image_base64}"


def write_image_to_file(buffer: bytes, target_path: "Path | str") -> Path:
    """Write image bytes to a file, creating directories as needed."""
    if not isinstance(buffer, (bytes, bytearray)):
        raise TypeError("Expected bytes for image buffer.")
    path = Path(target_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(buffer)
    return path
