"""OpenAI Image Adapter - image generation and editing via the OpenAI Images API.

This package provides a host-facing adapter that normalizes per-model
capabilities, plus an MCP server exposing it as tools.
"""

from .adapter import AdapterOptions, OpenAIImageGenerationAdapter
from .core import (
    GenerationResult,
    ModelCapabilities,
    ProviderError,
    get_model_capabilities,
    guess_mime_type_by_b64,
    infer_extension,
    input_file_extension_supported,
    output_dimensions_supported,
    output_images_max_count_supported,
    read_image_file,
    strip_large_values,
    validate_api_key,
    write_image_to_file,
)
from .server import mcp

__all__ = [name for name in locals() if not name.startswith("_")]

__version__ = "1.0.0"
