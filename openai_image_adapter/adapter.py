"""Image generation adapter backed by the OpenAI Images API.

Hosts talk to :class:`OpenAIImageGenerationAdapter` only: it answers
capability questions for the configured model and turns a prompt (plus
optional reference images) into a list of image URLs or data URLs.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

from .core import (
    DEFAULT_BASE_URL,
    DEFAULT_MIME_TYPE,
    DEFAULT_MODEL_ID,
    FALLBACK_MIME_TYPE,
    GenerationResult,
    ProviderError,
    _http_post_json,
    _http_post_multipart,
    build_edit_form,
    build_generation_body,
    build_url,
    get_api_key,
    input_file_extension_supported,
    load_input_file,
    normalize_image_items,
    output_dimensions_supported,
    output_images_max_count_supported,
    require_api_key,
    response_items,
    strip_large_values,
)

logger = logging.getLogger(__name__)


@dataclass
class AdapterOptions:
    """Adapter configuration supplied by the host."""
    openai_api_key: Optional[str] = None
    model: Optional[str] = None
    extra_params: Optional[Dict[str, Any]] = None
    base_url: str = DEFAULT_BASE_URL

    def __post_init__(self) -> None:
        self.model = self.model or DEFAULT_MODEL_ID


class OpenAIImageGenerationAdapter:
    """Generate or edit images through OpenAI, with per-model capability lookup."""

    def __init__(self, options: Optional[AdapterOptions] = None) -> None:
        self.options = options or AdapterOptions()

    @property
    def model(self) -> str:
        return self.options.model or DEFAULT_MODEL_ID

    def validate(self) -> None:
        """Raise ``ValueError`` if the adapter cannot make requests."""
        if not get_api_key(self.options.openai_api_key):
            raise ValueError("API Key is required")

    def output_images_max_count_supported(self) -> Optional[int]:
        return output_images_max_count_supported(self.model)

    def output_dimensions_supported(self) -> List[str]:
        return output_dimensions_supported(self.model)

    def input_file_extension_supported(self) -> List[str]:
        return input_file_extension_supported(self.model)

    def generate(
        self,
        prompt: str,
        input_files: Optional[Sequence[str]] = None,
        size: Optional[str] = None,
        n: int = 1,
    ) -> GenerationResult:
        """Generate images from ``prompt``, or edit ``input_files`` when given.

        Args:
            prompt: Text description of the image (or of the edit).
            input_files: Reference images as http(s) URLs or data URLs.
            size: Output size; defaults to the model's first supported size.
            n: Number of images to produce.

        Returns:
            GenerationResult with image URLs/data URLs, or an error message
            when the provider rejects the request.

        Raises:
            ValueError: If ``n`` is out of range for the model, no API key is
                configured, or an input file URL is not supported.
        """
        if size is None:
            sizes = self.output_dimensions_supported()
            size = sizes[0] if sizes else None

        if isinstance(n, bool) or not isinstance(n, int) or n < 1:
            raise ValueError("n must be a positive integer.")
        max_count = self.output_images_max_count_supported()
        if max_count is not None and n > max_count:
            raise ValueError(f'For model "{self.model}", the maximum number of images is {max_count}')

        return self._generate_or_edit_image(prompt=prompt, input_files=list(input_files or []), n=n, size=size)

    def _generate_or_edit_image(
        self,
        *,
        prompt: str,
        input_files: List[str],
        n: int,
        size: Optional[str],
    ) -> GenerationResult:
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug(
                "Generating image with prompt: %s %s n=%s size=%s",
                strip_large_values(input_files), prompt, n, size,
            )

        api_key = require_api_key(self.options.openai_api_key)
        if not input_files:
            return self._generate_image(prompt=prompt, n=n, size=size, api_key=api_key)
        return self._edit_image(prompt=prompt, input_files=input_files, n=n, size=size, api_key=api_key)

    def _generate_image(self, *, prompt: str, n: int, size: Optional[str], api_key: str) -> GenerationResult:
        body = build_generation_body(
            prompt,
            model=self.model,
            n=n,
            size=size,
            extra_params=self.options.extra_params,
        )
        try:
            response_json = _http_post_json(
                build_url("images/generations", base_url=self.options.base_url),
                body,
                api_key,
            )
            items = response_items(response_json)
        except ProviderError as exc:
            logger.warning("Image generation failed: %s", exc)
            return GenerationResult(error=str(exc))

        return GenerationResult(image_urls=normalize_image_items(items, default_mime=DEFAULT_MIME_TYPE))

    def _edit_image(
        self,
        *,
        prompt: str,
        input_files: List[str],
        n: int,
        size: Optional[str],
        api_key: str,
    ) -> GenerationResult:
        fields = build_edit_form(
            prompt,
            model=self.model,
            n=n,
            size=size,
            extra_params=self.options.extra_params,
        )

        files = []
        for index, file_url in enumerate(input_files):
            try:
                files.append(load_input_file(file_url, index=index))
            except ProviderError as exc:
                logger.error("Error fetching input file %s: %s", strip_large_values(file_url), exc)
                return GenerationResult(error="Error attaching input files")

        try:
            response_json = _http_post_multipart(
                build_url("images/edits", base_url=self.options.base_url),
                fields,
                files,
                api_key,
            )
            items = response_items(response_json)
        except ProviderError as exc:
            logger.error("Error generating image: %s (status=%s)", exc, exc.status_code)
            return GenerationResult(error=f"Error generating image: {exc}")

        if logger.isEnabledFor(logging.DEBUG):
            logger.debug("Edit response: %s", json.dumps(strip_large_values(response_json)))

        return GenerationResult(image_urls=normalize_image_items(items, default_mime=FALLBACK_MIME_TYPE))
