"""Unit tests for the OpenAI image generation adapter."""
# pylint: disable=missing-function-docstring

import base64
import io
import os
import unittest
from unittest.mock import patch

from PIL import Image

from openai_image_adapter import core
from openai_image_adapter.adapter import AdapterOptions, OpenAIImageGenerationAdapter


def _image_b64(fmt: str) -> str:
    buf = io.BytesIO()
    Image.new("RGB", (4, 4), (20, 120, 220)).save(buf, format=fmt)
    return base64.b64encode(buf.getvalue()).decode("utf-8")


def _data_url(raw: bytes, mime: str = "image/png") -> str:
    return f"data:{mime};base64," + base64.b64encode(raw).decode("utf-8")


class AdapterOptionTests(unittest.TestCase):
    """Option defaulting, validation and capability delegation."""

    def setUp(self):
        self.env_patch = patch.dict(os.environ, {}, clear=True)
        self.env_patch.start()

    def tearDown(self):
        self.env_patch.stop()

    def test_model_defaults_to_gpt_image_1(self):
        adapter = OpenAIImageGenerationAdapter(AdapterOptions(openai_api_key="sk-test"))
        self.assertEqual(adapter.model, "gpt-image-1")
        self.assertEqual(adapter.options.model, "gpt-image-1")

    def test_validate_requires_key(self):
        adapter = OpenAIImageGenerationAdapter(AdapterOptions())
        with self.assertRaisesRegex(ValueError, "API Key is required"):
            adapter.validate()

    def test_validate_accepts_env_key(self):
        os.environ[core.API_KEY_ENV] = "sk-env"
        OpenAIImageGenerationAdapter(AdapterOptions()).validate()

    def test_capabilities_follow_model(self):
        adapter = OpenAIImageGenerationAdapter(AdapterOptions(openai_api_key="k", model="dall-e-3"))
        self.assertEqual(adapter.output_images_max_count_supported(), 1)
        self.assertEqual(adapter.output_dimensions_supported()[0], "1024x1024")
        self.assertEqual(adapter.input_file_extension_supported(), ["png", "jpg", "jpeg"])


class GenerateTests(unittest.TestCase):
    """Text-to-image requests against the generations endpoint."""

    def setUp(self):
        self.env_patch = patch.dict(os.environ, {}, clear=True)
        self.env_patch.start()

    def tearDown(self):
        self.env_patch.stop()

    def _adapter(self, **kwargs):
        return OpenAIImageGenerationAdapter(AdapterOptions(openai_api_key="sk-test", **kwargs))

    @patch("openai_image_adapter.adapter._http_post_json")
    def test_too_many_images_rejected_before_request(self, mock_post):
        adapter = self._adapter(model="dall-e-3")
        with self.assertRaises(ValueError) as ctx:
            adapter.generate("a lighthouse", n=2)
        self.assertEqual(str(ctx.exception), 'For model "dall-e-3", the maximum number of images is 1')
        mock_post.assert_not_called()

    @patch("openai_image_adapter.adapter._http_post_json")
    def test_non_positive_n_rejected(self, mock_post):
        with self.assertRaises(ValueError):
            self._adapter().generate("a lighthouse", n=0)
        mock_post.assert_not_called()

    @patch("openai_image_adapter.adapter._http_post_json")
    def test_boolean_n_rejected(self, mock_post):
        with self.assertRaises(ValueError):
            self._adapter().generate("a lighthouse", n=True)
        mock_post.assert_not_called()

    @patch("openai_image_adapter.adapter._http_post_json")
    def test_default_size_and_body(self, mock_post):
        mock_post.return_value = {"data": [{"url": "https://img.example/1.png"}]}
        adapter = self._adapter(model="dall-e-2", extra_params={"response_format": "url"})

        result = adapter.generate("a lighthouse", n=2)

        url, body, api_key = mock_post.call_args[0]
        self.assertEqual(url, "https://api.openai.com/v1/images/generations")
        self.assertEqual(
            body,
            {"prompt": "a lighthouse", "model": "dall-e-2", "n": 2, "size": "256x256", "response_format": "url"},
        )
        self.assertEqual(api_key, "sk-test")
        self.assertTrue(result.ok)
        self.assertEqual(result.image_urls, ["https://img.example/1.png"])
        self.assertEqual(result.to_dict(), {"imageURLs": ["https://img.example/1.png"]})

    @patch("openai_image_adapter.adapter._http_post_json")
    def test_b64_items_become_data_urls(self, mock_post):
        png = _image_b64("PNG")
        mock_post.return_value = {"data": [{"b64_json": png}, {"revised_prompt": "ignored"}]}

        result = self._adapter().generate("a lighthouse", size="1536x1024")

        self.assertEqual(mock_post.call_args[0][1]["size"], "1536x1024")
        self.assertEqual(result.image_urls, [f"data:image/png;base64,{png}"])

    @patch("openai_image_adapter.adapter._http_post_json")
    def test_unidentified_payload_defaults_to_png(self, mock_post):
        b64 = base64.b64encode(b"opaque").decode("utf-8")
        mock_post.return_value = {"data": [{"b64_json": b64}]}
        result = self._adapter().generate("a lighthouse")
        self.assertEqual(result.image_urls, [f"data:image/png;base64,{b64}"])

    @patch("openai_image_adapter.adapter._http_post_json")
    def test_provider_error_returned_as_result(self, mock_post):
        mock_post.side_effect = core.ProviderError("Your request was rejected by the safety system.", status_code=400)

        result = self._adapter().generate("something disallowed")

        self.assertFalse(result.ok)
        self.assertEqual(result.image_urls, [])
        self.assertEqual(result.to_dict(), {"error": "Your request was rejected by the safety system."})

    @patch("openai_image_adapter.adapter._http_post_json")
    def test_non_object_body_returned_as_error(self, mock_post):
        mock_post.return_value = [{"url": "https://img.example/1.png"}]

        result = self._adapter().generate("a lighthouse")

        self.assertFalse(result.ok)
        self.assertEqual(result.error, "Invalid JSON from API: expected an object")

    @patch("openai_image_adapter.adapter._http_post_json")
    def test_unknown_model_has_no_limit_and_no_size(self, mock_post):
        mock_post.return_value = {"data": []}
        adapter = self._adapter(model="gpt-image-2-preview")

        result = adapter.generate("a lighthouse", n=25)

        body = mock_post.call_args[0][1]
        self.assertNotIn("size", body)
        self.assertEqual(body["n"], 25)
        self.assertEqual(result.image_urls, [])

    @patch("openai_image_adapter.adapter._http_post_json")
    def test_custom_base_url(self, mock_post):
        mock_post.return_value = {"data": []}
        self._adapter(base_url="https://gateway.example/openai/v1/").generate("a lighthouse")
        self.assertEqual(mock_post.call_args[0][0], "https://gateway.example/openai/v1/images/generations")

    def test_missing_key_raises(self):
        adapter = OpenAIImageGenerationAdapter(AdapterOptions())
        with self.assertRaises(ValueError):
            adapter.generate("a lighthouse")


class EditTests(unittest.TestCase):
    """Reference-image requests against the edits endpoint."""

    def setUp(self):
        self.env_patch = patch.dict(os.environ, {}, clear=True)
        self.env_patch.start()
        self.adapter = OpenAIImageGenerationAdapter(
            AdapterOptions(openai_api_key="sk-test", model="gpt-image-1", extra_params={"quality": "low"})
        )

    def tearDown(self):
        self.env_patch.stop()

    @patch("openai_image_adapter.adapter._http_post_multipart")
    @patch("openai_image_adapter.adapter._http_post_json")
    def test_input_files_switch_to_multipart(self, mock_json, mock_multipart):
        jpeg = _image_b64("JPEG")
        mock_multipart.return_value = {"data": [{"b64_json": jpeg}]}

        result = self.adapter.generate(
            "add a red hat",
            input_files=[_data_url(b"first"), _data_url(b"second", "image/jpeg")],
            n=1,
        )

        mock_json.assert_not_called()
        url, fields, files, api_key = mock_multipart.call_args[0]
        self.assertEqual(url, "https://api.openai.com/v1/images/edits")
        self.assertEqual(
            fields,
            [("prompt", "add a red hat"), ("model", "gpt-image-1"), ("n", "1"), ("size", "1024x1024"), ("quality", "low")],
        )
        self.assertEqual(
            files,
            [
                ("image[]", ("image_1.png", b"first", "image/png")),
                ("image[]", ("image_2.png", b"second", "image/png")),
            ],
        )
        self.assertEqual(api_key, "sk-test")
        self.assertEqual(result.image_urls, [f"data:image/jpeg;base64,{jpeg}"])

    @patch("openai_image_adapter.adapter._http_post_multipart")
    def test_edit_response_unknown_payload_uses_octet_stream(self, mock_multipart):
        b64 = base64.b64encode(b"opaque").decode("utf-8")
        mock_multipart.return_value = {"data": [{"b64_json": b64}]}
        result = self.adapter.generate("add a red hat", input_files=[_data_url(b"x")])
        self.assertEqual(result.image_urls, [f"data:application/octet-stream;base64,{b64}"])

    @patch("openai_image_adapter.adapter._http_post_multipart")
    def test_edit_response_urls_pass_through(self, mock_multipart):
        mock_multipart.return_value = {"data": [{"url": "https://img.example/edited.png"}]}
        result = self.adapter.generate("add a red hat", input_files=[_data_url(b"x")])
        self.assertEqual(result.image_urls, ["https://img.example/edited.png"])

    @patch("openai_image_adapter.adapter._http_post_multipart")
    @patch("openai_image_adapter.core._http_get_bytes")
    def test_remote_input_downloaded(self, mock_get, mock_multipart):
        mock_get.return_value = (b"remote", "image/png")
        mock_multipart.return_value = {"data": []}

        self.adapter.generate("add a red hat", input_files=["https://cdn.example/cat.png"])

        mock_get.assert_called_once_with("https://cdn.example/cat.png")
        files = mock_multipart.call_args[0][2]
        self.assertEqual(files, [("image[]", ("image_1.png", b"remote", "image/png"))])

    @patch("openai_image_adapter.adapter._http_post_multipart")
    @patch("openai_image_adapter.core._http_get_bytes")
    def test_failed_download_returns_attach_error(self, mock_get, mock_multipart):
        mock_get.side_effect = core.ProviderError("Download error 404: missing", status_code=404)

        with self.assertLogs("openai_image_adapter.adapter", level="ERROR"):
            result = self.adapter.generate("add a red hat", input_files=["https://cdn.example/missing.png"])

        self.assertEqual(result.error, "Error attaching input files")
        mock_multipart.assert_not_called()

    @patch("openai_image_adapter.adapter._http_post_multipart")
    def test_unsupported_input_url_raises(self, mock_multipart):
        with self.assertRaisesRegex(ValueError, "Unsupported file URL for attachment"):
            self.adapter.generate("add a red hat", input_files=["ftp://example.com/cat.png"])
        mock_multipart.assert_not_called()

    @patch("openai_image_adapter.adapter._http_post_multipart")
    def test_edit_provider_error_prefixed(self, mock_multipart):
        mock_multipart.side_effect = core.ProviderError("Invalid file 'image[]'", status_code=400)

        with self.assertLogs("openai_image_adapter.adapter", level="ERROR"):
            result = self.adapter.generate("add a red hat", input_files=[_data_url(b"x")])

        self.assertEqual(result.to_dict(), {"error": "Error generating image: Invalid file 'image[]'"})

    @patch("openai_image_adapter.adapter._http_post_multipart")
    def test_edit_non_object_body_prefixed(self, mock_multipart):
        mock_multipart.return_value = [{"url": "https://img.example/edit.png"}]

        with self.assertLogs("openai_image_adapter.adapter", level="ERROR"):
            result = self.adapter.generate("add a red hat", input_files=[_data_url(b"x")])

        self.assertEqual(result.error, "Error generating image: Invalid JSON from API: expected an object")

    @patch("openai_image_adapter.adapter._http_post_multipart")
    def test_debug_logs_truncate_large_inputs(self, mock_multipart):
        mock_multipart.return_value = {"data": [{"b64_json": "Z" * 500}]}
        big_input = _data_url(b"\x00" * 300)

        with self.assertLogs("openai_image_adapter.adapter", level="DEBUG") as logs:
            self.adapter.generate("add a red hat", input_files=[big_input])

        joined = "\n".join(logs.output)
        self.assertIn("add a red hat", joined)
        self.assertNotIn(big_input, joined)
        self.assertNotIn("Z" * 101, joined)
        self.assertIn("Edit response", joined)


@unittest.skipUnless(
    os.getenv(core.API_KEY_ENV) and os.getenv("OPENAI_IMAGE_LIVE_TESTS"),
    "OPENAI_API_KEY / OPENAI_IMAGE_LIVE_TESTS not set; integration test skipped",
)
class LiveGenerationTests(unittest.TestCase):
    """Integration test that hits the live OpenAI Images API."""

    def test_small_dalle2_generation(self):
        adapter = OpenAIImageGenerationAdapter(AdapterOptions(model="dall-e-2"))
        adapter.validate()
        result = adapter.generate("A single red apple on a white background", size="256x256", n=1)
        self.assertTrue(result.ok, result.error)
        self.assertEqual(len(result.image_urls), 1)


if __name__ == "__main__":
    unittest.main()
