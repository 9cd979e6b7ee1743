"""Unit tests for the core Gemini client helpers."""
# pylint: disable=missing-function-docstring

import base64
import io
import json
import os
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch
from urllib import error

from prompt_lab import core
from prompt_lab.errors import (
    ApiCallError,
    ContentBlockedError,
    EmptyResponseError,
    ImageValidationError,
    MissingApiKeyError,
    NoImageProducedError,
)

TEST_ENV = {
    core.API_KEY_ENV: "test-key",
    "PROMPT_LAB_KEYRING_SERVICE": "prompt-lab-tests-nonexistent",
}


def _jpeg(data: bytes = b"\xff\xd8\xff\xe0jpegbytes") -> core.UploadedImage:
    return core.UploadedImage(data=data, mime_type="image/jpeg", name="photo.jpg")


def _candidates(*parts):
    return {"candidates": [{"content": {"parts": list(parts)}}]}


class ValidationTests(unittest.TestCase):
    """File size and MIME type checks."""

    def test_oversize_rejected_regardless_of_mime(self):
        for mime in ("image/jpeg", "image/png", "image/webp", "image/gif", "application/pdf", ""):
            for size in (core.MAX_IMAGE_BYTES + 1, core.MAX_IMAGE_BYTES * 3):
                with self.subTest(mime=mime, size=size):
                    with self.assertRaises(ImageValidationError) as ctx:
                        core.validate_image(size, mime)
                    self.assertEqual(str(ctx.exception), core.TOO_LARGE_MESSAGE)
                    self.assertEqual(ctx.exception.reason, "too_large")

    def test_unsupported_mime_rejected_regardless_of_size(self):
        for mime in ("image/gif", "image/heic", "text/plain", "IMAGE/PNG", ""):
            for size in (0, 1, 1024, core.MAX_IMAGE_BYTES):
                with self.subTest(mime=mime, size=size):
                    with self.assertRaises(ImageValidationError) as ctx:
                        core.validate_image(size, mime)
                    self.assertEqual(str(ctx.exception), core.UNSUPPORTED_TYPE_MESSAGE)
                    self.assertEqual(ctx.exception.reason, "unsupported_type")

    def test_supported_files_accepted_up_to_limit(self):
        for mime in core.SUPPORTED_MIME_TYPES:
            core.validate_image(core.MAX_IMAGE_BYTES, mime)
            core.validate_image(1, mime)

    def test_load_image_infers_mime_from_extension(self):
        with tempfile.NamedTemporaryFile(suffix=".webp", delete=False) as tmp:
            tmp.write(b"webpdata")
            path = tmp.name
        try:
            image = core.load_image(path)
            self.assertEqual(image.mime_type, "image/webp")
            self.assertEqual(image.data, b"webpdata")
            self.assertEqual(image.size, 8)
        finally:
            os.remove(path)

    def test_load_image_unsupported_extension(self):
        with tempfile.NamedTemporaryFile(suffix=".gif", delete=False) as tmp:
            tmp.write(b"data")
            path = tmp.name
        try:
            with self.assertRaises(ImageValidationError):
                core.load_image(path)
        finally:
            os.remove(path)

    def test_load_image_oversize(self):
        with tempfile.NamedTemporaryFile(suffix=".png", delete=False) as tmp:
            tmp.write(b"\0" * (core.MAX_IMAGE_BYTES + 1))
            path = tmp.name
        try:
            with self.assertRaises(ImageValidationError) as ctx:
                core.load_image(path)
            self.assertEqual(ctx.exception.reason, "too_large")
        finally:
            os.remove(path)

    def test_load_image_missing(self):
        with self.assertRaises(FileNotFoundError):
            core.load_image("/nonexistent/image.png")


class EncodingTests(unittest.TestCase):
    def test_encode_round_trip(self):
        for data in (b"", b"\x00", b"\x89PNG\r\n\x1a\n" + bytes(range(256)), os.urandom(4097)):
            with self.subTest(length=len(data)):
                encoded = core.encode_image(core.UploadedImage(data=data, mime_type="image/png"))
                self.assertFalse(encoded.startswith("data:"))
                self.assertEqual(base64.b64decode(encoded), data)

    def test_strip_data_url(self):
        self.assertEqual(core.strip_data_url("data:image/png;base64,QUJD"), "QUJD")
        self.assertEqual(core.strip_data_url("QUJD"), "QUJD")

    def test_to_data_url(self):
        self.assertEqual(core.to_data_url(b"ABC", "image/jpeg"), "data:image/jpeg;base64,QUJD")


class ConfigTests(unittest.TestCase):
    def setUp(self):
        self.env_patch = patch.dict(os.environ, {"PROMPT_LAB_KEYRING_SERVICE": "prompt-lab-tests-nonexistent"},
                                    clear=True)
        self.env_patch.start()

    def tearDown(self):
        self.env_patch.stop()

    def test_default_models(self):
        self.assertEqual(core.get_text_model(), core.DEFAULT_TEXT_MODEL_ID)
        self.assertEqual(core.get_image_model(), core.DEFAULT_IMAGE_MODEL_ID)

    def test_env_overrides_models(self):
        os.environ[core.TEXT_MODEL_ENV] = "text-env"
        os.environ[core.IMAGE_MODEL_ENV] = "image-env"
        self.assertEqual(core.get_text_model(), "text-env")
        self.assertEqual(core.get_image_model(), "image-env")

    def test_dotenv_loaded_without_overriding(self):
        os.environ[core.TEXT_MODEL_ENV] = "already-set"
        with tempfile.TemporaryDirectory() as tmpdir:
            env_file = os.path.join(tmpdir, ".env")
            with open(env_file, "w", encoding="utf-8") as handle:
                handle.write(f"# comment\n{core.IMAGE_MODEL_ENV}='from-dotenv'\n{core.TEXT_MODEL_ENV}=ignored\n")
            with patch("prompt_lab.core.DOTENV_CANDIDATES", [Path(env_file)]):
                core._prime_dotenv_env()  # pylint: disable=protected-access
        self.assertEqual(core.get_image_model(), "from-dotenv")
        self.assertEqual(core.get_text_model(), "already-set")

    def test_timeout_defaults_to_none(self):
        self.assertIsNone(core.get_timeout())
        os.environ[core.TIMEOUT_ENV] = "not-a-number"
        self.assertIsNone(core.get_timeout())
        os.environ[core.TIMEOUT_ENV] = "45"
        self.assertEqual(core.get_timeout(), 45.0)

    def test_fallback_api_key_env(self):
        os.environ[core.API_KEY_FALLBACK_ENV] = "  fallback-key "
        self.assertEqual(core.require_api_key(), "fallback-key")

    def test_build_url(self):
        self.assertEqual(
            core.build_url(base_url="https://example.test/models/", model_id="m"),
            "https://example.test/models/m:generateContent",
        )
        stream_url = core.build_url(base_url="https://example.test/models", model_id="m", stream=True, api_key="k")
        self.assertEqual(stream_url, "https://example.test/models/m:streamGenerateContent?alt=sse&key=k")


class MissingKeyTests(unittest.TestCase):
    """Every operation fails before any network call when no key is set."""

    def setUp(self):
        self.env_patch = patch.dict(os.environ, {"PROMPT_LAB_KEYRING_SERVICE": "prompt-lab-tests-nonexistent"},
                                    clear=True)
        self.env_patch.start()

    def tearDown(self):
        self.env_patch.stop()

    @patch("prompt_lab.core._http_post_stream")
    @patch("prompt_lab.core._http_post_json")
    def test_operations_require_key(self, mock_post, mock_stream):
        calls = [
            lambda: core.analyze(_jpeg()),
            lambda: core.analyze(_jpeg(), stream=True),
            lambda: core.edit(_jpeg(), "add a hat"),
            lambda: core.improve("a cat"),
            lambda: core.raw_request("hello"),
        ]
        for call in calls:
            with self.assertRaises(MissingApiKeyError):
                call()
        mock_post.assert_not_called()
        mock_stream.assert_not_called()


class AnalyzeTests(unittest.TestCase):
    def setUp(self):
        self.env_patch = patch.dict(os.environ, TEST_ENV, clear=True)
        self.env_patch.start()

    def tearDown(self):
        self.env_patch.stop()

    @patch("prompt_lab.core._http_post_json")
    def test_analyze_returns_stub_text_verbatim(self, mock_post):
        mock_post.return_value = {"text": "a red bicycle"}
        self.assertEqual(core.analyze(_jpeg()), "a red bicycle")

    @patch("prompt_lab.core._http_post_json")
    def test_analyze_sends_image_then_instruction(self, mock_post):
        mock_post.return_value = _candidates({"text": "una bicicleta "}, {"text": "roja"})
        image = _jpeg()

        result = core.analyze(image)

        called_url, payload, key = mock_post.call_args[0]
        self.assertTrue(called_url.endswith(f"{core.DEFAULT_TEXT_MODEL_ID}:generateContent"))
        self.assertEqual(key, "test-key")
        parts = payload["contents"][0]["parts"]
        self.assertEqual(parts[0]["inlineData"]["mimeType"], "image/jpeg")
        self.assertEqual(base64.b64decode(parts[0]["inlineData"]["data"]), image.data)
        self.assertEqual(parts[1]["text"], core.ANALYZE_PROMPT)
        self.assertIn("la imagen que te acabo de subir", parts[1]["text"])
        self.assertEqual(result, "una bicicleta roja")

    @patch("prompt_lab.core._http_post_json")
    def test_analyze_blocked_prompt(self, mock_post):
        mock_post.return_value = {"candidates": [], "promptFeedback": {"blockReason": "OTHER"}}
        with self.assertRaises(ContentBlockedError) as ctx:
            core.analyze(_jpeg())
        self.assertEqual(ctx.exception.reason, "OTHER")

    @patch("prompt_lab.core._http_post_stream")
    def test_analyze_stream_concatenates_fragments(self, mock_stream):
        mock_stream.return_value = (
            'data: {"candidates": [{"content": {"parts": [{"text": "un atardecer "}]}}]}\n\n'
            'data: {"candidates": [{"content": {"parts": [{"text": "sobre el mar"}]}}]}\n\n'
        )
        result = core.analyze(_jpeg(), stream=True, model_id="vision-model")

        called_url, payload = mock_stream.call_args[0]
        self.assertIn("vision-model:streamGenerateContent", called_url)
        self.assertIn("key=test-key", called_url)
        self.assertIn("inlineData", payload["contents"][0]["parts"][0])
        self.assertEqual(result, "un atardecer sobre el mar")


class ImproveAndRawTests(unittest.TestCase):
    def setUp(self):
        self.env_patch = patch.dict(os.environ, TEST_ENV, clear=True)
        self.env_patch.start()

    def tearDown(self):
        self.env_patch.stop()

    @patch("prompt_lab.core._http_post_json")
    def test_improve_wraps_existing_prompt(self, mock_post):
        mock_post.return_value = _candidates({"text": "un gato naranja bajo la lluvia, luz de neón"})

        result = core.improve("un gato naranja")

        called_url, payload, _ = mock_post.call_args[0]
        self.assertTrue(called_url.endswith(f"{core.DEFAULT_TEXT_MODEL_ID}:generateContent"))
        parts = payload["contents"][0]["parts"]
        self.assertEqual(len(parts), 1)
        self.assertIn('"un gato naranja"', parts[0]["text"])
        self.assertIn("mismo idioma", parts[0]["text"])
        self.assertEqual(result, "un gato naranja bajo la lluvia, luz de neón")

    def test_improve_requires_prompt(self):
        with self.assertRaises(ValueError):
            core.improve("")

    @patch("prompt_lab.core._http_post_json")
    def test_raw_request_returns_full_response(self, mock_post):
        response = {
            "candidates": [{"content": {"parts": [{"text": "AI learns patterns."}], "role": "model"}}],
            "usageMetadata": {"totalTokenCount": 12},
            "modelVersion": "gemini-2.5-flash",
        }
        mock_post.return_value = response

        result = core.raw_request("Explain how AI works in a few words")

        _, payload, _ = mock_post.call_args[0]
        self.assertEqual(payload, {"contents": [{"parts": [{"text": "Explain how AI works in a few words"}]}]})
        self.assertEqual(result, response)


class EditTests(unittest.TestCase):
    """Image editing request shape and failure policy."""

    def setUp(self):
        self.env_patch = patch.dict(os.environ, TEST_ENV, clear=True)
        self.env_patch.start()

    def tearDown(self):
        self.env_patch.stop()

    @patch("prompt_lab.core._http_post_json")
    def test_edit_returns_inline_image(self, mock_post):
        data_b64 = base64.b64encode(b"pngdata").decode("utf-8")
        mock_post.return_value = _candidates(
            {"text": "Aquí tienes tu imagen."},
            {"inlineData": {"mimeType": "image/png", "data": data_b64}},
        )

        result = core.edit(_jpeg(), "añade un sombrero de vaquero")

        called_url, payload, _ = mock_post.call_args[0]
        self.assertTrue(called_url.endswith(f"{core.DEFAULT_IMAGE_MODEL_ID}:generateContent"))
        parts = payload["contents"][0]["parts"]
        self.assertIn("inlineData", parts[0])
        self.assertIn('La edición es: "añade un sombrero de vaquero"', parts[1]["text"])
        self.assertEqual(payload["generationConfig"]["responseModalities"], ["IMAGE", "TEXT"])

        self.assertEqual(result.buffer, b"pngdata")
        self.assertEqual(result.mime_type, "image/png")
        self.assertEqual(result.text, "Aquí tienes tu imagen.")

    @patch("prompt_lab.core._http_post_json")
    def test_edit_blocked_carries_reason(self, mock_post):
        mock_post.return_value = {"candidates": [], "promptFeedback": {"blockReason": "SAFETY"}}
        with self.assertRaises(ContentBlockedError) as ctx:
            core.edit(_jpeg(), "make it gory")
        self.assertIn("SAFETY", str(ctx.exception))

    @patch("prompt_lab.core._http_post_json")
    def test_edit_without_candidates(self, mock_post):
        mock_post.return_value = {}
        with self.assertRaises(EmptyResponseError):
            core.edit(_jpeg(), "add a hat")

    @patch("prompt_lab.core._http_post_json")
    def test_edit_text_only_response_surfaces_text(self, mock_post):
        mock_post.return_value = _candidates({"text": "sorry, can't do that"})
        with self.assertRaises(NoImageProducedError) as ctx:
            core.edit(_jpeg(), "add a hat")
        self.assertIn("sorry, can't do that", str(ctx.exception))
        self.assertEqual(ctx.exception.text, "sorry, can't do that")

    @patch("prompt_lab.core._http_post_json")
    def test_edit_empty_parts(self, mock_post):
        mock_post.return_value = _candidates()
        with self.assertRaises(NoImageProducedError) as ctx:
            core.edit(_jpeg(), "add a hat")
        self.assertIsNone(ctx.exception.text)

    @patch("prompt_lab.core._http_get_bytes")
    @patch("prompt_lab.core._http_post_json")
    def test_edit_downloads_file_data(self, mock_post, mock_get):
        mock_post.return_value = _candidates(
            {"fileData": {"mimeType": "image/webp", "fileUri": "https://files.example/out.webp"}}
        )
        mock_get.return_value = (b"webpbytes", "image/webp")

        result = core.edit(_jpeg(), "add a hat")

        mock_get.assert_called_once_with("https://files.example/out.webp")
        self.assertEqual(result.buffer, b"webpbytes")
        self.assertEqual(result.source_url, "https://files.example/out.webp")

    @patch("prompt_lab.core._http_get_bytes", side_effect=RuntimeError("download not expected"))
    @patch("prompt_lab.core._http_post_json")
    def test_edit_prefers_inline_data_over_file_reference(self, mock_post, mock_get):
        mock_post.return_value = _candidates(
            {"fileData": {"mimeType": "image/png", "fileUri": "https://files.example/out.png"}},
            {"inlineData": {"mimeType": "image/png", "data": base64.b64encode(b"inline").decode("ascii")}},
        )

        result = core.edit(_jpeg(), "add a hat")

        mock_get.assert_not_called()
        self.assertEqual(result.buffer, b"inline")
        self.assertIsNone(result.source_url)


class StreamParsingTests(unittest.TestCase):
    def test_newline_delimited_json(self):
        raw = "\n".join(
            json.dumps(_candidates({"text": fragment})) for fragment in ("Hola", ", ", "mundo")
        )
        self.assertEqual(core.parse_stream_text(raw), "Hola, mundo")

    def test_json_array(self):
        raw = json.dumps([_candidates({"text": "uno "}), _candidates({"text": "dos"})])
        self.assertEqual(core.parse_stream_text(raw), "uno dos")

    def test_error_chunk_raises(self):
        raw = 'data: {"error": {"code": 429, "status": "RESOURCE_EXHAUSTED", "message": "x"}}\n'
        with self.assertRaises(ApiCallError) as ctx:
            core.parse_stream_text(raw)
        self.assertEqual(ctx.exception.payload["error"]["code"], 429)

    def test_empty_body(self):
        with self.assertRaises(EmptyResponseError):
            core.parse_stream_text("\n\n")


class HttpTests(unittest.TestCase):
    @patch("prompt_lab.core.request.urlopen")
    def test_http_error_keeps_structured_body(self, mock_urlopen):
        body = json.dumps({"error": {"code": 429, "status": "RESOURCE_EXHAUSTED", "message": "quota"}}).encode()
        mock_urlopen.side_effect = error.HTTPError(
            "https://example.test", 429, "Too Many Requests", hdrs=None, fp=io.BytesIO(body)
        )

        with self.assertRaises(ApiCallError) as ctx:
            core._http_post_json("https://example.test", {"contents": []}, "k")  # pylint: disable=protected-access

        self.assertEqual(ctx.exception.status_code, 429)
        self.assertEqual(ctx.exception.payload["error"]["status"], "RESOURCE_EXHAUSTED")
        self.assertEqual(json.loads(str(ctx.exception))["error"]["message"], "quota")

    @patch("prompt_lab.core.request.urlopen")
    def test_network_error(self, mock_urlopen):
        mock_urlopen.side_effect = error.URLError("connection refused")
        with self.assertRaises(ApiCallError) as ctx:
            core._http_post_json("https://example.test", {"contents": []}, "k")  # pylint: disable=protected-access
        self.assertIsNone(ctx.exception.status_code)
        self.assertIn("connection refused", str(ctx.exception))


class PngConversionTests(unittest.TestCase):
    def test_png_passthrough(self):
        self.assertEqual(core.to_png(b"already-png", "image/png"), b"already-png")

    def test_jpeg_converted_to_png(self):
        try:
            from PIL import Image  # pylint: disable=import-outside-toplevel
        except ImportError:
            self.skipTest("Pillow not installed")
        buf = io.BytesIO()
        Image.new("RGB", (4, 3), (200, 30, 30)).save(buf, format="JPEG")

        png = core.to_png(buf.getvalue(), "image/jpeg")

        self.assertTrue(png.startswith(b"\x89PNG\r\n\x1a\n"))
        with Image.open(io.BytesIO(png)) as im:
            self.assertEqual(im.size, (4, 3))


@unittest.skipUnless(os.getenv(core.API_KEY_ENV), "GEMINI_API_KEY not set; integration test skipped")
class LiveApiTests(unittest.TestCase):
    """Integration tests that hit the live Gemini API."""

    def test_raw_request_round_trip(self):
        response = core.raw_request("Explain how AI works in a few words")
        self.assertIn("candidates", response)
        self.assertTrue(core.extract_text(response))


if __name__ == "__main__":
    unittest.main()
