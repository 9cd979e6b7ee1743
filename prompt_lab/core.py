"""Core Gemini client logic: configuration, file validation, encoding and API calls.

This module provides:
- Validation and base64 encoding of uploaded images
- Request builders for analysis, editing, prompt improvement and raw requests
- Response parsing tolerant to plain, SDK-style and streamed payloads

HTTP is done with the standard library (``urllib``); Pillow is only needed to
re-encode edited images as PNG.
"""
from __future__ import annotations

import base64
import binascii
import io
import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple
from urllib import error, parse, request

from .errors import (
    ApiCallError,
    ContentBlockedError,
    EmptyResponseError,
    ImageValidationError,
    MissingApiKeyError,
    NoImageProducedError,
)

logger = logging.getLogger(__name__)

# Environment variable names
API_KEY_ENV = "GEMINI_API_KEY"
API_KEY_FALLBACK_ENV = "API_KEY"
TEXT_MODEL_ENV = "PROMPT_LAB_TEXT_MODEL"
IMAGE_MODEL_ENV = "PROMPT_LAB_IMAGE_MODEL"
BASE_URL_ENV = "PROMPT_LAB_BASE_URL"
TIMEOUT_ENV = "PROMPT_LAB_TIMEOUT"

# Optional keyring fallback for the API key.
_DEFAULT_KEYRING_SERVICE = "prompt-lab"
_DEFAULT_KEYRING_ACCOUNT = "GEMINI_API_KEY"

DOTENV_CANDIDATES = [
    Path(__file__).resolve().parents[1] / ".env",
    Path(__file__).resolve().parents[1] / ".env.local",
]

DEFAULT_BASE_URL = "https://generativelanguage.googleapis.com/v1beta/models"
DEFAULT_TEXT_MODEL_ID = "gemini-2.5-flash"
DEFAULT_IMAGE_MODEL_ID = "gemini-2.5-flash-image-preview"
DEFAULT_MIME_TYPE = "image/png"

MAX_IMAGE_BYTES = 5 * 1024 * 1024
SUPPORTED_MIME_TYPES = ("image/jpeg", "image/png", "image/webp")
TOO_LARGE_MESSAGE = "El archivo es demasiado grande. El máximo es 5MB."
UNSUPPORTED_TYPE_MESSAGE = "Formato de archivo no soportado. Usa JPG, PNG o WebP."

EXTENSION_TO_MIME = {
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".webp": "image/webp",
}

ANALYZE_PROMPT = (
    "Genera un prompt detallado para un generador de imágenes a partir de lo que ves. "
    "Tu respuesta debe estar en español, ser muy descriptiva, capturar la atmósfera, los objetos, "
    "los colores y el estilo. Empieza directamente con la descripción; no incluyas ninguna frase "
    "introductoria. Importante: si en la imagen aparece una persona, no describas sus rasgos físicos. "
    "En su lugar, para referirte a la persona, utiliza únicamente la frase "
    "'la imagen que te acabo de subir'."
)

EDIT_TEMPLATE = (
    "Realiza la siguiente edición a la imagen que te he proporcionado. Es muy importante que "
    "mantengas el estilo y la composición general de la imagen original, modificando únicamente lo "
    "que te pido a continuación. No cambies al sujeto, el fondo o la iluminación a menos que la "
    'instrucción sea específicamente sobre eso. La edición es: "{instruction}"'
)

IMPROVE_TEMPLATE = (
    "Mejora el siguiente prompt para un generador de imágenes. Hazlo más rico y detallado en "
    "atmósfera, iluminación, composición, colores y estilo, manteniendo su intención original. "
    "Responde en el mismo idioma del prompt y devuelve únicamente el prompt mejorado, sin frases "
    'introductorias ni comentarios. El prompt es: "{prompt}"'
)


@dataclass
class UploadedImage:
    """An image selected by the user, held in memory only."""
    data: bytes
    mime_type: str
    name: str = ""

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass
class EditResult:
    """Result of an image edit request."""
    buffer: bytes
    mime_type: str
    response: Dict[str, Any]
    text: Optional[str] = None
    source_url: Optional[str] = None


def _prime_dotenv_env() -> None:
    """Load environment variables from .env files for local development."""
    for env_file in DOTENV_CANDIDATES:
        try:
            if not env_file.exists():
                continue
            for raw_line in env_file.read_text().splitlines():
                line = raw_line.strip()
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


# Auto-load .env/.env.local for developer convenience.
_prime_dotenv_env()


def get_api_key(api_key: Optional[str] = None) -> Optional[str]:
    """Get the API key from parameter or environment. Returns None if not set."""
    key = api_key or os.getenv(API_KEY_ENV) or os.getenv(API_KEY_FALLBACK_ENV)
    if key and key.strip():
        return key.strip()

    service = os.getenv("PROMPT_LAB_KEYRING_SERVICE") or _DEFAULT_KEYRING_SERVICE
    account = os.getenv("PROMPT_LAB_KEYRING_ACCOUNT") or _DEFAULT_KEYRING_ACCOUNT
    try:
        import keyring  # type: ignore  # pylint: disable=import-outside-toplevel
        from keyring.errors import KeyringError  # type: ignore  # pylint: disable=import-outside-toplevel
    except ImportError:
        return None

    try:
        stored = keyring.get_password(service, account)
    except KeyringError:
        return None

    if stored and stored.strip():
        return stored.strip()
    return None


def require_api_key(api_key: Optional[str] = None) -> str:
    """Get the API key from parameter, environment, or raise an error."""
    key = get_api_key(api_key)
    if not key:
        raise MissingApiKeyError(
            f"API key not found. Please set the {API_KEY_ENV} environment variable."
        )
    return key


def get_text_model() -> str:
    return os.getenv(TEXT_MODEL_ENV) or DEFAULT_TEXT_MODEL_ID


def get_image_model() -> str:
    return os.getenv(IMAGE_MODEL_ENV) or DEFAULT_IMAGE_MODEL_ID


def get_base_url() -> str:
    return os.getenv(BASE_URL_ENV) or DEFAULT_BASE_URL


def get_timeout() -> Optional[float]:
    """Request timeout in seconds; None (the default) waits for the call to settle."""
    raw = os.getenv(TIMEOUT_ENV)
    if not raw:
        return None
    try:
        value = float(raw)
    except ValueError:
        logger.warning("Ignoring invalid %s value: %r", TIMEOUT_ENV, raw)
        return None
    return value if value > 0 else None


def validate_image(size: int, mime_type: str) -> None:
    """Reject files larger than 5MB or outside the JPEG/PNG/WebP allow-list."""
    if size > MAX_IMAGE_BYTES:
        raise ImageValidationError(TOO_LARGE_MESSAGE, reason="too_large")
    if mime_type not in SUPPORTED_MIME_TYPES:
        raise ImageValidationError(UNSUPPORTED_TYPE_MESSAGE, reason="unsupported_type")


def load_image(image_path: "Path | str") -> UploadedImage:
    """Read an image file from disk and validate it.

    Raises:
        FileNotFoundError: If the image file doesn't exist.
        ImageValidationError: If the file is too large or of an unsupported type.
    """
    path = Path(image_path)
    if not path.exists():
        raise FileNotFoundError(f"Image file not found: {path}")

    mime_type = EXTENSION_TO_MIME.get(path.suffix.lower(), "")
    validate_image(path.stat().st_size, mime_type)
    return UploadedImage(data=path.read_bytes(), mime_type=mime_type, name=path.name)


def to_data_url(data: bytes, mime_type: str) -> str:
    """Encode bytes as a ``data:`` URL, as used for previews and downloads."""
    return f"data:{mime_type};base64,{base64.b64encode(data).decode('ascii')}"


def strip_data_url(value: str) -> str:
    """Drop a leading ``data:<mime>;base64,`` header, leaving raw base64."""
    if value.startswith("data:") and "," in value:
        return value.split(",", 1)[1]
    return value


def encode_image(image: UploadedImage) -> str:
    """Return the image content as raw base64 (no data-URI header)."""
    return strip_data_url(to_data_url(image.data, image.mime_type))


def _buffer_from_inline(data: str) -> bytes:
    """Decode base64 image data."""
    try:
        return base64.b64decode(data)
    except (binascii.Error, ValueError) as exc:
        raise ValueError(f"Unable to decode image data: {exc}") from exc


def build_url(*, base_url: str, model_id: str, stream: bool = False, api_key: Optional[str] = None) -> str:
    """Build the API endpoint URL.

    Streaming requests use server-sent events and carry the key as a query
    parameter; regular requests send it in the ``x-goog-api-key`` header.
    """
    action = "streamGenerateContent" if stream else "generateContent"
    url = f"{base_url.rstrip('/')}/{model_id}:{action}"
    if stream:
        query: Dict[str, str] = {"alt": "sse"}
        if api_key:
            query["key"] = api_key
        url = f"{url}?{parse.urlencode(query)}"
    return url


def _inline_part(image_data: str, mime_type: str) -> Dict[str, Any]:
    return {"inlineData": {"mimeType": mime_type, "data": image_data}}


def build_analyze_request_body(image_data: str, image_mime_type: str) -> Dict[str, Any]:
    """Build the request body asking for a descriptive prompt of an image."""
    if not image_data or not isinstance(image_data, str):
        raise ValueError("Image data is required and must be a base64-encoded string.")
    return {
        "contents": [{
            "parts": [
                _inline_part(image_data, image_mime_type),
                {"text": ANALYZE_PROMPT},
            ]
        }]
    }


def build_edit_request_body(instruction: str, image_data: str, image_mime_type: str = DEFAULT_MIME_TYPE) -> Dict[str, Any]:
    """Build the request body for editing an image.

    The image goes first, followed by the wrapped instruction; the response is
    asked to contain both an image and text.
    """
    if not instruction or not isinstance(instruction, str):
        raise ValueError("Instruction is required and must be a string.")
    if not image_data or not isinstance(image_data, str):
        raise ValueError("Image data is required and must be a base64-encoded string.")
    return {
        "contents": [{
            "parts": [
                _inline_part(image_data, image_mime_type),
                {"text": EDIT_TEMPLATE.format(instruction=instruction)},
            ]
        }],
        "generationConfig": {"responseModalities": ["IMAGE", "TEXT"]},
    }


def build_improve_request_body(prompt: str) -> Dict[str, Any]:
    if not prompt or not isinstance(prompt, str):
        raise ValueError("Prompt is required and must be a string.")
    return {"contents": [{"parts": [{"text": IMPROVE_TEMPLATE.format(prompt=prompt)}]}]}


def build_raw_request_body(prompt: str) -> Dict[str, Any]:
    if not prompt or not isinstance(prompt, str):
        raise ValueError("Prompt is required and must be a string.")
    return {"contents": [{"parts": [{"text": prompt}]}]}


def _decode_json(content: bytes) -> Optional[Dict[str, Any]]:
    try:
        parsed = json.loads(content.decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        return None
    if isinstance(parsed, list) and parsed and isinstance(parsed[0], dict):
        parsed = parsed[0]
    return parsed if isinstance(parsed, dict) else None


def _http_request(
    *,
    url: str,
    method: str,
    api_key: Optional[str] = None,
    payload: Optional[Dict[str, Any]] = None,
    timeout: Optional[float] = None,
) -> bytes:
    data = json.dumps(payload).encode("utf-8") if payload is not None else None
    headers = {"Content-Type": "application/json"}
    if api_key:
        headers["x-goog-api-key"] = api_key
    req = request.Request(url, data=data, headers=headers, method=method)
    logger.debug("%s %s", method, url.split("?", 1)[0])
    try:
        with request.urlopen(req, timeout=timeout) as resp:
            return resp.read()
    except error.HTTPError as exc:
        body = exc.read() if hasattr(exc, "read") else b""
        payload = _decode_json(body)
        detail = body.decode("utf-8", errors="ignore")
        # Structured bodies are kept whole so the normalizer can parse them.
        message = detail if payload is not None else f"API error {exc.code}: {detail[:400]}"
        raise ApiCallError(message, status_code=exc.code, payload=payload) from exc
    except error.URLError as exc:
        raise ApiCallError(f"Network error: {exc.reason}") from exc


def _http_post_json(url: str, payload: Dict[str, Any], api_key: str) -> Dict[str, Any]:
    """Make an HTTP POST request and return the JSON response."""
    content = _http_request(url=url, method="POST", api_key=api_key, payload=payload, timeout=get_timeout())
    try:
        return json.loads(content.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as exc:
        raise ApiCallError(f"Invalid JSON in API response: {exc}") from exc


def _http_post_stream(url: str, payload: Dict[str, Any]) -> str:
    """POST to a streaming endpoint and return the raw body text."""
    content = _http_request(url=url, method="POST", payload=payload, timeout=get_timeout())
    return content.decode("utf-8", errors="replace")


def _http_get_bytes(url: str) -> Tuple[bytes, str]:
    """Download bytes from a URL."""
    req = request.Request(url, method="GET")
    try:
        with request.urlopen(req, timeout=get_timeout()) as resp:
            content_type = resp.headers.get("content-type", DEFAULT_MIME_TYPE)
            return resp.read(), content_type
    except error.HTTPError as exc:
        detail = exc.read().decode("utf-8", errors="ignore") if hasattr(exc, "read") else ""
        raise ApiCallError(f"Download error {exc.code}: {detail[:200]}", status_code=exc.code) from exc
    except error.URLError as exc:
        raise ApiCallError(f"Network error downloading: {exc.reason}") from exc


def _candidate_parts(payload: Dict[str, Any]) -> List[Dict[str, Any]]:
    parts: List[Dict[str, Any]] = []
    for candidate in payload.get("candidates") or []:
        parts.extend((candidate.get("content") or {}).get("parts") or [])
    return parts


def _ensure_candidates(payload: Dict[str, Any]) -> None:
    """Raise a typed error when the response has no candidates."""
    if payload.get("candidates"):
        return
    block_reason = (payload.get("promptFeedback") or {}).get("blockReason")
    if block_reason:
        raise ContentBlockedError(block_reason, payload=payload)
    raise EmptyResponseError(payload=payload)


def extract_text(payload: Dict[str, Any]) -> str:
    """Concatenate the text parts of a response.

    Accepts the SDK-style ``{"text": ...}`` shortcut as well as the raw
    ``candidates`` structure.
    """
    if isinstance(payload.get("text"), str):
        return payload["text"]
    _ensure_candidates(payload)
    first = payload["candidates"][0]
    parts = (first.get("content") or {}).get("parts") or []
    return "".join(part.get("text", "") for part in parts if isinstance(part.get("text"), str))


def parse_stream_text(raw: str) -> str:
    """Concatenate text fragments from a streamed response body.

    The body is newline-delimited JSON, optionally ``data:``-prefixed (SSE), or
    a single JSON array of response chunks.
    """
    chunks: List[Dict[str, Any]] = []
    stripped = raw.strip()
    if stripped.startswith("["):
        try:
            parsed = json.loads(stripped)
        except ValueError:
            parsed = None
        if isinstance(parsed, list):
            chunks = [c for c in parsed if isinstance(c, dict)]

    if not chunks:
        for raw_line in raw.splitlines():
            line = raw_line.strip()
            if line.startswith("data:"):
                line = line[len("data:"):].strip()
            if not line or line == "[DONE]":
                continue
            try:
                parsed = json.loads(line)
            except ValueError:
                logger.debug("Skipping non-JSON stream line: %r", line[:80])
                continue
            if isinstance(parsed, dict):
                chunks.append(parsed)

    if not chunks:
        raise EmptyResponseError()

    for chunk in chunks:
        if isinstance(chunk.get("error"), dict):
            raise ApiCallError(json.dumps(chunk, ensure_ascii=False), payload=chunk)

    texts = [part.get("text", "") for chunk in chunks for part in _candidate_parts(chunk)
             if isinstance(part.get("text"), str)]
    if not texts:
        block_reason = next(
            ((c.get("promptFeedback") or {}).get("blockReason") for c in chunks
             if (c.get("promptFeedback") or {}).get("blockReason")),
            None,
        )
        if block_reason:
            raise ContentBlockedError(block_reason)
        raise EmptyResponseError()
    return "".join(texts)


def _extract_image_part(payload: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Find an image part in the API response.

    Inline data anywhere in the response wins over file or URL references,
    which need a download.
    """
    parts = _candidate_parts(payload)
    for part in parts:
        inline = part.get("inlineData") or {}
        if inline.get("data"):
            return {
                "data": inline.get("data"),
                "mimeType": inline.get("mimeType", DEFAULT_MIME_TYPE),
                "source": "inlineData",
            }
    for part in parts:
        file_data = part.get("fileData") or {}
        if file_data.get("fileUri"):
            return {
                "fileUri": file_data.get("fileUri"),
                "mimeType": file_data.get("mimeType", DEFAULT_MIME_TYPE),
                "source": "fileData",
            }
        if part.get("url"):
            return {
                "url": part.get("url"),
                "mimeType": part.get("mimeType", DEFAULT_MIME_TYPE),
                "source": "url",
            }
    return None


def _extract_response_text(payload: Dict[str, Any]) -> Optional[str]:
    texts = [part["text"] for part in _candidate_parts(payload)
             if isinstance(part.get("text"), str) and part["text"].strip()]
    return "\n".join(texts) if texts else None


def _generate_text(
    body: Dict[str, Any],
    *,
    model_id: Optional[str],
    base_url: Optional[str],
    api_key: Optional[str],
    stream: bool,
) -> str:
    key = require_api_key(api_key)
    model = model_id or get_text_model()
    base = base_url or get_base_url()
    if stream:
        return parse_stream_text(_http_post_stream(build_url(base_url=base, model_id=model, stream=True, api_key=key), body))
    return extract_text(_http_post_json(build_url(base_url=base, model_id=model), body, key))


def analyze(
    image: UploadedImage,
    *,
    model_id: Optional[str] = None,
    base_url: Optional[str] = None,
    api_key: Optional[str] = None,
    stream: bool = False,
) -> str:
    """Ask the text/vision model for a descriptive prompt of ``image``.

    Args:
        image: The validated image to describe.
        model_id: Model to use; defaults to the configured text model.
        base_url: Base URL for the API.
        api_key: Optional API key (uses environment variable if not provided).
        stream: Use the streaming endpoint and concatenate the fragments.

    Returns:
        The generated text, verbatim.

    Raises:
        MissingApiKeyError: If no API key is configured.
        ApiCallError: If the API request fails or the response has no output.
    """
    key = require_api_key(api_key)
    body = build_analyze_request_body(encode_image(image), image.mime_type)
    return _generate_text(body, model_id=model_id, base_url=base_url, api_key=key, stream=stream)


def improve(
    prompt: str,
    *,
    model_id: Optional[str] = None,
    base_url: Optional[str] = None,
    api_key: Optional[str] = None,
    stream: bool = False,
) -> str:
    """Rewrite ``prompt`` into a richer variant in the same language."""
    key = require_api_key(api_key)
    body = build_improve_request_body(prompt)
    return _generate_text(body, model_id=model_id, base_url=base_url, api_key=key, stream=stream)


def edit(
    image: UploadedImage,
    instruction: str,
    *,
    model_id: Optional[str] = None,
    base_url: Optional[str] = None,
    api_key: Optional[str] = None,
) -> EditResult:
    """Edit ``image`` following ``instruction`` with the image-capable model.

    Raises:
        MissingApiKeyError: If no API key is configured.
        ContentBlockedError: If the request was blocked; carries the reason.
        EmptyResponseError: If the response has no candidates.
        NoImageProducedError: If no image part came back; carries any text returned.
        ApiCallError: If the API request fails.
    """
    key = require_api_key(api_key)
    body = build_edit_request_body(instruction, encode_image(image), image.mime_type)
    url = build_url(base_url=base_url or get_base_url(), model_id=model_id or get_image_model())
    response_json = _http_post_json(url, body, key)

    _ensure_candidates(response_json)
    text = _extract_response_text(response_json)
    part = _extract_image_part(response_json)
    if not part:
        raise NoImageProducedError(text, payload=response_json)

    if part.get("data"):
        return EditResult(
            buffer=_buffer_from_inline(part["data"]),
            mime_type=part.get("mimeType", DEFAULT_MIME_TYPE),
            response=response_json,
            text=text,
        )

    target_url = part.get("fileUri") or part.get("url")
    buffer, downloaded_mime = _http_get_bytes(target_url)
    return EditResult(
        buffer=buffer,
        mime_type=downloaded_mime,
        response=response_json,
        text=text,
        source_url=target_url,
    )


def raw_request(
    prompt: str,
    *,
    model_id: Optional[str] = None,
    base_url: Optional[str] = None,
    api_key: Optional[str] = None,
) -> Dict[str, Any]:
    """Send a single-text-part request and return the unprocessed response."""
    key = require_api_key(api_key)
    url = build_url(base_url=base_url or get_base_url(), model_id=model_id or get_text_model())
    return _http_post_json(url, build_raw_request_body(prompt), key)


def infer_extension(mime_type: str = DEFAULT_MIME_TYPE) -> str:
    """Get file extension from MIME type."""
    mapping = {
        "image/png": ".png",
        "image/jpeg": ".jpg",
        "image/webp": ".webp",
        "image/gif": ".gif",
    }
    return mapping.get(mime_type.lower(), ".png")


def to_png(buffer: bytes, mime_type: str = DEFAULT_MIME_TYPE) -> bytes:
    """Re-encode image bytes as PNG for download; PNG input is returned as-is.

    Uses Pillow; raises a friendly error if Pillow is missing.
    """
    if mime_type.lower() == "image/png":
        return buffer

    try:
        from PIL import Image  # pylint: disable=import-outside-toplevel
    except ImportError as exc:
        raise RuntimeError("Pillow is required to convert images to PNG. Install via pyproject.toml.") from exc

    with Image.open(io.BytesIO(buffer)) as im:
        if im.mode not in ("RGB", "RGBA", "L", "LA", "P"):
            im = im.convert("RGBA")
        output = io.BytesIO()
        im.save(output, format="PNG", optimize=True)
        return output.getvalue()


__all__ = [name for name in globals() if not name.startswith("_")]
