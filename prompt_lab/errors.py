"""Exception types and error normalization for Gemini API failures.

The API reports failures in several shapes: a non-2xx body carrying
``{"error": {"message", "code", "status"}}``, an exception whose message is that
same JSON encoded as a string, or a plain message. ``normalize_error`` folds all
of them into a single ``OperationError`` suitable for display.
"""
from __future__ import annotations

import enum
import json
import logging
from typing import Any, Dict, Optional, Tuple

logger = logging.getLogger(__name__)

QUOTA_EXCEEDED_MESSAGE = (
    "Límite de cuota de API excedido. Por favor, revisa tu plan de facturación o inténtalo más tarde."
)
UNKNOWN_ERROR_MESSAGE = "Ocurrió un error desconocido."

CONTEXT_ANALYSIS = "analysis"
CONTEXT_EDITING = "editing"
CONTEXT_IMPROVE = "improve"

CONTEXT_PREFIXES = {
    CONTEXT_ANALYSIS: "Error al analizar la imagen.",
    CONTEXT_EDITING: "No se pudo editar la imagen.",
    CONTEXT_IMPROVE: "No se pudo mejorar el prompt.",
}


class ErrorKind(str, enum.Enum):
    """Category of a normalized failure."""

    QUOTA_EXCEEDED = "quota_exceeded"
    BLOCKED = "blocked"
    NO_IMAGE = "no_image"
    EMPTY_RESPONSE = "empty_response"
    GENERIC = "generic"


class PromptLabError(Exception):
    """Base class for every error raised by this package."""


class MissingApiKeyError(PromptLabError, ValueError):
    """No API key configured; raised before any network call."""


class ImageValidationError(PromptLabError, ValueError):
    """A selected file was rejected by the validator."""

    def __init__(self, message: str, *, reason: str) -> None:
        super().__init__(message)
        self.reason = reason


class ApiCallError(PromptLabError, RuntimeError):
    """Transport failure or non-2xx response from the API.

    ``str(exc)`` is the raw response body (or transport error text); ``payload``
    holds the body parsed as JSON when it was JSON.
    """

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.payload = payload


class ResponseError(ApiCallError):
    """The HTTP call succeeded but the response holds no usable output."""

    kind = ErrorKind.GENERIC


class ContentBlockedError(ResponseError):
    kind = ErrorKind.BLOCKED

    def __init__(self, reason: str, *, payload: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(
            f"La solicitud fue bloqueada. Razón: {reason}. Por favor, modifica el prompt.",
            payload=payload,
        )
        self.reason = reason


class EmptyResponseError(ResponseError):
    kind = ErrorKind.EMPTY_RESPONSE

    def __init__(self, *, payload: Optional[Dict[str, Any]] = None) -> None:
        super().__init__("La IA no generó una respuesta válida. Inténtalo de nuevo.", payload=payload)


class NoImageProducedError(ResponseError):
    """Candidates came back but none carried image data."""

    kind = ErrorKind.NO_IMAGE

    def __init__(self, text: Optional[str] = None, *, payload: Optional[Dict[str, Any]] = None) -> None:
        if text:
            message = f'La IA no generó una imagen y en su lugar respondió: "{text}"'
        else:
            message = "La IA no generó una imagen. Intenta con un prompt diferente."
        super().__init__(message, payload=payload)
        self.text = text


class OperationError(PromptLabError):
    """A failure ready to show to the user."""

    def __init__(self, message: str, *, kind: ErrorKind = ErrorKind.GENERIC, context: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.kind = kind
        self.context = context


def _structured_error(candidate: Any) -> Optional[Dict[str, Any]]:
    if isinstance(candidate, dict):
        inner = candidate.get("error")
        if isinstance(inner, dict) and (inner.get("message") or inner.get("status") or inner.get("code")):
            return inner
    return None


def _parse_json_message(message: str) -> Optional[Dict[str, Any]]:
    try:
        parsed = json.loads(message)
    except (TypeError, ValueError):
        return None
    # Streaming endpoints wrap the error object in a list.
    if isinstance(parsed, list) and parsed:
        parsed = parsed[0]
    return _structured_error(parsed)


def _is_quota_error(api_error: Dict[str, Any]) -> bool:
    code = api_error.get("code")
    try:
        code = int(code) if code is not None else None
    except (TypeError, ValueError):
        code = None
    return api_error.get("status") == "RESOURCE_EXHAUSTED" or code == 429


def _raw_message(error: Any) -> str:
    if error is None:
        return UNKNOWN_ERROR_MESSAGE
    try:
        if isinstance(error, BaseException):
            return str(error) or error.__class__.__name__
        if isinstance(error, dict):
            return json.dumps(error, ensure_ascii=False, default=str)
        return str(error)
    except Exception:  # pylint: disable=broad-except
        return UNKNOWN_ERROR_MESSAGE


def _describe(error: Any) -> Tuple[str, ErrorKind]:
    if isinstance(error, ResponseError):
        return str(error), error.kind

    api_error = _structured_error(error)
    if api_error is None:
        api_error = _structured_error({"error": getattr(error, "error", None)})
    if api_error is None:
        api_error = _structured_error(getattr(error, "payload", None))
    if api_error is None and isinstance(error, (BaseException, str)):
        api_error = _parse_json_message(str(error))

    if api_error is None:
        return _raw_message(error), ErrorKind.GENERIC
    if _is_quota_error(api_error):
        return QUOTA_EXCEEDED_MESSAGE, ErrorKind.QUOTA_EXCEEDED
    return str(api_error.get("message") or _raw_message(error)), ErrorKind.GENERIC


def normalize_error(error: Any, context: str) -> OperationError:
    """Convert any failure into an ``OperationError`` labeled for ``context``.

    Already-normalized errors are returned unchanged. Never raises.
    """
    if isinstance(error, OperationError):
        return error

    logger.error("Gemini API call failed for %s: %r", context, error)
    try:
        message, kind = _describe(error)
    except Exception:  # pylint: disable=broad-except
        message, kind = _raw_message(error), ErrorKind.GENERIC

    prefix = CONTEXT_PREFIXES.get(context)
    text = f"{prefix} {message}" if prefix else message
    return OperationError(text, kind=kind, context=context)


__all__ = [name for name in globals() if not name.startswith("_")]
