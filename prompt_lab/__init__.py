"""Prompt Lab - image prompts and edits with Google Gemini.

This package describes images as image-generator prompts, improves those
prompts and applies free-text or preset edits, through a Streamlit page and an
MCP server.
"""

from .core import (
    API_KEY_ENV,
    DEFAULT_IMAGE_MODEL_ID,
    DEFAULT_TEXT_MODEL_ID,
    EditResult,
    UploadedImage,
    analyze,
    edit,
    encode_image,
    get_api_key,
    improve,
    load_image,
    raw_request,
    validate_image,
)
from .errors import (
    ApiCallError,
    ContentBlockedError,
    EmptyResponseError,
    ErrorKind,
    ImageValidationError,
    MissingApiKeyError,
    NoImageProducedError,
    OperationError,
    normalize_error,
)

__all__ = [
    "API_KEY_ENV",
    "DEFAULT_IMAGE_MODEL_ID",
    "DEFAULT_TEXT_MODEL_ID",
    "ApiCallError",
    "ContentBlockedError",
    "EditResult",
    "EmptyResponseError",
    "ErrorKind",
    "ImageValidationError",
    "MissingApiKeyError",
    "NoImageProducedError",
    "OperationError",
    "UploadedImage",
    "analyze",
    "edit",
    "encode_image",
    "get_api_key",
    "improve",
    "load_image",
    "normalize_error",
    "raw_request",
    "validate_image",
]

__version__ = "1.0.0"
