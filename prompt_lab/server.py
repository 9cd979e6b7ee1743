"""MCP server exposing the prompt-lab workflow.

Agents can describe an image, improve a prompt, apply free-text or preset
edits to an image file and send raw requests to the Gemini API.
"""
from __future__ import annotations

import base64
from typing import Optional

from fastmcp import FastMCP

from .core import (
    API_KEY_ENV,
    EditResult,
    analyze,
    edit,
    get_api_key,
    get_base_url,
    get_image_model,
    get_text_model,
    improve,
    infer_extension,
    load_image,
    raw_request,
)
from .errors import (
    CONTEXT_ANALYSIS,
    CONTEXT_EDITING,
    CONTEXT_IMPROVE,
    MissingApiKeyError,
    normalize_error,
)
from .session import MAGIC_EDITS, get_magic_edit

# Create the MCP server instance (logging configured at run-time to avoid deprecation)
mcp = FastMCP("Prompt Lab - Gemini image prompts and edits")


def _encode_edit_result(result: EditResult, *, model: Optional[str], extra: Optional[dict] = None) -> dict:
    payload = {
        "success": True,
        "image_base64": base64.b64encode(result.buffer).decode("utf-8"),
        "mime_type": result.mime_type,
        "extension": infer_extension(result.mime_type),
        "size_bytes": len(result.buffer),
        "model_used": model or get_image_model(),
    }
    if result.text:
        payload["text"] = result.text
    if extra:
        payload.update(extra)
    return payload


def _wrap_tool(fn, context: Optional[str] = None):
    """Execute a tool handler and normalize common error handling."""
    try:
        return fn()
    except MissingApiKeyError as exc:
        return {"success": False, "error": str(exc)}
    except (ValueError, RuntimeError, OSError) as exc:  # noqa: PERF203 safe surface errors
        if context is None:
            return {"success": False, "error": str(exc)}
        normalized = normalize_error(exc, context)
        return {"success": False, "error": normalized.message, "error_kind": normalized.kind.value}


@mcp.tool()
def analyze_image_file(image_path: str, model: Optional[str] = None) -> dict:
    """Generate a detailed image-generator prompt describing an image file.

    Args:
        image_path: Path to a JPEG, PNG or WebP image of at most 5MB.
        model: Optional text/vision model; defaults to the configured one.

    Returns:
        A dictionary containing:
        - success: Boolean indicating if the operation succeeded
        - prompt: The generated description (if successful)
        - error: Error message (if failed)
    """
    return _wrap_tool(
        lambda: {
            "success": True,
            "prompt": analyze(load_image(image_path), model_id=model),
            "model_used": model or get_text_model(),
        },
        CONTEXT_ANALYSIS,
    )


@mcp.tool()
def improve_prompt(prompt: str, model: Optional[str] = None) -> dict:
    """Rewrite a prompt into a richer variant in the same language.

    Args:
        prompt: The existing prompt text.
        model: Optional text model; defaults to the configured one.
    """
    return _wrap_tool(
        lambda: {
            "success": True,
            "prompt": improve(prompt, model_id=model),
            "model_used": model or get_text_model(),
        },
        CONTEXT_IMPROVE,
    )


@mcp.tool()
def edit_image_file(image_path: str, instruction: str, model: Optional[str] = None) -> dict:
    """Edit an image file following a free-text instruction.

    The subject, background and lighting are preserved unless the instruction
    targets them.

    Args:
        image_path: Path to a JPEG, PNG or WebP image of at most 5MB.
        instruction: What to change (e.g., "add a cowboy hat").
        model: Optional image model; defaults to the configured one.

    Returns:
        A dictionary containing:
        - success: Boolean indicating if the edit succeeded
        - image_base64: Base64-encoded edited image (if successful)
        - mime_type / extension / size_bytes: Details of the edited image
        - text: Any text the model returned alongside the image
        - error: Error message (if failed), e.g. a block reason or the model's refusal text
    """
    return _wrap_tool(
        lambda: _encode_edit_result(
            edit(load_image(image_path), instruction, model_id=model),
            model=model,
        ),
        CONTEXT_EDITING,
    )


@mcp.tool()
def list_magic_edits() -> dict:
    """List the preset "magic edit" transformations."""
    return {
        "success": True,
        "magic_edits": [{"name": m.name, "prompt": m.prompt} for m in MAGIC_EDITS],
    }


@mcp.tool()
def magic_edit_image_file(image_path: str, name: str, model: Optional[str] = None) -> dict:
    """Apply a preset edit (see 'list_magic_edits') to an image file.

    Args:
        image_path: Path to a JPEG, PNG or WebP image of at most 5MB.
        name: Preset name, e.g. "Acuarela".
        model: Optional image model; defaults to the configured one.
    """
    try:
        magic = get_magic_edit(name)
    except KeyError:
        return {
            "success": False,
            "error": f"Unknown magic edit '{name}'. Choose from: {', '.join(m.name for m in MAGIC_EDITS)}.",
        }
    return _wrap_tool(
        lambda: _encode_edit_result(
            edit(load_image(image_path), magic.prompt, model_id=model),
            model=model,
            extra={"magic_edit": magic.name},
        ),
        CONTEXT_EDITING,
    )


@mcp.tool()
def send_raw_request(prompt: str, model: Optional[str] = None) -> dict:
    """Send a single-text prompt to generateContent and return the full response.

    Useful for inspecting the raw response structure.
    """
    return _wrap_tool(
        lambda: {
            "success": True,
            "response": raw_request(prompt, model_id=model),
            "model_used": model or get_text_model(),
        }
    )


@mcp.tool()
def check_api_status() -> dict:
    """Report whether an API key is configured and which models are in use."""
    has_key = get_api_key() is not None
    status = {
        "success": True,
        "api_key_configured": has_key,
        "text_model": get_text_model(),
        "image_model": get_image_model(),
        "base_url": get_base_url(),
    }
    if not has_key:
        status["message"] = f"Set the {API_KEY_ENV} environment variable to use the Gemini API."
    return status


# Entry point for running the server
if __name__ == "__main__":
    mcp.run()


__all__ = [name for name in globals() if not name.startswith("_")]
