"""Per-session view state for the analyzer, editor and API inspector tabs.

Each tab owns an explicit state record. The ``run_*`` handlers mutate the
record in place: they set the tab's loading flag for the duration of the call,
ignore re-submissions while it is set, and always return to idle.
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Optional, Tuple, Union

from . import core
from .errors import (
    CONTEXT_ANALYSIS,
    CONTEXT_EDITING,
    CONTEXT_IMPROVE,
    UNKNOWN_ERROR_MESSAGE,
    ImageValidationError,
    MissingApiKeyError,
    normalize_error,
)

logger = logging.getLogger(__name__)

SELECT_IMAGE_FIRST = "Por favor, selecciona una imagen primero."
IMAGE_AND_PROMPT_REQUIRED = "Por favor, sube una imagen y escribe un prompt."
PROMPT_REQUIRED = "Por favor, introduce un prompt."
NOTHING_TO_IMPROVE = "Primero genera un prompt para poder mejorarlo."
DEFAULT_INSPECTOR_PROMPT = "Explain how AI works in a few words"

# Failures shown to the user instead of propagating.
SURFACED_ERRORS = (ValueError, RuntimeError, OSError)


@dataclass(frozen=True)
class MagicEdit:
    name: str
    prompt: str


MAGIC_EDITS: Tuple[MagicEdit, ...] = (
    MagicEdit(
        "Cinemático",
        "Convierte la imagen a un estilo cinematográfico, con colores dramáticos y una iluminación de "
        "película. Mejora los contrastes y añade un ligero grano de película.",
    ),
    MagicEdit(
        "Acuarela",
        "Transforma la imagen en una pintura de acuarela, con bordes suaves, colores translúcidos y "
        "textura de papel.",
    ),
    MagicEdit(
        "Neón",
        "Añade toques de luz de neón a los bordes de los objetos principales en la imagen. Usa colores "
        "vibrantes como cian, magenta y verde eléctrico.",
    ),
    MagicEdit(
        "Ensueño",
        "Aplica un filtro de ensueño a la imagen, con un enfoque suave (soft focus), un brillo etéreo y "
        "colores pastel desaturados.",
    ),
)

POSE_SUGGESTIONS: Tuple[Tuple[str, str], ...] = (
    ("Sentado/a", "Haz que el sujeto esté sentado/a"),
    ("Brazos Cruzados", "Haz que el sujeto cruce los brazos"),
    ("Caminando", "Haz que el sujeto esté caminando"),
    ("Mirando atrás", "Haz que el sujeto esté mirando hacia atrás"),
)


def get_magic_edit(name: str) -> MagicEdit:
    for magic in MAGIC_EDITS:
        if magic.name == name:
            return magic
    raise KeyError(f"Unknown magic edit: {name}")


@dataclass
class EditedImage:
    """An edited image ready for display and download."""
    data: bytes
    mime_type: str

    @property
    def data_url(self) -> str:
        return core.to_data_url(self.data, self.mime_type)


@dataclass
class AnalyzerState:
    image: Optional[core.UploadedImage] = None
    preview_url: Optional[str] = None
    generated_prompt: str = ""
    is_loading: bool = False
    is_improving: bool = False
    is_editing: bool = False
    active_magic_edit: Optional[str] = None
    edited_image: Optional[EditedImage] = None
    error: str = ""


@dataclass
class EditorState:
    image: Optional[core.UploadedImage] = None
    preview_url: Optional[str] = None
    instruction: str = ""
    edited_image: Optional[EditedImage] = None
    is_loading: bool = False
    error: str = ""


@dataclass
class InspectorState:
    prompt: str = DEFAULT_INSPECTOR_PROMPT
    response_json: Optional[str] = None
    is_loading: bool = False
    error: str = ""


@dataclass
class SessionState:
    """All transient UI state for one browser session."""
    analyzer: AnalyzerState = field(default_factory=AnalyzerState)
    editor: EditorState = field(default_factory=EditorState)
    inspector: InspectorState = field(default_factory=InspectorState)


def _failure_message(exc: Exception, context: Optional[str]) -> str:
    if isinstance(exc, MissingApiKeyError) or context is None:
        return str(exc) or UNKNOWN_ERROR_MESSAGE
    return normalize_error(exc, context).message


def select_image(state: Union[AnalyzerState, EditorState], image: core.UploadedImage) -> bool:
    """Validate ``image`` and make it current for an analyzer or editor state.

    On rejection the error is set and any previously accepted image is cleared.
    """
    try:
        core.validate_image(image.size, image.mime_type)
    except ImageValidationError as exc:
        state.error = str(exc)
        state.image = None
        state.preview_url = None
        return False

    state.image = image
    state.preview_url = core.to_data_url(image.data, image.mime_type)
    state.edited_image = None
    state.error = ""
    if isinstance(state, AnalyzerState):
        state.generated_prompt = ""
        state.active_magic_edit = None
    return True


def run_analysis(state: AnalyzerState, **client_kwargs) -> None:
    if state.is_loading:
        return
    if state.image is None:
        state.error = SELECT_IMAGE_FIRST
        return

    state.is_loading = True
    state.error = ""
    state.generated_prompt = ""
    try:
        state.generated_prompt = core.analyze(state.image, **client_kwargs)
    except SURFACED_ERRORS as exc:
        state.error = _failure_message(exc, CONTEXT_ANALYSIS)
    finally:
        state.is_loading = False


def run_improve(state: AnalyzerState, **client_kwargs) -> None:
    """Replace the generated prompt with a richer rewrite."""
    if state.is_improving:
        return
    if not state.generated_prompt.strip():
        state.error = NOTHING_TO_IMPROVE
        return

    state.is_improving = True
    state.error = ""
    try:
        state.generated_prompt = core.improve(state.generated_prompt, **client_kwargs)
    except SURFACED_ERRORS as exc:
        state.error = _failure_message(exc, CONTEXT_IMPROVE)
    finally:
        state.is_improving = False


def run_magic_edit(state: AnalyzerState, name: str, **client_kwargs) -> None:
    """Apply a preset edit to the analyzer's current image."""
    if state.is_editing:
        return
    if state.image is None:
        state.error = SELECT_IMAGE_FIRST
        return
    magic = get_magic_edit(name)

    state.is_editing = True
    state.active_magic_edit = magic.name
    state.error = ""
    state.edited_image = None
    try:
        result = core.edit(state.image, magic.prompt, **client_kwargs)
        state.edited_image = EditedImage(result.buffer, result.mime_type)
    except SURFACED_ERRORS as exc:
        state.error = _failure_message(exc, CONTEXT_EDITING)
    finally:
        state.is_editing = False
        state.active_magic_edit = None


def run_edit(state: EditorState, **client_kwargs) -> None:
    if state.is_loading:
        return
    if state.image is None or not state.instruction.strip():
        state.error = IMAGE_AND_PROMPT_REQUIRED
        return

    state.is_loading = True
    state.error = ""
    state.edited_image = None
    try:
        result = core.edit(state.image, state.instruction, **client_kwargs)
        state.edited_image = EditedImage(result.buffer, result.mime_type)
    except SURFACED_ERRORS as exc:
        state.error = _failure_message(exc, CONTEXT_EDITING)
    finally:
        state.is_loading = False


def add_pose_suggestion(state: EditorState, suggestion: str) -> str:
    """Swap in ``suggestion`` for any pose already in the instruction, or append it."""
    updated = state.instruction.strip()
    for _, existing in POSE_SUGGESTIONS:
        if existing in updated:
            updated = updated.replace(existing, suggestion, 1)
            break
    else:
        updated = f"{updated} {suggestion}" if updated else suggestion
    state.instruction = updated
    return updated


def send_raw_request(state: InspectorState, **client_kwargs) -> None:
    if state.is_loading:
        return
    if not state.prompt:
        state.error = PROMPT_REQUIRED
        return

    state.is_loading = True
    state.error = ""
    state.response_json = None
    try:
        response = core.raw_request(state.prompt, **client_kwargs)
        state.response_json = json.dumps(response, indent=2, ensure_ascii=False)
    except SURFACED_ERRORS as exc:
        logger.error("Raw API request failed: %r", exc)
        state.error = _failure_message(exc, None)
    finally:
        state.is_loading = False


__all__ = [name for name in globals() if not name.startswith("_")]
