"""Streamlit front end: analyzer, editor and API inspector tabs.

Run with ``streamlit run prompt_lab/app.py``; no install is needed.
"""
import logging
import sys
from pathlib import Path

# Add the repository root to path so imports work without installing
repo_dir = Path(__file__).resolve().parent.parent
if str(repo_dir) not in sys.path:
    sys.path.insert(0, str(repo_dir))

import streamlit as st  # pylint: disable=wrong-import-position

from prompt_lab import core, session  # pylint: disable=wrong-import-position

logging.basicConfig(level=logging.INFO)

st.set_page_config(
    page_title="Prompt Lab",
    page_icon="🔮",
    layout="wide",
)

st.markdown("""
<style>
.stButton > button {
    width: 100%;
}
</style>
""", unsafe_allow_html=True)


class PromptLabApp:
    """Binds the session state records to Streamlit widgets."""

    def __init__(self):
        if "prompt_lab" not in st.session_state:
            st.session_state.prompt_lab = session.SessionState()
            st.session_state.uploaded_keys = {}
        self.state = st.session_state.prompt_lab

    def _handle_upload(self, tab: str, tab_state, uploaded) -> None:
        """Select a newly uploaded file once; reruns keep the current selection."""
        if uploaded is None:
            return
        key = (uploaded.name, uploaded.size)
        if st.session_state.uploaded_keys.get(tab) == key:
            return
        st.session_state.uploaded_keys[tab] = key
        image = core.UploadedImage(data=uploaded.getvalue(), mime_type=uploaded.type or "", name=uploaded.name)
        session.select_image(tab_state, image)

    def _show_edited_image(self, edited: session.EditedImage, key: str) -> None:
        st.image(edited.data, caption="Imagen editada")
        try:
            png = core.to_png(edited.data, edited.mime_type)
        except (RuntimeError, OSError) as exc:
            st.warning(f"No se pudo preparar la descarga: {exc}")
            return
        st.download_button(
            "Descargar Imagen",
            data=png,
            file_name="imagen-editada.png",
            mime="image/png",
            key=key,
        )

    def render_analyzer(self) -> None:
        state = self.state.analyzer
        left, right = st.columns(2)

        with left:
            uploaded = st.file_uploader(
                "Haz clic para cargar una imagen", type=["jpg", "jpeg", "png", "webp"], key="analyzer_upload"
            )
            self._handle_upload("analyzer", state, uploaded)
            if state.image is not None:
                st.image(state.image.data, caption="Vista previa")
            if st.button("Analizar Imagen", disabled=state.image is None or state.is_loading):
                with st.spinner("Analizando matriz de píxeles..."):
                    session.run_analysis(state)

        with right:
            if state.error:
                st.error(state.error)
            elif state.generated_prompt:
                st.subheader("Prompt Generado")
                st.code(state.generated_prompt, language=None)
                if st.button("Mejorar", disabled=state.is_improving):
                    with st.spinner("Mejorando..."):
                        session.run_improve(state)
                    st.rerun()
            else:
                st.info("El prompt generado por la IA aparecerá aquí.")

            if state.image is not None and state.generated_prompt:
                st.subheader("Ediciones Mágicas")
                columns = st.columns(len(session.MAGIC_EDITS))
                for column, magic in zip(columns, session.MAGIC_EDITS):
                    if column.button(magic.name, disabled=state.is_editing, key=f"magic_{magic.name}"):
                        with st.spinner(f"Aplicando {magic.name}..."):
                            session.run_magic_edit(state, magic.name)
                        st.rerun()
                if state.edited_image is not None:
                    self._show_edited_image(state.edited_image, key="analyzer_download")

    def render_editor(self) -> None:
        state = self.state.editor
        left, right = st.columns(2)

        with left:
            uploaded = st.file_uploader(
                "Haz clic para cargar una imagen", type=["jpg", "jpeg", "png", "webp"], key="editor_upload"
            )
            self._handle_upload("editor", state, uploaded)
            if state.image is not None:
                st.image(state.image.data, caption="Vista previa")

            state.instruction = st.text_area(
                "Describe los cambios que quieres hacer",
                value=state.instruction,
                placeholder="ej. 'añade un sombrero de vaquero'",
                disabled=state.is_loading,
            )

            st.caption("Sugerencias de Pose")
            columns = st.columns(len(session.POSE_SUGGESTIONS))
            for column, (label, suggestion) in zip(columns, session.POSE_SUGGESTIONS):
                if column.button(label, disabled=state.is_loading, key=f"pose_{label}"):
                    session.add_pose_suggestion(state, suggestion)
                    st.rerun()

            if st.button(
                "Generar Edición",
                disabled=state.image is None or not state.instruction or state.is_loading,
            ):
                with st.spinner("Procesando edición..."):
                    session.run_edit(state)

        with right:
            if state.error:
                st.error(f"Error de Edición: {state.error}")
            elif state.edited_image is not None:
                self._show_edited_image(state.edited_image, key="editor_download")
            else:
                st.info("Tu imagen editada aparecerá aquí.")

    def render_inspector(self) -> None:
        state = self.state.inspector
        st.subheader("Inspector de API de Gemini")
        st.caption("Envía una petición directa a `generateContent` y examina la respuesta completa.")
        state.prompt = st.text_area("Contenido del Prompt", value=state.prompt, disabled=state.is_loading)
        if st.button("Enviar Petición", disabled=not state.prompt or state.is_loading):
            with st.spinner("Esperando respuesta de la API..."):
                session.send_raw_request(state)

        if state.error:
            st.error(f"Error de API: {state.error}")
        elif state.response_json:
            st.code(state.response_json, language="json")

    def run(self) -> None:
        st.title("Prompt Lab")
        if core.get_api_key() is None:
            st.warning(f"Configura la variable de entorno {core.API_KEY_ENV} para usar la API de Gemini.")

        analyzer_tab, editor_tab, inspector_tab = st.tabs(["Analizador", "Editor", "Inspector de API"])
        with analyzer_tab:
            self.render_analyzer()
        with editor_tab:
            self.render_editor()
        with inspector_tab:
            self.render_inspector()


PromptLabApp().run()
