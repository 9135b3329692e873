from __future__ import annotations

import asyncio
import logging

from chatpipe.core.config import get_settings
from chatpipe.core.errors import GenerationError, GenerationTimeoutError, ProviderConfigError
from chatpipe.providers.llm.base import GenerationRequest, GenerationResult, render_messages

logger = logging.getLogger(__name__)


class GeminiVertexGenerator:
    def __init__(self) -> None:
        self._settings = get_settings()
        self._model = None

    def _format_messages(self, request: GenerationRequest) -> str:
        # System guidance and knowledge context go at the top of the prompt.
        system_lines: list[str] = []
        other_lines: list[str] = []
        for msg in render_messages(request):
            role = msg["role"]
            line = f"{role.upper()}: {msg['content']}"
            if role == "system":
                system_lines.append(line)
            else:
                other_lines.append(line)
        return "\n".join(system_lines + other_lines)

    def _validate_config(self) -> tuple[str, str, str]:
        # Fail fast to avoid confusing downstream SDK errors.
        project = self._settings.google_cloud_project
        location = self._settings.google_cloud_location
        model = self._settings.gemini_model
        missing = []
        if not project:
            missing.append("GOOGLE_CLOUD_PROJECT")
        if not location:
            missing.append("GOOGLE_CLOUD_LOCATION")
        if not model:
            missing.append("GEMINI_MODEL")
        if missing:
            raise ProviderConfigError(f"Vertex config missing: set {', '.join(missing)} in .env.")
        return project, location, model

    def _get_model(self):
        if self._model is not None:
            return self._model
        project, location, model_name = self._validate_config()
        try:
            from vertexai import init
            from vertexai.generative_models import GenerativeModel
        except ImportError as exc:  # pragma: no cover - import errors are environment-specific
            raise ProviderConfigError("Vertex AI SDK not available. Install google-cloud-aiplatform.") from exc
        init(project=project, location=location)
        self._model = GenerativeModel(model_name)
        return self._model

    async def generate(self, request: GenerationRequest) -> GenerationResult:
        model = self._get_model()
        from google.api_core.exceptions import GoogleAPICallError, PermissionDenied, Unauthenticated
        from google.auth.exceptions import DefaultCredentialsError, RefreshError
        from vertexai.generative_models import GenerationConfig

        timeout_s = max(1.0, self._settings.generation_timeout_ms / 1000.0)
        config = GenerationConfig(
            max_output_tokens=self._settings.llm_max_output_tokens,
            temperature=self._settings.llm_temperature,
        )
        try:
            logger.info(
                "vertex_generate_start tenant_id=%s model=%s", request.tenant_id, self._settings.gemini_model
            )
            response = await asyncio.wait_for(
                model.generate_content_async(self._format_messages(request), generation_config=config),
                timeout=timeout_s,
            )
        except asyncio.TimeoutError as exc:
            logger.warning("vertex_generate_timeout tenant_id=%s", request.tenant_id)
            raise GenerationTimeoutError("Vertex generation timed out.") from exc
        except (DefaultCredentialsError, RefreshError, PermissionDenied, Unauthenticated) as exc:
            logger.warning("vertex_generate_auth_error tenant_id=%s", request.tenant_id)
            raise ProviderConfigError(
                "Vertex auth error: run `gcloud auth application-default login`."
            ) from exc
        except GoogleAPICallError as exc:
            logger.error("vertex_generate_error tenant_id=%s", request.tenant_id)
            raise GenerationError("Vertex AI request failed.") from exc

        text = (getattr(response, "text", None) or "").strip()
        if not text:
            raise GenerationError("Vertex AI returned an empty reply.")
        usage = getattr(response, "usage_metadata", None)
        return GenerationResult(
            text=text,
            tokens_in=int(getattr(usage, "prompt_token_count", 0) or 0),
            tokens_out=int(getattr(usage, "candidates_token_count", 0) or 0),
            model=self._settings.gemini_model,
        )
