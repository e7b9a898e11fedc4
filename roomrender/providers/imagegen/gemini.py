from __future__ import annotations

import io
import logging
from datetime import datetime, timedelta, timezone

import httpx
from google import genai
from google.genai import errors as genai_errors
from google.genai import types

from roomrender.core.errors import ProviderConfigError, ProviderError, ProviderTimeoutError
from roomrender.providers.imagegen.base import GeneratedImage, ImageInput, ProviderFile


logger = logging.getLogger(__name__)

_BACKGROUND_PROMPT = (
    "Remove the background from this product photo. Keep the product exactly as it is, "
    "centered, on a plain pure white background. Do not alter the product."
)
_CLEANUP_PROMPT = (
    "Remove the objects indicated by the mask from this room photo and fill the area "
    "so it matches the surrounding floor, walls and lighting. Change nothing else."
)
_CLEANUP_NO_MASK_PROMPT = (
    "Remove clutter and movable objects from the floor of this room photo and fill the "
    "area naturally. Keep walls, windows and lighting unchanged."
)
_SAFETY_FINISH_REASONS = {"SAFETY", "IMAGE_SAFETY", "PROHIBITED_CONTENT", "BLOCKLIST"}


class GeminiImageProvider:
    def __init__(
        self,
        *,
        api_key: str | None,
        composite_model: str,
        prep_model: str,
        file_ttl_s: int,
    ) -> None:
        # Fail fast on missing credentials before any request is attempted.
        if not api_key:
            raise ProviderConfigError("GEMINI_API_KEY is required for the gemini image provider")
        self._client = genai.Client(api_key=api_key)
        self._composite_model = composite_model
        self._prep_model = prep_model
        self._file_ttl_s = file_ttl_s

    async def upload_file(self, data: bytes, *, mime_type: str, display_name: str) -> ProviderFile:
        try:
            uploaded = await self._client.aio.files.upload(
                file=io.BytesIO(data),
                config=types.UploadFileConfig(mime_type=mime_type, display_name=display_name),
            )
        except genai_errors.APIError as exc:
            raise ProviderError(f"File upload failed: {exc}") from exc
        except (httpx.TimeoutException, TimeoutError) as exc:
            raise ProviderTimeoutError("File upload timed out") from exc
        except (httpx.HTTPError, OSError) as exc:
            raise ProviderError(f"File upload failed: {type(exc).__name__}: {exc}") from exc
        if not uploaded.uri:
            raise ProviderError("File upload returned no uri")
        # Files expire server-side; fall back to the configured lifetime when unreported.
        expires_at = uploaded.expiration_time or (
            datetime.now(timezone.utc) + timedelta(seconds=self._file_ttl_s)
        )
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return ProviderFile(uri=uploaded.uri, expires_at=expires_at)

    async def remove_background(self, image: ImageInput) -> GeneratedImage:
        return await self._generate(self._prep_model, [_to_part(image)], _BACKGROUND_PROMPT)

    async def remove_objects(self, room: ImageInput, mask: ImageInput | None) -> GeneratedImage:
        parts = [_to_part(room)]
        prompt = _CLEANUP_NO_MASK_PROMPT
        if mask is not None:
            parts.append(_to_part(mask))
            prompt = _CLEANUP_PROMPT
        return await self._generate(self._prep_model, parts, prompt)

    async def generate_composite(
        self,
        *,
        room: ImageInput,
        product: ImageInput,
        prompt: str,
        variant_id: str,
    ) -> GeneratedImage:
        logger.debug("gemini_composite_request variant_id=%s model=%s", variant_id, self._composite_model)
        return await self._generate(self._composite_model, [_to_part(room), _to_part(product)], prompt)

    async def _generate(self, model: str, parts: list[types.Part], prompt: str) -> GeneratedImage:
        contents = [
            types.Content(role="user", parts=[*parts, types.Part.from_text(text=prompt)]),
        ]
        config = types.GenerateContentConfig(response_modalities=["IMAGE", "TEXT"])
        try:
            response = await self._client.aio.models.generate_content(
                model=model,
                contents=contents,
                config=config,
            )
        except genai_errors.APIError as exc:
            raise ProviderError(f"Gemini request failed: {exc}") from exc
        except (httpx.TimeoutException, TimeoutError) as exc:
            raise ProviderTimeoutError("Gemini request timed out") from exc
        except (httpx.HTTPError, OSError) as exc:
            # Transport failures surface as provider errors like API errors do.
            raise ProviderError(f"Gemini request failed: {type(exc).__name__}: {exc}") from exc
        return _extract_image(response)


def _to_part(image: ImageInput) -> types.Part:
    if image.file_uri:
        return types.Part.from_uri(file_uri=image.file_uri, mime_type=image.mime_type)
    if image.data is None:
        raise ProviderError("Image input has neither file_uri nor data")
    return types.Part.from_bytes(data=image.data, mime_type=image.mime_type)


def _extract_image(response: types.GenerateContentResponse) -> GeneratedImage:
    # Prefer candidates[...].content.parts inline_data; surface safety blocks distinctly.
    feedback = getattr(response, "prompt_feedback", None)
    if feedback is not None and getattr(feedback, "block_reason", None):
        raise ProviderError(f"Prompt blocked: {feedback.block_reason}", code="SAFETY_BLOCK")
    for candidate in response.candidates or []:
        content = candidate.content
        if content is not None and content.parts:
            for part in content.parts:
                if getattr(part, "inline_data", None) is not None and part.inline_data.data:
                    return GeneratedImage(
                        data=part.inline_data.data,
                        mime_type=part.inline_data.mime_type or "image/png",
                    )
        finish_reason = getattr(candidate, "finish_reason", None)
        reason_name = getattr(finish_reason, "name", str(finish_reason or ""))
        if reason_name in _SAFETY_FINISH_REASONS:
            raise ProviderError(f"Output blocked: {reason_name}", code="SAFETY_BLOCK")
    raise ProviderError("No image data in Gemini response")
