"""
Provider adapters.

Each adapter translates a canonical GenerationRequest into one provider's wire
format and parses that provider's response back into canonical form:

    GoogleGenAIAdapter  - direct and BYO keys, generateContent with inlineData parts
    ImagenAdapter       - direct and BYO keys, text-to-image :predict endpoint
    AggregatorAdapter   - OpenAI-compatible chat/completions gateway

Adapters are pure: no network, no logging of payloads, no billing.
"""

import json
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from errors import ValidationError
from models import (
    ASPECT_RATIOS,
    IMAGE_SIZES,
    GatewaySelection,
    GenerationRequest,
    ProviderKind,
    TokenUsage,
    parse_data_uri,
)


RESTRICTED_FREE_TIER_MARKER = "Free credits temporarily have restricted access"

_WHITESPACE = re.compile(r"\s")


@dataclass(frozen=True)
class UpstreamCall:
    url: str
    headers: Dict[str, str]
    body: Dict[str, Any]


@dataclass(frozen=True)
class ParsedResponse:
    images: List[str]
    content: str
    usage: TokenUsage
    provider_metadata: Optional[Any] = None


def _as_count(value: Any) -> int:
    """Coerce a provider token count to a non-negative int."""
    try:
        count = int(value or 0)
    except (TypeError, ValueError):
        return 0
    return max(0, count)


class ProviderAdapter:
    """Interface every provider variant implements."""
    name = "base"

    def endpoint(self, base_url: str, model: str) -> str:
        raise NotImplementedError

    def translate_request(self, request: GenerationRequest, selection: GatewaySelection) -> UpstreamCall:
        raise NotImplementedError

    def parse_response(self, payload: Dict[str, Any]) -> ParsedResponse:
        raise NotImplementedError


class GoogleGenAIAdapter(ProviderAdapter):
    """Google GenAI generateContent format, used by the direct and BYO kinds."""
    name = "google-genai"

    def endpoint(self, base_url: str, model: str) -> str:
        return f"{base_url.rstrip('/')}/v1beta/models/{model}:generateContent"

    @staticmethod
    def _inline_parts(images) -> List[Dict[str, Any]]:
        parts = []
        for img in images:
            parsed = parse_data_uri(img)
            if parsed:
                mime_type, data = parsed
                parts.append({"inlineData": {"mimeType": mime_type, "data": data}})
        return parts

    def translate_request(self, request: GenerationRequest, selection: GatewaySelection) -> UpstreamCall:
        parts: List[Dict[str, Any]] = [{"text": request.instruction}]
        parts.extend(self._inline_parts(request.images))
        parts.extend(self._inline_parts(request.reference_images))

        generation_config: Dict[str, Any] = {"responseModalities": ["TEXT", "IMAGE"]}
        if request.aspect_ratio in ASPECT_RATIOS:
            generation_config["aspectRatio"] = request.aspect_ratio

        return UpstreamCall(
            url=selection.endpoint,
            headers={
                "x-goog-api-key": selection.credential,
                "Content-Type": "application/json",
            },
            body={
                "contents": [{"parts": parts}],
                "generationConfig": generation_config,
            },
        )

    def parse_response(self, payload: Dict[str, Any]) -> ParsedResponse:
        images = []
        content = ""
        candidates = payload.get("candidates") or [{}]
        parts = ((candidates[0] or {}).get("content") or {}).get("parts") or []
        for part in parts:
            inline = part.get("inlineData")
            if inline:
                # Google sometimes embeds newlines in the base64 payload
                data = _WHITESPACE.sub("", inline.get("data") or "")
                images.append(f"data:{inline.get('mimeType', 'image/png')};base64,{data}")
            if part.get("text"):
                content += part["text"]

        usage_metadata = payload.get("usageMetadata") or {}
        usage = TokenUsage(
            prompt_tokens=_as_count(usage_metadata.get("promptTokenCount")),
            completion_tokens=_as_count(usage_metadata.get("candidatesTokenCount")),
        )
        return ParsedResponse(images, content, usage, payload.get("modelVersion"))


class ImagenAdapter(ProviderAdapter):
    """Imagen :predict endpoint. Text-to-image only, reports no usage."""
    name = "imagen"

    def endpoint(self, base_url: str, model: str) -> str:
        return f"{base_url.rstrip('/')}/v1beta/models/{model}:predict"

    def translate_request(self, request: GenerationRequest, selection: GatewaySelection) -> UpstreamCall:
        if request.images:
            raise ValidationError(
                "Imagen models are text-to-image only. Remove uploaded images or switch to a Gemini model."
            )
        parameters: Dict[str, Any] = {"sampleCount": 1}
        if request.aspect_ratio in ASPECT_RATIOS:
            parameters["aspectRatio"] = request.aspect_ratio

        return UpstreamCall(
            url=selection.endpoint,
            headers={
                "x-goog-api-key": selection.credential,
                "Content-Type": "application/json",
            },
            body={
                "instances": [{"prompt": request.instruction}],
                "parameters": parameters,
            },
        )

    def parse_response(self, payload: Dict[str, Any]) -> ParsedResponse:
        images = [
            f"data:image/png;base64,{prediction['bytesBase64Encoded']}"
            for prediction in payload.get("predictions") or []
            if prediction.get("bytesBase64Encoded")
        ]
        return ParsedResponse(images, "", TokenUsage(), payload.get("modelVersion"))


class AggregatorAdapter(ProviderAdapter):
    """OpenAI-compatible chat/completions with image modalities."""
    name = "aggregator"

    def endpoint(self, base_url: str, model: str) -> str:
        return f"{base_url.rstrip('/')}/chat/completions"

    def translate_request(self, request: GenerationRequest, selection: GatewaySelection) -> UpstreamCall:
        content: List[Dict[str, Any]] = [{"type": "text", "text": request.instruction}]
        for img in list(request.images) + list(request.reference_images):
            content.append({"type": "image_url", "image_url": {"url": img, "detail": "high"}})

        body: Dict[str, Any] = {
            "model": selection.model,
            "messages": [{"role": "user", "content": content}],
            "stream": False,
            "modalities": ["text", "image"],
        }

        image_config = {}
        if request.image_size in IMAGE_SIZES:
            image_config["imageSize"] = request.image_size
        if request.aspect_ratio in ASPECT_RATIOS:
            image_config["aspectRatio"] = request.aspect_ratio
        if image_config:
            body["generationConfig"] = {"imageConfig": image_config}

        return UpstreamCall(
            url=selection.endpoint,
            headers={
                "Authorization": f"Bearer {selection.credential}",
                "Content-Type": "application/json",
            },
            body=body,
        )

    def parse_response(self, payload: Dict[str, Any]) -> ParsedResponse:
        choices = payload.get("choices") or [{}]
        message = (choices[0] or {}).get("message") or {}

        images = []
        for img in message.get("images") or []:
            if isinstance(img, str):
                images.append(img)
                continue
            url = (img.get("image_url") or {}).get("url") or img.get("url")
            if url:
                images.append(url)

        content = message.get("content") or ""
        if not isinstance(content, str):
            # Some gateways return content as a list of typed segments
            content = "".join(
                seg.get("text", "") for seg in content if isinstance(seg, dict)
            )

        usage = payload.get("usage") or {}
        return ParsedResponse(
            images,
            content,
            TokenUsage(
                prompt_tokens=_as_count(usage.get("prompt_tokens")),
                completion_tokens=_as_count(usage.get("completion_tokens")),
            ),
            payload.get("providerMetadata") or payload.get("model"),
        )


GOOGLE_GENAI = GoogleGenAIAdapter()
IMAGEN = ImagenAdapter()
AGGREGATOR = AggregatorAdapter()


def adapter_for(kind: ProviderKind, model: str) -> ProviderAdapter:
    """Pick the adapter variant for a provider kind and resolved model name."""
    if kind == ProviderKind.AGGREGATOR:
        return AGGREGATOR
    if model.startswith("imagen-"):
        return IMAGEN
    return GOOGLE_GENAI


def humanize_error(status: int, raw_body: str) -> str:
    """Turn an upstream error status/body into a short user-facing message."""
    message = raw_body or ""
    try:
        parsed = json.loads(message)
        if isinstance(parsed, dict):
            error = parsed.get("error")
            if isinstance(error, dict) and error.get("message"):
                message = error["message"]
            elif isinstance(error, str):
                message = error
    except (ValueError, TypeError):
        pass

    if status == 503:
        return "Model busy, try again"
    if status == 429:
        return "Rate limited: try again later"
    if status == 504:
        return "Request timed out"
    if status >= 500:
        return "Server error, please retry"

    lower = message.lower()
    if "high demand" in lower or "overloaded" in lower:
        return "Model busy, try again"
    if "safety" in lower or "blocked" in lower:
        return "Content blocked by safety filter"
    if "timeout" in lower or "timed out" in lower:
        return "Request timed out"

    if len(message) > 100:
        return message[:100] + "..."
    return message or "Unknown error"
