"""
Gateway dispatcher.

Validates a canonical GenerationRequest, picks exactly one upstream gateway from
the model identifier prefix, performs a single upstream call and classifies the
outcome. Billing and logging of job events happen elsewhere.
"""

import json
import time
import logging
from typing import Callable, Optional

import aiohttp

from config import Settings
from errors import (
    AuthRejected,
    ConfigurationError,
    MissingCredential,
    PayloadTooLarge,
    RateLimited,
    RestrictedFreeTier,
    UpstreamError,
    ValidationError,
)
from models import (
    MODES,
    GatewaySelection,
    GenerationRequest,
    GenerationResult,
    ProviderKind,
    decoded_size,
)
from providers import RESTRICTED_FREE_TIER_MARKER, adapter_for, humanize_error

logger = logging.getLogger(__name__)


# Preview model names the Google API expects when called directly
DIRECT_MODEL_NAMES = {
    "gemini-3-pro-image": "gemini-3-pro-image-preview",
    "gemini-3.1-flash-image": "gemini-3.1-flash-image-preview",
}

BYO_PREFIX = "byo/"
DIRECT_PREFIXES = ("netlify/", "direct/")
GOOGLE_PREFIX = "google/"


def validate_request(request: GenerationRequest, settings: Settings) -> None:
    """Reject bad input before any balance read or upstream call."""
    instruction = request.instruction
    if not isinstance(instruction, str) or not instruction.strip():
        raise ValidationError("Missing instruction")
    if len(instruction) > settings.max_instruction_length:
        raise ValidationError(
            f"Instruction too long (max {settings.max_instruction_length} characters)"
        )

    for name, value in (
        ("model", request.model),
        ("imageSize", request.image_size),
        ("batchId", request.batch_id),
        ("requestId", request.request_id),
    ):
        if value is not None and not isinstance(value, str):
            raise ValidationError(f"{name} must be a string")

    if request.mode not in MODES:
        raise ValidationError(f"Unsupported mode (expected one of {', '.join(MODES)})")

    limit_mb = settings.max_image_bytes / (1024 * 1024)
    for kind, images in (("image", request.images), ("reference", request.reference_images)):
        if not isinstance(images, tuple):
            field_name = "images" if kind == "image" else "referenceImages"
            raise ValidationError(f"{field_name} must be a list of encoded images")
        for index, img in enumerate(images, start=1):
            if not isinstance(img, str) or not img:
                raise ValidationError(f"{kind.capitalize()} {index} is not a valid encoded image")
            if decoded_size(img) > settings.max_image_bytes:
                label = "Image" if kind == "image" else "Reference image"
                raise PayloadTooLarge(
                    f"{label} {index} too large (max {limit_mb:g}MB)",
                    index=index,
                    kind=kind,
                )

    if request.aspect_ratio is not None and not isinstance(request.aspect_ratio, str):
        raise ValidationError("aspectRatio must be a string")


def resolve_selection(
    model: Optional[str],
    settings: Settings,
    byo_api_key: Optional[str] = None,
) -> GatewaySelection:
    """
    Map a model identifier to exactly one gateway.

    byo/<model>               -> caller's personal Google key
    netlify/ or direct/       -> service Google key
    google/<model>            -> aggregator with the bare model name
    anything else             -> aggregator, name passed through
    """
    model_id = model or settings.default_model

    if model_id.startswith(BYO_PREFIX):
        kind = ProviderKind.BYO
        name = model_id[len(BYO_PREFIX):]
    elif model_id.startswith(DIRECT_PREFIXES):
        kind = ProviderKind.DIRECT
        name = model_id.split("/", 1)[1]
    elif model_id.startswith(GOOGLE_PREFIX):
        kind = ProviderKind.AGGREGATOR
        name = model_id[len(GOOGLE_PREFIX):]
    else:
        kind = ProviderKind.AGGREGATOR
        name = model_id

    if not name:
        raise ValidationError(f"Invalid model identifier: {model_id}")

    if kind != ProviderKind.AGGREGATOR:
        name = DIRECT_MODEL_NAMES.get(name, name)

    if kind == ProviderKind.BYO:
        if not byo_api_key:
            raise MissingCredential(
                "No Gemini API key saved. Add your key in Settings to use BYO models."
            )
        credential = byo_api_key
        base_url = settings.google_base_url
    elif kind == ProviderKind.DIRECT:
        if not settings.google_api_key:
            raise ConfigurationError("Google direct API key not configured")
        credential = settings.google_api_key
        base_url = settings.google_base_url
    else:
        if not settings.aggregator_api_key:
            raise ConfigurationError("AI Gateway not configured")
        credential = settings.aggregator_api_key
        base_url = settings.aggregator_base_url

    endpoint = adapter_for(kind, name).endpoint(base_url, name)
    return GatewaySelection(kind=kind, model=name, endpoint=endpoint, credential=credential)


def classify_error(status: int, body: str) -> UpstreamError:
    """Map a non-2xx upstream response to a typed error."""
    snippet = (body or "")[:500]
    if status == 403:
        if RESTRICTED_FREE_TIER_MARKER in (body or ""):
            return RestrictedFreeTier(
                "Free tier access is restricted for this model. Try a different model or add credits.",
                {"body": snippet},
            )
        return AuthRejected(
            "Upstream provider rejected the request (403). Check API key permissions.",
            {"body": snippet},
        )
    if status == 429:
        return RateLimited(snippet)
    return UpstreamError(status, snippet, humanize_error(status, body))


class Dispatcher:
    """Performs exactly one upstream call per request. No retries."""

    def __init__(self, settings: Settings, session_factory: Callable = aiohttp.ClientSession):
        self.settings = settings
        self.session_factory = session_factory

    def select(self, request: GenerationRequest, byo_api_key: Optional[str] = None) -> GatewaySelection:
        return resolve_selection(request.model, self.settings, byo_api_key)

    async def dispatch(
        self,
        request: GenerationRequest,
        byo_api_key: Optional[str] = None,
        selection: Optional[GatewaySelection] = None,
    ) -> GenerationResult:
        validate_request(request, self.settings)
        if selection is None:
            selection = self.select(request, byo_api_key)

        adapter = adapter_for(selection.kind, selection.model)
        call = adapter.translate_request(request, selection)

        logger.info(
            f"Dispatching to {selection.gateway_name} gateway: model={selection.model}, "
            f"images={len(request.images)}, refs={len(request.reference_images)}, "
            f"size={request.image_size}"
        )

        start = time.monotonic()
        try:
            # No client-side timeout: large generations can legitimately take minutes
            async with self.session_factory(timeout=aiohttp.ClientTimeout(total=None)) as session:
                async with session.post(call.url, headers=call.headers, json=call.body) as response:
                    status = response.status
                    text = await response.text()
        except aiohttp.ClientError as e:
            logger.error(f"Upstream transport error ({selection.gateway_name}): {e}")
            raise UpstreamError(502, str(e), "Could not reach the image provider")
        elapsed_ms = int((time.monotonic() - start) * 1000)

        if not 200 <= status < 300:
            logger.error(f"Upstream error ({selection.gateway_name}): {status}")
            logger.error(f"Response text: {text[:500]}")
            raise classify_error(status, text)

        try:
            payload = json.loads(text)
        except ValueError:
            logger.error(f"Upstream returned non-JSON body ({selection.gateway_name}): {text[:200]}")
            raise UpstreamError(502, text, "Invalid response from image provider")
        if not isinstance(payload, dict):
            raise UpstreamError(502, text, "Invalid response from image provider")

        parsed = adapter.parse_response(payload)
        result = GenerationResult(
            images=tuple(parsed.images),
            content=parsed.content,
            usage=parsed.usage,
            elapsed_ms=elapsed_ms,
            selection=selection,
            provider_metadata=parsed.provider_metadata,
        )

        if result.is_warning:
            logger.warning(f"No images returned by {selection.model} after {elapsed_ms}ms")
        else:
            logger.info(
                f"Received {len(result.images)} image(s) from {selection.model} in {elapsed_ms}ms "
                f"(tokens: {parsed.usage.total_tokens})"
            )
        return result
