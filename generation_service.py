"""
One image generation end to end:
snapshot -> pre-check -> dispatch -> metering -> canonical response.
"""

import uuid
import logging
from dataclasses import replace
from typing import Any, Dict

from config import Settings
from db_store import BalanceStore
from errors import GatewayError, InternalError
from gateway import Dispatcher, validate_request
from identity import Identity
from metering_service import MeteringService
from models import GenerationContext, GenerationRequest, GenerationResult, MeterOutcome

logger = logging.getLogger(__name__)


class GenerationService:
    def __init__(
        self,
        settings: Settings,
        dispatcher: Dispatcher,
        metering: MeteringService,
        balances: BalanceStore,
    ):
        self.settings = settings
        self.dispatcher = dispatcher
        self.metering = metering
        self.balances = balances

    def prepare(self, identity: Identity, request: GenerationRequest) -> GenerationContext:
        """
        Everything that must pass before an upstream call is allowed.
        Any rejection is recorded as a zero-cost job event and re-raised.
        """
        if not request.request_id:
            request = replace(request, request_id=uuid.uuid4().hex)
        ctx = GenerationContext(user_id=identity.user_id, request=request)
        try:
            validate_request(request, self.settings)
            profile = self.balances.get_profile(identity.user_id)
            if profile is None:
                profile = self.balances.ensure_profile(identity.user_id, identity.email)
            ctx.selection = self.dispatcher.select(request, profile.get("gemini_api_key"))
            self.metering.check_balance(ctx)
        except GatewayError as e:
            self.metering.meter_failure(ctx, e)
            raise
        except Exception as e:
            logger.error(f"Unexpected error preparing request for {identity.user_id}: {e}")
            self.metering.meter_failure(ctx, e)
            raise InternalError("Internal server error")
        return ctx

    async def run(self, ctx: GenerationContext) -> Dict[str, Any]:
        try:
            result = await self.dispatcher.dispatch(ctx.request, selection=ctx.selection)
        except GatewayError as e:
            self.metering.meter_failure(ctx, e)
            raise
        except Exception as e:
            logger.exception(f"Unexpected error during generation for {ctx.user_id}")
            self.metering.meter_failure(ctx, e)
            raise InternalError("Internal server error")

        outcome = self.metering.meter_success(ctx, result)
        for advisory in outcome.advisory_errors:
            logger.warning(f"Advisory metering issue for {ctx.user_id}: {advisory}")
        return self.build_response(ctx, result, outcome)

    async def generate(self, identity: Identity, request: GenerationRequest) -> Dict[str, Any]:
        ctx = self.prepare(identity, request)
        return await self.run(ctx)

    def build_response(self, ctx: GenerationContext, result: GenerationResult, outcome: MeterOutcome) -> Dict[str, Any]:
        usage = result.usage
        response = {
            "images": list(result.images),
            "content": result.content,
            "usage": {
                "prompt_tokens": usage.prompt_tokens,
                "completion_tokens": usage.completion_tokens,
                "total_tokens": usage.total_tokens or self.settings.fallback_token_estimate,
            },
            "elapsed": result.elapsed_ms,
            "model": result.selection.model,
            "imageSize": ctx.request.image_size,
            "tokens_remaining": outcome.new_balance,
            "gateway": result.selection.gateway_name,
            "providerMetadata": result.provider_metadata,
        }
        if result.is_warning:
            response["warning"] = result.warning_reason
        return response
