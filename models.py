"""
Canonical data model shared by the dispatcher, metering and webhook paths.
"""

import re
import time
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


DATA_URI_PATTERN = re.compile(r"^data:([^;]+);base64,(.+)$", re.DOTALL)

IMAGE_SIZES = ("1K", "2K", "4K")
ASPECT_RATIOS = ("1:1", "2:3", "3:4", "4:5", "9:16", "3:2", "4:3", "5:4", "16:9", "21:9")
MODES = ("batch", "combine", "resize")


class ProviderKind(str, Enum):
    DIRECT = "direct"
    BYO = "byo"
    AGGREGATOR = "aggregator"


class JobStatus(str, Enum):
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


class PurchaseStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


def parse_data_uri(value: str) -> Optional[Tuple[str, str]]:
    """Split a base64 data URI into (mime_type, payload). None if not a data URI."""
    match = DATA_URI_PATTERN.match(value or "")
    if not match:
        return None
    return match.group(1), match.group(2)


def decoded_size(encoded: str) -> float:
    """Approximate decoded byte size of a base64 string."""
    return len(encoded) * 0.75


@dataclass(frozen=True)
class GenerationRequest:
    """One canonical generate-image call. Immutable once built."""
    instruction: str
    images: Tuple[str, ...] = ()
    reference_images: Tuple[str, ...] = ()
    model: Optional[str] = None
    image_size: str = "1K"
    aspect_ratio: Optional[str] = None
    mode: str = "batch"
    batch_id: Optional[str] = None
    request_id: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: Any) -> "GenerationRequest":
        """
        Build from the inbound JSON body (`image` or `images`, `referenceImages`, ...).

        Values are taken as sent. Lists become tuples; anything else is kept
        so validate_request can reject it and the attempt still gets logged.
        """
        if not isinstance(payload, dict):
            payload = {}
        images = payload.get("images")
        if images is None:
            single = payload.get("image")
            images = [single] if single else []
        references = payload.get("referenceImages") or []
        return cls(
            instruction=payload.get("instruction"),
            images=tuple(images) if isinstance(images, list) else images,
            reference_images=tuple(references) if isinstance(references, list) else references,
            model=payload.get("model") or None,
            image_size=payload.get("imageSize") or "1K",
            aspect_ratio=payload.get("aspectRatio") or None,
            mode=payload.get("mode") or "batch",
            batch_id=payload.get("batchId"),
            request_id=payload.get("requestId"),
        )

    def to_payload(self) -> Dict[str, Any]:
        """Inverse of from_payload, used to persist queued jobs."""
        return {
            "instruction": self.instruction,
            "images": list(self.images),
            "referenceImages": list(self.reference_images),
            "model": self.model,
            "imageSize": self.image_size,
            "aspectRatio": self.aspect_ratio,
            "mode": self.mode,
            "batchId": self.batch_id,
            "requestId": self.request_id,
        }

    @property
    def image_count(self) -> int:
        return len(self.images) if isinstance(self.images, tuple) else 0

    @property
    def total_input_bytes(self) -> int:
        if not isinstance(self.images, tuple):
            return 0
        return sum(len(img) for img in self.images if isinstance(img, str))


@dataclass(frozen=True)
class GatewaySelection:
    """Derived per request from the model identifier prefix."""
    kind: ProviderKind
    model: str
    endpoint: str
    credential: str = field(repr=False)

    @property
    def gateway_name(self) -> str:
        return self.kind.value


@dataclass(frozen=True)
class TokenUsage:
    prompt_tokens: int = 0
    completion_tokens: int = 0

    def __post_init__(self):
        if self.prompt_tokens < 0 or self.completion_tokens < 0:
            raise ValueError("token counts must be non-negative")

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens


@dataclass(frozen=True)
class GenerationResult:
    """Normalized output of one successful upstream call."""
    images: Tuple[str, ...]
    content: str
    usage: TokenUsage
    elapsed_ms: int
    selection: GatewaySelection
    provider_metadata: Optional[Any] = None

    @property
    def is_warning(self) -> bool:
        """2xx from the provider but no visual artifact."""
        return len(self.images) == 0

    @property
    def warning_reason(self) -> Optional[str]:
        if not self.is_warning:
            return None
        if self.content:
            return self.content[:500]
        return "Model returned no images"


@dataclass
class GenerationContext:
    """Snapshot taken before dispatch, shared by success and failure paths."""
    user_id: str
    request: GenerationRequest
    balance_before: Optional[int] = None
    started_at: float = field(default_factory=time.monotonic)
    selection: Optional[GatewaySelection] = None

    @property
    def kind(self) -> Optional[ProviderKind]:
        return self.selection.kind if self.selection else None

    def elapsed_ms(self) -> int:
        return int((time.monotonic() - self.started_at) * 1000)


@dataclass(frozen=True)
class JobEvent:
    """Append-only audit record of one attempted operation."""
    user_id: Optional[str]
    request_id: str
    status: JobStatus
    mode: str = "batch"
    image_size: str = "1K"
    model: Optional[str] = None
    batch_id: Optional[str] = None
    images_submitted: int = 0
    instruction_length: int = 0
    total_input_bytes: int = 0
    images_returned: int = 0
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    elapsed_ms: int = 0
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    tokens_charged: int = 0
    token_balance_before: Optional[int] = None
    token_balance_after: Optional[int] = None
    created_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class PurchaseRecord:
    user_id: str
    provider_transaction_id: str
    tokens_purchased: int
    amount_usd: Decimal
    status: PurchaseStatus = PurchaseStatus.PENDING
    payment_provider: str = "dodo"
    id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: Optional[str] = None
    completed_at: Optional[str] = None


@dataclass(frozen=True)
class DecrementResult:
    success: bool
    new_balance: int


@dataclass
class MeterOutcome:
    new_balance: Optional[int]
    event: JobEvent
    tokens_charged: int = 0
    advisory_errors: List[str] = field(default_factory=list)
