"""Static credit price table.

Prices are expressed in credits. ``compute_cost`` is a pure function of the
model SKU and the request parameters; it is used at admission for pre-paid
models and again at resolution for post-paid models, where the parameters are
the ones the provider confirmed.
"""
import math
from dataclasses import dataclass, field
from typing import Optional

from app.exceptions import PricingError

PRICING_VERSION = "queue-v1"


class PriceType:
    PER_IMAGE = "per_image"
    PER_SECOND = "per_second"
    PER_REQUEST = "per_request"


MODELS = {
    # Images
    "black-forest-labs/flux-schnell": {"type": "image", "price_type": PriceType.PER_IMAGE, "price": 10},
    "black-forest-labs/flux-dev": {"type": "image", "price_type": PriceType.PER_IMAGE, "price": 50},
    "black-forest-labs/flux-pro": {"type": "image", "price_type": PriceType.PER_IMAGE, "price": 80},
    "google/imagen-4": {"type": "image", "price_type": PriceType.PER_IMAGE, "price": 60},
    "google/nano-banana": {"type": "image", "price_type": PriceType.PER_IMAGE, "price": 80},
    "stability-ai/stable-diffusion-3.5-large": {"type": "image", "price_type": PriceType.PER_IMAGE, "price": 130},
    # Video
    "kwaivgi/kling-v2.6": {"type": "video", "price_type": PriceType.PER_SECOND, "price": 140},
    "google/veo-3": {"type": "video", "price_type": PriceType.PER_SECOND, "price": 500},
    "google/veo-3-fast": {"type": "video", "price_type": PriceType.PER_SECOND, "price": 300},
    "wan-video/wan-2.5-t2v": {"type": "video", "price_type": PriceType.PER_SECOND, "price": 60},
    "wan-video/wan-2.5-i2v": {"type": "video", "price_type": PriceType.PER_SECOND, "price": 60},
    "minimax/hailuo-02": {"type": "video", "price_type": PriceType.PER_REQUEST, "price": 680},
    "bytedance/seedance-1-lite": {"type": "video", "price_type": PriceType.PER_SECOND, "price": 100},
    # Audio
    "minimax/speech-02-hd": {"type": "audio", "price_type": PriceType.PER_REQUEST, "price": 80},
    "minimax/music-1.5": {"type": "audio", "price_type": PriceType.PER_REQUEST, "price": 200},
}

RESOLUTION_MULTIPLIERS = {
    "480p": 0.5,
    "540p": 0.75,
    "720p": 1.0,
    "768p": 1.0,
    "1080p": 1.5,
    "4k": 3.0,
}

AUDIO_MULTIPLIER = 1.5
DEFAULT_DURATION_SECONDS = 5
MAX_DURATION_SECONDS = 60
MAX_IMAGES = 8


@dataclass
class CostQuote:
    cost: int
    pricing_version: str = PRICING_VERSION
    meta: dict = field(default_factory=dict)


def _as_positive_int(value, name: str, default: int, upper: int) -> int:
    if value is None:
        return default
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise PricingError(f"Invalid {name}: {value!r}")
    if number < 1:
        raise PricingError(f"{name} must be at least 1")
    return min(number, upper)


def compute_cost(model_sku: str, params: Optional[dict] = None) -> CostQuote:
    info = MODELS.get(model_sku)
    if not info:
        raise PricingError(f"Unknown model: {model_sku}")

    params = params or {}
    price = info["price"]
    price_type = info["price_type"]
    meta = {"model": model_sku, "price_type": price_type}

    if price_type == PriceType.PER_IMAGE:
        num_images = _as_positive_int(params.get("num_images"), "num_images", 1, MAX_IMAGES)
        total = price * num_images
        meta["num_images"] = num_images

    elif price_type == PriceType.PER_SECOND:
        duration = _as_positive_int(params.get("duration"), "duration", DEFAULT_DURATION_SECONDS, MAX_DURATION_SECONDS)
        resolution = str(params.get("resolution") or "720p").lower()
        multiplier = RESOLUTION_MULTIPLIERS.get(resolution)
        if multiplier is None:
            raise PricingError(f"Unsupported resolution: {resolution}")
        total = price * duration * multiplier
        meta.update({"duration": duration, "resolution": resolution})
        if params.get("generate_audio") or params.get("sound"):
            total *= AUDIO_MULTIPLIER
            meta["audio"] = True

    else:
        total = price

    return CostQuote(cost=int(math.ceil(total)), meta=meta)
