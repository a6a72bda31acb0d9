"""
Metering authority per feature.

Two counters exist side by side: the local monthly prompt ledger and an
external per-feature usage tracker. Each feature is metered by exactly one
of them. The two are never assumed to agree.
"""

import logging
from enum import Enum
from typing import Dict, Optional

from vanda.core.config import settings


logger = logging.getLogger(__name__)


class MeteringAuthority(str, Enum):
    LEDGER = "ledger"
    EXTERNAL = "external"


class Feature(str, Enum):
    BRAND_ANALYSIS = "brand_analysis"
    CAPTION_GENERATION = "caption_generation"
    IMAGE_GENERATION = "image_generation"
    CHAT = "chat"


FEATURE_AUTHORITY: Dict[str, MeteringAuthority] = {
    Feature.BRAND_ANALYSIS.value: MeteringAuthority.LEDGER,
    Feature.CAPTION_GENERATION.value: MeteringAuthority.LEDGER,
    Feature.IMAGE_GENERATION.value: MeteringAuthority.LEDGER,
    Feature.CHAT.value: MeteringAuthority.LEDGER,
}

# Feature ids as known to the external tracker
EXTERNAL_FEATURE_IDS: Dict[str, str] = {
    Feature.IMAGE_GENERATION.value: "images_generated",
}


def parse_overrides(raw: str) -> Dict[str, MeteringAuthority]:
    """Parse "feature=ledger,other=external". Unknown entries are skipped with a warning."""
    overrides: Dict[str, MeteringAuthority] = {}
    for part in (raw or "").split(","):
        part = part.strip()
        if not part:
            continue
        feature, _, value = part.partition("=")
        feature = feature.strip()
        value = value.strip().lower()
        try:
            overrides[feature] = MeteringAuthority(value)
        except ValueError:
            logger.warning(
                "[metering] ignoring invalid authority override",
                extra={"feature": feature, "override": value},
            )
    return overrides


def authority_for(feature: str, overrides: Optional[str] = None) -> MeteringAuthority:
    """Resolve which counter gates `feature`. Unmapped features use the ledger."""
    raw = settings.METERING_AUTHORITY_OVERRIDES if overrides is None else overrides
    resolved = parse_overrides(raw)
    if feature in resolved:
        return resolved[feature]
    return FEATURE_AUTHORITY.get(feature, MeteringAuthority.LEDGER)


def external_feature_id(feature: str) -> str:
    return EXTERNAL_FEATURE_IDS.get(feature, feature)
