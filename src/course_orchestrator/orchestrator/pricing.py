"""Token cost estimation helpers for generation tasks."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class TokenPricing:
    """Price in USD per 1M tokens."""

    per_1m_tokens: float


@dataclass(slots=True)
class PricingTable:
    """Pricing keyed by (dependency name, task type), with `*` wildcards."""

    entries: dict[tuple[str, str], TokenPricing] = field(default_factory=dict)

    @classmethod
    def parse(cls, raw: str) -> PricingTable:
        """Parse `COURSE_ORCHESTRATOR_PRICING`.

        Format:
        - `dependency:task_type:usd_per_1m_tokens`
        - multiple entries separated by `,`
        - supports wildcards in dependency/task_type (`*`)
        """

        entries: dict[tuple[str, str], TokenPricing] = {}
        if not raw.strip():
            return cls(entries)

        for entry in raw.split(","):
            value = entry.strip()
            if not value:
                continue
            parts = [part.strip() for part in value.split(":")]
            if len(parts) != 3:  # noqa: PLR2004
                logger.warning("Ignoring malformed pricing entry: %s", value)
                continue
            dependency, task_type, price = parts
            try:
                per_1m = float(price)
            except ValueError:
                logger.warning("Ignoring pricing entry with bad price: %s", value)
                continue
            entries[(dependency.lower(), task_type.lower())] = TokenPricing(per_1m_tokens=per_1m)
        return cls(entries)

    def lookup(self, *, dependency_name: str, task_type: str) -> TokenPricing | None:
        dependency = dependency_name.strip().lower()
        kind = task_type.strip().lower()
        for key in ((dependency, kind), (dependency, "*"), ("*", kind), ("*", "*")):
            pricing = self.entries.get(key)
            if pricing is not None:
                return pricing
        return None

    def estimate_cost_usd(
        self,
        *,
        dependency_name: str,
        task_type: str,
        tokens_used: int,
    ) -> float | None:
        """Estimate task cost in USD from token usage and configured pricing."""

        pricing = self.lookup(dependency_name=dependency_name, task_type=task_type)
        if pricing is None or tokens_used <= 0:
            return None
        return (tokens_used / 1_000_000) * pricing.per_1m_tokens
