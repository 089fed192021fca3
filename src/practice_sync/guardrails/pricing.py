"""Token cost estimation for metered AI calls."""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(slots=True)
class ModelPricing:
    """Per-model input/output pricing in USD per 1M tokens."""

    input_per_1m: float
    output_per_1m: float


@dataclass(slots=True)
class PricingTable:
    """Configured model prices with a ``*`` wildcard fallback."""

    prices: dict[str, ModelPricing] = field(default_factory=dict)

    @classmethod
    def parse(cls, raw: str) -> PricingTable:
        """Parse ``PRACTICE_SYNC_AI_PRICING``.

        Format:
        - `model:input_per_1m:output_per_1m`
        - multiple entries separated by `,`
        - `*` as model applies to every model without its own entry

        Malformed entries are skipped.
        """

        parsed: dict[str, ModelPricing] = {}
        for entry in raw.split(","):
            value = entry.strip()
            if not value:
                continue
            head, sep_out, output_price = value.rpartition(":")
            model, sep_in, input_price = head.rpartition(":")
            if not sep_in or not sep_out or not model.strip():
                continue
            try:
                input_per_1m = float(input_price)
                output_per_1m = float(output_price)
            except ValueError:
                continue
            parsed[model.strip()] = ModelPricing(
                input_per_1m=input_per_1m,
                output_per_1m=output_per_1m,
            )
        return cls(prices=parsed)

    def lookup(self, model: str) -> ModelPricing | None:
        direct = self.prices.get(model.strip())
        if direct is not None:
            return direct
        return self.prices.get("*")

    def estimate_cost_usd(
        self,
        *,
        model: str,
        input_tokens: int,
        output_tokens: int,
    ) -> float:
        """Estimate call cost in USD; models without configured pricing cost nothing."""

        pricing = self.lookup(model)
        if pricing is None:
            return 0.0
        return (input_tokens / 1_000_000) * pricing.input_per_1m + (
            output_tokens / 1_000_000
        ) * pricing.output_per_1m
