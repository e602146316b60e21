# ai_cost_meter/demo/seed_demo_data.py

from datetime import date
from decimal import Decimal

from ai_cost_meter.storage.models import PricingRecord
from ai_cost_meter.storage.repository import MeteringStore

# (provider, model, input per 1K, output per 1K) in USD
DEMO_PRICES = [
    ("openai", "gpt-4", "0.03", "0.06"),
    ("openai", "gpt-4-turbo", "0.01", "0.03"),
    ("openai", "gpt-3.5-turbo", "0.0015", "0.002"),
    ("anthropic", "claude-3-5-sonnet-20241022", "0.003", "0.015"),
    ("anthropic", "claude-3-opus-20240229", "0.015", "0.075"),
    ("anthropic", "claude-3-haiku-20240307", "0.00025", "0.00125"),
    ("google", "gemini-1.5-pro", "0.0035", "0.0105"),
    ("google", "gemini-1.5-flash", "0.00035", "0.00105"),
    ("xai", "grok-beta", "0.005", "0.015"),
]


def seed_pricing(store: MeteringStore, effective_date: date = date(2026, 1, 1)) -> int:
    """Insert the demo price list, skipping pairs already priced by that date.

    Returns:
        Number of pricing records inserted
    """
    inserted = 0
    for provider, model, input_cost, output_cost in DEMO_PRICES:
        if store.latest_pricing(provider, model, effective_date) is not None:
            continue
        store.add_pricing(PricingRecord(
            provider=provider,
            model=model,
            effective_date=effective_date,
            input_cost_per_1k=Decimal(input_cost),
            output_cost_per_1k=Decimal(output_cost),
        ))
        inserted += 1
    return inserted
