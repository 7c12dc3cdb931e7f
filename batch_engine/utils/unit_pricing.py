"""
Unit pricing for the cost ledger

Prices are per 1M units for the three usage counters a task reports:
input units, output units and auxiliary units (e.g. image tokens).

Pricing data based on Anthropic list prices as of 2025.
"""
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict

import yaml

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UnitPrice:
    """Price per 1M units of each usage counter (USD)"""

    input_per_million: float
    output_per_million: float
    auxiliary_per_million: float = 0.0


DEFAULT_MODEL = "claude-sonnet-4-5-20250929"

# Entry a custom price table may define for models it doesn't list
CUSTOM_DEFAULT_KEY = "default"

# Auxiliary units (image tokens) are billed at the input rate
UNIT_PRICING: Dict[str, UnitPrice] = {
    "claude-sonnet-4-5-20250929": UnitPrice(3.00, 15.00, 3.00),
    "claude-3-5-sonnet-20241022": UnitPrice(3.00, 15.00, 3.00),
    "claude-3-sonnet-20240229": UnitPrice(3.00, 15.00, 3.00),
    "claude-3-opus-20240229": UnitPrice(15.00, 75.00, 15.00),  # Very expensive
    "claude-3-haiku-20240307": UnitPrice(0.25, 1.25, 0.25),

    # Local models (no cost)
    "local": UnitPrice(0.00, 0.00, 0.00),
}


def get_unit_price(model: str, price_table: Dict[str, UnitPrice] = None) -> UnitPrice:
    """
    Get pricing for a model

    Args:
        model: Model identifier
        price_table: Table to look in (built-in table if omitted)

    Returns:
        UnitPrice for the model. Unknown models get the table's "default"
        entry if it has one, otherwise the built-in default model's price.
    """
    table = UNIT_PRICING if price_table is None else price_table

    if model.startswith("local/") or model.startswith("ollama/"):
        return UnitPrice(0.0, 0.0, 0.0)

    if model in table:
        return table[model]

    if price_table is None:
        logger.debug(f"No pricing for {model}, using {DEFAULT_MODEL} pricing")
        return UNIT_PRICING[DEFAULT_MODEL]

    if CUSTOM_DEFAULT_KEY in price_table:
        logger.debug(f"No pricing for {model}, using the price table's '{CUSTOM_DEFAULT_KEY}' entry")
        return price_table[CUSTOM_DEFAULT_KEY]

    logger.warning(
        f"Price table has no entry for {model} and no '{CUSTOM_DEFAULT_KEY}' entry, "
        f"using built-in {DEFAULT_MODEL} pricing"
    )
    return UNIT_PRICING[DEFAULT_MODEL]


def is_expensive_model(model: str, threshold: float = 10.0, price_table: Dict[str, UnitPrice] = None) -> bool:
    """
    Check if a model is expensive

    Args:
        model: Model identifier
        threshold: Cost threshold per 1M input units (default: $10.00)
        price_table: Table to look in (built-in table if omitted)

    Returns:
        True if the model's input price reaches the threshold
    """
    return get_unit_price(model, price_table).input_per_million >= threshold


def load_price_table(path: Path) -> Dict[str, UnitPrice]:
    """
    Load a price table from YAML

    Expected format:
        claude-3-haiku-20240307:
          input: 0.25
          output: 1.25
          auxiliary: 0.25

    Args:
        path: Path to YAML file

    Returns:
        Mapping of model id to UnitPrice

    Raises:
        FileNotFoundError: If file doesn't exist
        ValueError: If an entry is malformed
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"File not found: {path}")

    with open(path, 'r') as f:
        data = yaml.safe_load(f) or {}

    if not isinstance(data, dict):
        raise ValueError(f"Price table {path} must be a mapping of model ids")

    table = {}
    for model, prices in data.items():
        if not isinstance(prices, dict) or 'input' not in prices or 'output' not in prices:
            raise ValueError(f"Price entry for '{model}' needs 'input' and 'output'")
        table[str(model)] = UnitPrice(
            input_per_million=float(prices['input']),
            output_per_million=float(prices['output']),
            auxiliary_per_million=float(prices.get('auxiliary', prices['input'])),
        )

    logger.info(f"Loaded pricing for {len(table)} models from {path}")
    return table
