"""
Model catalog — tier/provider mapping, failover chains and cost rates.

Loaded from ``models.yaml`` with a 5-minute TTL cache.
"""
from __future__ import annotations

import time
from enum import Enum
from pathlib import Path
from typing import Any

import yaml

CATALOG_PATH = Path(__file__).resolve().parent / "models.yaml"
PROVIDERS = ("anthropic", "openai", "gemini", "mistral")

# Fallback when a model has no catalog cost entry: [input, output] USD per 1M tokens
DEFAULT_COST_RATES = (2.5, 10.0)

_CACHE_TTL_SECONDS = 300
_cache: dict[str, Any] = {}
_cache_timestamp: float = 0.0


class Tier(str, Enum):
    MINI = "mini"
    POWER = "power"
    LUDICROUS = "ludicrous"

    def escalated(self) -> "Tier":
        """One step up; ludicrous stays ludicrous."""
        if self is Tier.MINI:
            return Tier.POWER
        return Tier.LUDICROUS

    @classmethod
    def parse(cls, value: Any, default: "Tier | None" = None) -> "Tier":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return default or cls.MINI


def load_catalog(path: Path | str | None = None) -> dict[str, Any]:
    """Load the catalog, reusing a cached copy for up to five minutes."""
    global _cache, _cache_timestamp

    now = time.monotonic()
    cache_key = str(path or CATALOG_PATH)
    if _cache and (now - _cache_timestamp) < _CACHE_TTL_SECONDS and cache_key in _cache:
        return _cache[cache_key]

    catalog_path = Path(path or CATALOG_PATH)
    if not catalog_path.exists():
        return {}
    result = yaml.safe_load(catalog_path.read_text(encoding="utf-8")) or {}
    _cache[cache_key] = result
    _cache_timestamp = now
    return result


def reload_catalog(path: Path | str | None = None) -> dict[str, Any]:
    """Clear the TTL cache and reload from disk."""
    global _cache, _cache_timestamp
    _cache = {}
    _cache_timestamp = 0.0
    return load_catalog(path)


def validate_catalog(path: Path | str | None = None) -> list[str]:
    """Validate catalog structure. Returns a list of error strings (empty = valid)."""
    errors: list[str] = []
    catalog_path = Path(path or CATALOG_PATH)
    if not catalog_path.exists():
        return [f"models.yaml not found at {catalog_path}"]
    try:
        catalog = yaml.safe_load(catalog_path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        return [f"Failed to parse models.yaml: {exc}"]

    for key in ("schema_version", "tiers", "failover_chains", "models"):
        if key not in catalog:
            errors.append(f"Missing '{key}' key")
    if errors:
        return errors

    models = catalog["models"] or {}
    for tier in Tier:
        mapping = (catalog["tiers"] or {}).get(tier.value)
        if not isinstance(mapping, dict):
            errors.append(f"Tier '{tier.value}' missing provider mapping")
            continue
        for provider, model_id in mapping.items():
            if provider not in PROVIDERS:
                errors.append(f"Tier '{tier.value}': unknown provider '{provider}'")
            if model_id not in models:
                errors.append(f"Tier '{tier.value}': model '{model_id}' has no catalog entry")
        chain = (catalog["failover_chains"] or {}).get(tier.value)
        if not chain:
            errors.append(f"Tier '{tier.value}' has no failover chain")
    for model_id, entry in models.items():
        if not isinstance(entry, dict) or "provider" not in entry:
            errors.append(f"Model '{model_id}': missing required field 'provider'")
    return errors


class ModelCatalog:
    """
    Read-side view over ``models.yaml``.

    Usage:
        catalog = ModelCatalog()
        catalog.model_for("anthropic", Tier.POWER)     # "claude-sonnet-4-6"
        catalog.litellm_model("claude-sonnet-4-6")     # "anthropic/claude-sonnet-4-6"
        catalog.failover_chain(Tier.MINI)
    """

    def __init__(self, path: Path | str | None = None, data: dict[str, Any] | None = None):
        self._path = path
        self._data = data

    @property
    def data(self) -> dict[str, Any]:
        return self._data if self._data is not None else load_catalog(self._path)

    def model_for(self, provider: str, tier: Tier | str) -> str | None:
        tier = Tier.parse(tier)
        return ((self.data.get("tiers") or {}).get(tier.value) or {}).get(provider)

    def failover_chain(self, tier: Tier | str) -> list[str]:
        tier = Tier.parse(tier)
        chains = self.data.get("failover_chains") or {}
        return list(chains.get(tier.value) or chains.get(Tier.MINI.value) or PROVIDERS)

    def entry(self, model_id: str) -> dict[str, Any] | None:
        models = self.data.get("models") or {}
        if model_id in models:
            return models[model_id]
        if "/" in model_id:
            return models.get(model_id.split("/", 1)[1])
        return None

    def litellm_model(self, model_id: str) -> str:
        entry = self.entry(model_id) or {}
        litellm_block = entry.get("litellm") or {}
        if litellm_block.get("model"):
            return litellm_block["model"]
        provider = entry.get("provider")
        return f"{provider}/{model_id}" if provider else model_id

    def cost_rates(self, model_id: str) -> tuple[float, float]:
        cost = (self.entry(model_id) or {}).get("cost") or {}
        if "input" in cost and "output" in cost:
            return float(cost["input"]), float(cost["output"])
        return DEFAULT_COST_RATES

    def estimate_cost(self, model_id: str, input_tokens: int, output_tokens: int) -> float:
        rate_in, rate_out = self.cost_rates(model_id)
        return (input_tokens / 1_000_000) * rate_in + (output_tokens / 1_000_000) * rate_out
