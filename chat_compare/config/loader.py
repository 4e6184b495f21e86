"""
Provider catalog loading.

Reads the provider catalog from YAML with strict validation.
"""

from pathlib import Path
from typing import Dict

import yaml

from ..core.catalog import UNLIMITED, BudgetPolicy, Provider, ProviderCatalog


def load_catalog(path: str) -> ProviderCatalog:
    """Load and validate a provider catalog from a YAML file.

    Unknown keys are rejected so a typo cannot silently drop a budget.

    Example::

        providers:
          - id: gpt-4o
            name: GPT-4o
            model: openai/gpt-4o
            budget:
              total: 1000
              replenish_interval_seconds: 21600
          - id: mistral-small
            name: Mistral Small
            model: mistralai/mistral-small
            budget:
              total: unlimited

    Args:
        path: Path to YAML catalog file

    Returns:
        Validated ProviderCatalog in file order

    Raises:
        FileNotFoundError: If catalog file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If catalog is invalid
    """
    catalog_path = Path(path)
    if not catalog_path.exists():
        raise FileNotFoundError(f"Provider catalog file not found: {path}")

    with open(catalog_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in catalog file {path}: {e}")

    if not raw_config:
        raise ValueError("Catalog file is empty")
    if not isinstance(raw_config, dict):
        raise ValueError("Catalog must be a dictionary")

    unknown_keys = set(raw_config.keys()) - {'providers'}
    if unknown_keys:
        raise ValueError(f"Unknown catalog keys: {unknown_keys}")

    if 'providers' not in raw_config:
        raise ValueError("Missing required 'providers' section")

    providers_data = raw_config['providers']
    if not isinstance(providers_data, list) or not providers_data:
        raise ValueError("'providers' must be a non-empty list")

    providers = []
    for index, provider_data in enumerate(providers_data):
        if not isinstance(provider_data, dict):
            raise ValueError(f"providers[{index}] must be a dictionary")
        providers.append(_parse_provider(provider_data, f"providers[{index}]"))

    return ProviderCatalog(providers)


def _parse_provider(data: Dict, path: str) -> Provider:
    """Parse and validate one provider entry."""
    allowed_keys = {'id', 'name', 'model', 'icon', 'description', 'max_tokens', 'budget'}
    unknown_keys = set(data.keys()) - allowed_keys
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")

    for key in ('id', 'name', 'model'):
        if key not in data:
            raise ValueError(f"Missing required '{key}' in {path}")
        if not isinstance(data[key], str) or not data[key].strip():
            raise ValueError(f"'{key}' in {path} must be a non-empty string")

    max_tokens = data.get('max_tokens')
    if max_tokens is not None and (isinstance(max_tokens, bool) or not isinstance(max_tokens, int)):
        raise ValueError(f"'max_tokens' in {path} must be an integer")

    if 'budget' not in data:
        raise ValueError(f"Missing required 'budget' in {path}")
    if not isinstance(data['budget'], dict):
        raise ValueError(f"'budget' in {path} must be a dictionary")

    return Provider(
        id=data['id'],
        display_name=data['name'],
        model=data['model'],
        icon=str(data.get('icon', '')),
        description=str(data.get('description', '')),
        max_tokens=max_tokens,
        budget=_parse_budget(data['budget'], f"{path}.budget"),
    )


def _parse_budget(data: Dict, path: str) -> BudgetPolicy:
    """Parse and validate a budget policy."""
    allowed_keys = {'total', 'available', 'replenish_interval_seconds'}
    unknown_keys = set(data.keys()) - allowed_keys
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")

    if 'total' not in data:
        raise ValueError(f"Missing required 'total' in {path}")

    total = data['total']
    if isinstance(total, str):
        if total.lower() != 'unlimited':
            raise ValueError(f"'total' in {path} must be an integer or 'unlimited'")
        total = UNLIMITED
    elif isinstance(total, bool) or not isinstance(total, int):
        raise ValueError(f"'total' in {path} must be an integer or 'unlimited'")

    for key in ('available', 'replenish_interval_seconds'):
        value = data.get(key)
        if value is not None and (isinstance(value, bool) or not isinstance(value, int)):
            raise ValueError(f"'{key}' in {path} must be an integer")

    try:
        return BudgetPolicy(
            total=total,
            initial_available=data.get('available'),
            replenish_interval_seconds=data.get('replenish_interval_seconds'),
        )
    except ValueError as e:
        raise ValueError(f"Invalid {path}: {e}") from e
