"""
Configuration management and loading.

Handles the ledger location, provider settings, generation defaults and
the task cost table.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from campaign_credits.core.orchestrator import RunPolicy
from campaign_credits.core.pricing import DEFAULT_COST_TABLE, ModelCost, TaskCostTable
from campaign_credits.core.tasks import TaskKind
from campaign_credits.storage.campaigns import DEFAULT_CAMPAIGNS_DIR
from campaign_credits.storage.db import DEFAULT_DB_PATH

DEFAULT_CONFIG_PATH = "campaign_credits.yaml"
CONFIG_PATH_ENV = "CAMPAIGN_CREDITS_CONFIG"


@dataclass(frozen=True)
class LedgerConfig:
    """Where the ledger lives and which account the CLI charges."""
    db_path: str = DEFAULT_DB_PATH
    account_id: str = "default"

    def __post_init__(self):
        """Validate ledger settings are non-empty."""
        if not self.db_path:
            raise ValueError("ledger.db_path cannot be empty")
        if not self.account_id:
            raise ValueError("ledger.account_id cannot be empty")


@dataclass(frozen=True)
class ProviderConfig:
    """Connection settings for one provider."""
    api_key_env: str
    timeout_seconds: float = 30.0
    image_dir: Optional[str] = None

    def __post_init__(self):
        """Validate provider settings."""
        if self.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")

    def api_key(self) -> Optional[str]:
        return os.environ.get(self.api_key_env) if self.api_key_env else None


@dataclass(frozen=True)
class GenerationConfig:
    """Defaults applied to every generation request."""
    text_provider: str = "openai"
    text_model: str = "gpt-4o-mini"
    image_provider: str = "gemini"
    image_model: str = "gemini-2.5-flash-image"
    tone: str = "Professional"
    language: str = "English"
    image_style: str = "Photorealistic"
    currency: str = "GBP"
    currency_symbol: str = "£"
    store_context: str = ""
    product_context: str = ""
    campaigns_dir: str = DEFAULT_CAMPAIGNS_DIR
    policy: RunPolicy = RunPolicy.BEST_EFFORT


def _default_providers() -> Dict[str, ProviderConfig]:
    return {
        "openai": ProviderConfig(api_key_env="OPENAI_API_KEY"),
        "gemini": ProviderConfig(api_key_env="GEMINI_API_KEY", image_dir="campaign_images"),
    }


@dataclass(frozen=True)
class AppConfig:
    """Complete application configuration."""
    ledger: LedgerConfig = field(default_factory=LedgerConfig)
    providers: Dict[str, ProviderConfig] = field(default_factory=_default_providers)
    generation: GenerationConfig = field(default_factory=GenerationConfig)
    costs: TaskCostTable = DEFAULT_COST_TABLE


_ALLOWED_TOP_KEYS = {'ledger', 'providers', 'generation', 'costs'}
_ALLOWED_LEDGER_KEYS = {'db_path', 'account_id'}
_ALLOWED_PROVIDER_KEYS = {'api_key_env', 'timeout_seconds', 'image_dir'}
_ALLOWED_GENERATION_KEYS = {
    'text_provider', 'text_model', 'image_provider', 'image_model',
    'tone', 'language', 'image_style', 'currency', 'currency_symbol',
    'store_context', 'product_context', 'campaigns_dir', 'policy',
}
_ALLOWED_COST_KEYS = {'text', 'image', 'overrides'}


def resolve_config_path(path: Optional[str] = None) -> Optional[str]:
    """Explicit path, else $CAMPAIGN_CREDITS_CONFIG, else ./campaign_credits.yaml if present."""
    if path:
        return path
    env_path = os.environ.get(CONFIG_PATH_ENV)
    if env_path:
        return env_path
    if Path(DEFAULT_CONFIG_PATH).exists():
        return DEFAULT_CONFIG_PATH
    return None


def load_app_config(path: Optional[str] = None) -> AppConfig:
    """Load configuration, falling back to built-in defaults without a file."""
    resolved = resolve_config_path(path)
    if resolved is None:
        return AppConfig()
    return load_config(resolved)


def load_config(path: str) -> AppConfig:
    """Load and validate configuration from a YAML file.

    Strict validation rejects unknown keys so a typo cannot silently fall
    back to a default price or provider.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated AppConfig object

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ValueError("Configuration must be a dictionary")

    unknown_keys = set(raw_config.keys()) - _ALLOWED_TOP_KEYS
    if unknown_keys:
        raise ValueError(f"Unknown configuration keys: {unknown_keys}")

    ledger = LedgerConfig(**_section(raw_config, 'ledger', _ALLOWED_LEDGER_KEYS))

    providers = _default_providers()
    providers_data = raw_config.get('providers', {}) or {}
    if not isinstance(providers_data, dict):
        raise ValueError("'providers' must be a dictionary")
    for provider_name, provider_data in providers_data.items():
        providers[provider_name] = _parse_provider_config(provider_data, f"providers.{provider_name}")

    generation_data = _section(raw_config, 'generation', _ALLOWED_GENERATION_KEYS)
    if 'policy' in generation_data:
        generation_data['policy'] = _parse_policy(generation_data['policy'])
    generation = GenerationConfig(**generation_data)

    costs = DEFAULT_COST_TABLE
    if raw_config.get('costs') is not None:
        costs = _parse_cost_table(raw_config['costs'])

    return AppConfig(
        ledger=ledger,
        providers=providers,
        generation=generation,
        costs=costs
    )


def _section(raw_config: Dict, name: str, allowed_keys: set) -> Dict[str, Any]:
    data = raw_config.get(name, {}) or {}
    if not isinstance(data, dict):
        raise ValueError(f"'{name}' must be a dictionary")

    unknown_keys = set(data.keys()) - allowed_keys
    if unknown_keys:
        raise ValueError(f"Unknown {name} keys: {unknown_keys}")

    for key, value in data.items():
        if key != 'policy' and not isinstance(value, str):
            raise ValueError(f"'{key}' in {name} must be a string")
    return dict(data)


def _parse_policy(value: Any) -> RunPolicy:
    if not isinstance(value, str):
        raise ValueError("'policy' in generation must be a string")
    try:
        return RunPolicy(value.lower())
    except ValueError:
        valid_policies = [policy.value for policy in RunPolicy]
        raise ValueError(f"'policy' in generation must be one of: {valid_policies}")


def _parse_provider_config(data: Any, path: str) -> ProviderConfig:
    """Parse and validate one provider section.

    Args:
        data: Provider configuration data
        path: Path for error messages

    Returns:
        Validated ProviderConfig

    Raises:
        ValueError: If configuration is invalid
    """
    if not isinstance(data, dict):
        raise ValueError(f"'{path}' must be a dictionary")

    unknown_keys = set(data.keys()) - _ALLOWED_PROVIDER_KEYS
    if unknown_keys:
        raise ValueError(f"Unknown keys in {path}: {unknown_keys}")

    if 'api_key_env' not in data:
        raise ValueError(f"Missing required 'api_key_env' in {path}")
    if not isinstance(data['api_key_env'], str) or not data['api_key_env']:
        raise ValueError(f"'api_key_env' in {path} must be a non-empty string")

    timeout = data.get('timeout_seconds', 30.0)
    if isinstance(timeout, bool) or not isinstance(timeout, (int, float)) or timeout <= 0:
        raise ValueError(f"'timeout_seconds' in {path} must be > 0")

    image_dir = data.get('image_dir')
    if image_dir is not None and not isinstance(image_dir, str):
        raise ValueError(f"'image_dir' in {path} must be a string")

    return ProviderConfig(
        api_key_env=data['api_key_env'],
        timeout_seconds=float(timeout),
        image_dir=image_dir
    )


def _parse_cost_table(data: Any) -> TaskCostTable:
    """Parse ``costs`` as provider -> model -> {text, image, overrides}.

    Raises:
        ValueError: If any entry is malformed or a cost is not a positive integer
    """
    if not isinstance(data, dict) or not data:
        raise ValueError("'costs' must be a non-empty dictionary")

    prices: Dict[str, Dict[str, ModelCost]] = {}
    for provider_name, models in data.items():
        if not isinstance(models, dict) or not models:
            raise ValueError(f"'costs.{provider_name}' must be a non-empty dictionary")

        prices[provider_name] = {}
        for model_name, entry in models.items():
            path = f"costs.{provider_name}.{model_name}"
            if not isinstance(entry, dict):
                raise ValueError(f"'{path}' must be a dictionary")

            unknown_keys = set(entry.keys()) - _ALLOWED_COST_KEYS
            if unknown_keys:
                raise ValueError(f"Unknown keys in {path}: {unknown_keys}")

            overrides_data = entry.get('overrides', {}) or {}
            if not isinstance(overrides_data, dict):
                raise ValueError(f"'overrides' in {path} must be a dictionary")

            overrides = {}
            for kind_name, cost in overrides_data.items():
                try:
                    kind = TaskKind(kind_name)
                except ValueError:
                    valid_kinds = [kind.value for kind in TaskKind]
                    raise ValueError(f"Unknown task kind '{kind_name}' in {path}; must be one of: {valid_kinds}")
                overrides[kind] = cost

            try:
                prices[provider_name][str(model_name)] = ModelCost(
                    text=entry.get('text'),
                    image=entry.get('image'),
                    overrides=overrides
                )
            except ValueError as e:
                raise ValueError(f"Invalid cost in {path}: {e}")

    return TaskCostTable(prices)
