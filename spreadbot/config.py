# spreadbot/config.py
import copy
import os
import re
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from dotenv import load_dotenv

from .exceptions import ConfigError

DEFAULTS: Dict[str, Any] = {
    'system': {
        'dry_run': False,
        'log_level': 'INFO',
        'confirm_live': True,
        'dashboard': True,
    },
    'venue': {
        'name': 'binanceus',
        'rest_url': 'https://api.binance.us',
        'ws_url': 'wss://stream.binance.us:9443/ws',
        'api_key': '${BINANCE_API_KEY}',
        'api_secret': '${BINANCE_API_SECRET}',
        'network_timeout_ms': 1000,
        'recv_window_ms': 250,
        'load_filters': True,
    },
    'strategy': {
        'mode': 'arbitrage',
        'symbols': ['BTCUSD', 'BTCBUSD'],
        'target_delta': 0.25,
        'trade_notional': 25.0,
        'min_notional': 10.0,
        'price_decimals': 2,
        'quantity_decimals': 6,
        'exit_spread': None,
        'entry_offset': 0.25,
    },
    'execution': {
        'entry_poll_interval_ms': 250,
        'entry_max_wait_s': 5,
        'exit_poll_interval_ms': 250,
        'exit_max_wait_s': 25,
        'partial_fill_threshold': 0.5,
        'exit_order_type': 'LIMIT',
        'post_retry_attempts': 3,
        'post_retry_delay_ms': 250,
        'rate_limit_default_wait_s': 1.0,
        'settle_delay_ms': 250,
        'cooldown_ms': 1000,
        'time_in_force': 'GTC',
        'client_order_prefix': 'sb',
    },
    'risk_compliance': {
        'max_data_age_seconds': None,
        'max_exposure_per_trade_usd': 100.0,
        'max_consecutive_failures': 5,
    },
    'audit': {
        'trade_log': 'logs/cycles.csv',
    },
}

ENV_VAR_PATTERN = re.compile(r'\$\{([^}]+)\}')


def substitute_env_vars(content: str) -> str:
    """
    Replaces ${VAR} and ${VAR:default} with environment values.
    An unset variable without default becomes an empty string.
    """
    def replace_var(match):
        expr = match.group(1)
        if ':' in expr:
            name, default = expr.split(':', 1)
            return os.getenv(name.strip(), default)
        return os.getenv(expr.strip(), '')

    return ENV_VAR_PATTERN.sub(replace_var, content)


def _merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in (override or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def validate(config: Dict[str, Any]) -> Dict[str, Any]:
    strategy = config['strategy']
    execution = config['execution']

    if strategy['mode'] not in ('arbitrage', 'momentum'):
        raise ConfigError(f"strategy.mode must be 'arbitrage' or 'momentum', got {strategy['mode']!r}")
    if strategy['mode'] == 'arbitrage' and len(strategy['symbols']) != 2:
        raise ConfigError("arbitrage mode needs exactly two symbols")
    if strategy['mode'] == 'momentum':
        if len(strategy['symbols']) < 1:
            raise ConfigError("momentum mode needs a symbol")
        if strategy.get('exit_spread') is None:
            raise ConfigError("momentum mode needs strategy.exit_spread")
    if strategy['trade_notional'] <= 0:
        raise ConfigError("strategy.trade_notional must be positive")

    threshold = execution['partial_fill_threshold']
    if not 0 < threshold <= 1:
        raise ConfigError(f"execution.partial_fill_threshold must be in (0, 1], got {threshold}")
    if str(execution['exit_order_type']).upper() not in ('LIMIT', 'MARKET'):
        raise ConfigError(f"execution.exit_order_type must be LIMIT or MARKET, got {execution['exit_order_type']!r}")
    for key in ('entry_poll_interval_ms', 'exit_poll_interval_ms', 'entry_max_wait_s', 'exit_max_wait_s'):
        if execution[key] <= 0:
            raise ConfigError(f"execution.{key} must be positive")
    if execution['post_retry_attempts'] < 0:
        raise ConfigError("execution.post_retry_attempts cannot be negative")
    return config


def load_config(path: str = "config.yaml", env_file: Optional[str] = None) -> Dict[str, Any]:
    """
    Loads config.yaml on top of the built-in defaults.
    Credentials are only ever taken from the environment (.env is loaded first).
    """
    load_dotenv(dotenv_path=env_file, override=False)

    raw: Dict[str, Any] = {}
    if Path(path).exists():
        with open(path, "r") as f:
            raw = yaml.safe_load(substitute_env_vars(f.read())) or {}
    elif path != "config.yaml":
        raise ConfigError(f"config file not found: {path}")

    config = _merge(DEFAULTS, raw)
    venue = config['venue']
    for key in ('api_key', 'api_secret'):
        venue[key] = substitute_env_vars(str(venue[key] or ''))
    return validate(config)
