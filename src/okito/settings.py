"""
Configuration loading.

Sources, lowest precedence first: BatchConfig defaults, an optional YAML
file (``${VAR}`` placeholders resolved from the environment), ``OKITO_*``
environment variables, explicit keyword overrides.
"""
import dataclasses
import os
import re
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Union

import yaml
from dotenv import load_dotenv

from okito.core.config import BatchConfig
from okito.core.errors import ErrorCode, OkitoError
from okito.core.retry import RetryConfig
from okito.utils.logger import get_logger

logger = get_logger(__name__)

ENV_PREFIX = "OKITO_"
RPC_ENDPOINT_VARS = ("OKITO_RPC_ENDPOINT", "SOLANA_NODE_RPC_ENDPOINT")

_ENV_VAR = re.compile(r'\$\{([^}]+)\}')
_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


def substitute_env(raw: str, env: Mapping[str, str]) -> str:
    """Replace ``${VAR}`` placeholders; unset variables are an error."""
    missing = [name for name in _ENV_VAR.findall(raw) if name not in env]
    if missing:
        raise OkitoError(
            ErrorCode.MISSING_REQUIRED_PARAMETER,
            f"Environment variable(s) not set: {', '.join(sorted(set(missing)))}",
        )
    return _ENV_VAR.sub(lambda m: env[m.group(1)], raw)


def _coerce(name: str, value: Any, target: type) -> Any:
    if target is bool:
        if isinstance(value, bool):
            return value
        text = str(value).strip().lower()
        if text in _TRUE:
            return True
        if text in _FALSE:
            return False
        raise OkitoError(ErrorCode.INVALID_CONFIGURATION, f"{name}: expected a boolean, got {value!r}")
    if target is int:
        try:
            return int(value)
        except (TypeError, ValueError):
            raise OkitoError(ErrorCode.INVALID_CONFIGURATION, f"{name}: expected an integer, got {value!r}") from None
    if target is float:
        try:
            return float(value)
        except (TypeError, ValueError):
            raise OkitoError(ErrorCode.INVALID_CONFIGURATION, f"{name}: expected a number, got {value!r}") from None
    return value


def _field_types(cls) -> Dict[str, type]:
    types = {}
    for f in dataclasses.fields(cls):
        if not f.init:
            continue
        default = f.default if f.default is not dataclasses.MISSING else None
        types[f.name] = type(default) if default is not None else str
    return types


def _normalize(values: Mapping[str, Any]) -> Dict[str, Any]:
    types = _field_types(BatchConfig)
    out: Dict[str, Any] = {}
    for key, value in values.items():
        key = key.lower().replace("-", "_")
        if key == "retry":
            if not isinstance(value, Mapping):
                raise OkitoError(ErrorCode.INVALID_CONFIGURATION, "retry: expected a mapping")
            retry_types = _field_types(RetryConfig)
            out["retry"] = RetryConfig(**{
                k: _coerce(f"retry.{k}", v, retry_types.get(k, str)) for k, v in value.items()
            })
            continue
        target = types.get(key)
        if target is None:
            out[key] = value
        elif isinstance(value, target):
            out[key] = value
        elif issubclass(target, str) and target is not str:
            # str-based enums (confirmation strategy) are validated by the config itself
            out[key] = str(value).strip().lower()
        else:
            out[key] = _coerce(key, value, target)
    return out


def read_yaml_config(path: Union[str, Path], env: Optional[Mapping[str, str]] = None) -> Dict[str, Any]:
    """Load a YAML mapping; an ``airdrop:`` section is used when present."""
    env = os.environ if env is None else env
    raw = Path(path).read_text(encoding="utf-8")
    data = yaml.safe_load(substitute_env(raw, env)) or {}
    if not isinstance(data, dict):
        raise OkitoError(ErrorCode.INVALID_CONFIGURATION, f"{path}: expected a mapping at top level")
    section = data.get("airdrop", data)
    if not isinstance(section, dict):
        raise OkitoError(ErrorCode.INVALID_CONFIGURATION, f"{path}: 'airdrop' must be a mapping")
    return section


def env_overrides(env: Optional[Mapping[str, str]] = None) -> Dict[str, Any]:
    """``OKITO_BATCH_SIZE=10`` -> ``{"batch_size": "10"}`` for known options."""
    env = os.environ if env is None else env
    known = set(_field_types(BatchConfig))
    overrides = {}
    for name, value in env.items():
        if not name.startswith(ENV_PREFIX):
            continue
        key = name[len(ENV_PREFIX):].lower()
        if key in known:
            overrides[key] = value
    return overrides


def load_batch_config(
    path: Optional[Union[str, Path]] = None,
    env: Optional[Mapping[str, str]] = None,
    use_dotenv: bool = True,
    **overrides,
) -> BatchConfig:
    if use_dotenv and env is None:
        load_dotenv()
    env = os.environ if env is None else env

    values: Dict[str, Any] = {}
    if path is not None:
        values.update(read_yaml_config(path, env))
        logger.info(f"Loaded airdrop config from {path}")
    values.update(env_overrides(env))
    values.update(overrides)

    config = BatchConfig.merged(_normalize(values))
    for note in config.adjustments:
        logger.warning(f"Config adjusted: {note}")
    return config


def load_rpc_endpoint(env: Optional[Mapping[str, str]] = None, use_dotenv: bool = True) -> str:
    if use_dotenv and env is None:
        load_dotenv()
    env = os.environ if env is None else env
    for name in RPC_ENDPOINT_VARS:
        value = env.get(name)
        if value:
            return value
    raise OkitoError(
        ErrorCode.MISSING_REQUIRED_PARAMETER,
        f"RPC endpoint not configured; set one of {', '.join(RPC_ENDPOINT_VARS)}",
    )
