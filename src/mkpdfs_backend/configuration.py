from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Any, Dict

from dotenv import load_dotenv
from omegaconf import DictConfig, OmegaConf

CONFIG_PATH = Path(__file__).resolve().parent / "config.yaml"


@lru_cache(maxsize=1)
def _load_default_config() -> DictConfig:
    if not CONFIG_PATH.exists():  # pragma: no cover - fail fast in broken installs
        raise FileNotFoundError(f"Default config not found at {CONFIG_PATH}")
    # .env values must be visible before oc.env interpolations resolve
    load_dotenv()
    return OmegaConf.load(CONFIG_PATH)


def get_default_config_container(resolve: bool = False) -> Dict[str, Any]:
    config = _load_default_config()
    return OmegaConf.to_container(config, resolve=resolve, enum_to_str=True)  # type: ignore[return-value]


def make_runtime_config(overrides: Dict[str, Any] | None = None) -> DictConfig:
    """
    Merge overrides into the packaged defaults.

    The defaults are locked in struct mode, so an override naming a key that
    does not exist in ``config.yaml`` raises instead of being silently added.
    Environment interpolations are resolved eagerly so later reads see plain
    values.
    """
    base_container = OmegaConf.to_container(_load_default_config(), resolve=True)
    base = OmegaConf.create(base_container)
    OmegaConf.set_struct(base, True)

    merged = DictConfig(OmegaConf.merge(base, OmegaConf.create(overrides or {})))
    return merged


@lru_cache(maxsize=1)
def get_settings() -> DictConfig:
    return make_runtime_config({})


def reset_settings_cache() -> None:
    """Forget cached settings, e.g. after tests change environment variables."""
    _load_default_config.cache_clear()
    get_settings.cache_clear()
