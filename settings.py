"""Runtime AI settings: per-step provider, model, temperature and prompt overrides.

Defaults come from strategy_config (AI_STEPS and PROMPTS). Overrides saved
through the API live in a small JSON file and win over the defaults the
next time a step is called.
"""

import json
import logging
import os
import threading
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Dict, List

from config import SETTINGS_FILE
from errors import PersistenceFailure
from store import write_json_atomic
from strategy_config import AI_STEPS, PROMPTS

logger = logging.getLogger(__name__)

PROVIDERS = ("claude", "qwen")
DEFAULT_TEMPERATURE = 0.7


@dataclass
class StepSetting:
    """Effective AI configuration of one pipeline step."""
    step_key: str
    provider: str = "claude"
    model_name: str = ""
    temperature: float = DEFAULT_TEMPERATURE
    prompt_template: str = ""
    updated_at: str = ""

    def to_dict(self) -> Dict:
        return asdict(self)


class SettingsStore:
    """JSON-file store of per-step overrides, keyed by step_key."""

    def __init__(self, path: str = None):
        self.path = path or SETTINGS_FILE
        self._lock = threading.Lock()

    def _overrides(self) -> Dict[str, Dict]:
        if not os.path.exists(self.path):
            return {}
        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                raw = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("[Config] Cannot read settings %s, using defaults: %s", self.path, e)
            return {}
        if not isinstance(raw, dict):
            logger.warning("[Config] Settings %s has an unexpected layout, using defaults", self.path)
            return {}
        return {k: v for k, v in raw.items() if isinstance(v, dict)}

    def get(self, step_key: str) -> StepSetting:
        """Defaults for step_key with any saved override applied."""
        merged = {"prompt_template": PROMPTS.get(step_key, "")}
        merged.update(AI_STEPS.get(step_key, {}))
        override = self._overrides().get(step_key, {})
        merged.update({k: v for k, v in override.items() if v not in (None, "")})

        try:
            temperature = float(merged.get("temperature", DEFAULT_TEMPERATURE))
        except (TypeError, ValueError):
            temperature = DEFAULT_TEMPERATURE

        return StepSetting(
            step_key=step_key,
            provider=str(merged.get("provider") or "claude"),
            model_name=str(merged.get("model_name") or ""),
            temperature=temperature,
            prompt_template=str(merged.get("prompt_template") or ""),
            updated_at=str(merged.get("updated_at") or ""),
        )

    def all(self) -> List[StepSetting]:
        return [self.get(step_key) for step_key in AI_STEPS]

    def save(self, step_key: str, provider: str, model_name: str,
             temperature: float = None, prompt_template: str = None) -> StepSetting:
        """Upsert the override of one step.

        Raises ValueError for an unknown step or provider, or a temperature
        outside 0..2, and PersistenceFailure if the file cannot be written.
        An empty prompt_template clears a custom prompt.
        """
        if step_key not in AI_STEPS:
            raise ValueError(f"Unknown step: {step_key}")
        if provider not in PROVIDERS:
            raise ValueError(f"Unknown provider: {provider}")
        if temperature is not None:
            temperature = float(temperature)
            if not 0 <= temperature <= 2:
                raise ValueError("Temperature must be between 0 and 2")

        with self._lock:
            overrides = self._overrides()
            entry = {
                "provider": provider,
                "model_name": model_name,
                "prompt_template": prompt_template or None,
                "updated_at": datetime.now().isoformat(timespec="seconds"),
            }
            if temperature is not None:
                entry["temperature"] = temperature
            elif "temperature" in overrides.get(step_key, {}):
                entry["temperature"] = overrides[step_key]["temperature"]
            overrides[step_key] = entry

            try:
                write_json_atomic(self.path, overrides)
            except (OSError, TypeError, ValueError) as e:
                raise PersistenceFailure(f"Cannot write settings {self.path}: {e}") from e

        logger.info("[Config] %s -> %s %s", step_key, provider, model_name)
        return self.get(step_key)


_default_store = None


def default_store() -> SettingsStore:
    """Process-wide settings store, shared by the advisor and the API."""
    global _default_store
    if _default_store is None:
        _default_store = SettingsStore()
    return _default_store
