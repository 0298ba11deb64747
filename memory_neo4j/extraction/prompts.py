"""
Prompt loader for extraction and sleep-cycle LLM calls.

Prompts live in prompts.yaml beside this module, keyed by dot notation
(e.g. "extraction.system"), with {variable} placeholders.
"""

import logging
from functools import lru_cache
from pathlib import Path
from typing import Any, Optional

import yaml

logger = logging.getLogger(__name__)


class PromptLoader:
    """Loads prompts from YAML lazily and renders them with variable substitution."""

    def __init__(self, config_path: Optional[Path] = None):
        self._config_path = config_path or (Path(__file__).parent / "prompts.yaml")
        self._data: dict = {}
        self._loaded = False

    def _load(self) -> None:
        if self._loaded:
            return
        if not self._config_path.exists():
            logger.warning(f"Prompts file not found: {self._config_path}")
        else:
            with open(self._config_path, "r", encoding="utf-8") as f:
                self._data = yaml.safe_load(f) or {}
            logger.debug(f"Loaded prompts from {self._config_path}")
        self._loaded = True

    def _get_nested(self, key: str) -> Any:
        self._load()
        current: Any = self._data
        for part in key.split("."):
            if not isinstance(current, dict):
                return None
            current = current.get(part)
            if current is None:
                return None
        return current

    def get(self, key: str, default: str = "", **variables: Any) -> str:
        """
        Get a prompt by key with variable substitution.

        Args:
            key: Dot-notation key (e.g., "conflict.system")
            default: Returned when the key is missing
            **variables: Values for {name} placeholders

        Returns:
            Rendered prompt string
        """
        template = self._get_nested(key)
        if not isinstance(template, str):
            logger.warning(f"Prompt not found: {key}")
            return default
        result = template
        for name, value in variables.items():
            result = result.replace(f"{{{name}}}", str(value))
        return result


@lru_cache
def get_prompt_loader() -> PromptLoader:
    """Get cached prompt loader instance."""
    return PromptLoader()
