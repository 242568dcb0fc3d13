"""
Profile category vocabulary.

Loads the known categories and their blend guidance from a YAML file. The
built-in set ships next to this module as categories.yaml; a deployment can
point CATEGORY_CONFIG_PATH at its own file instead. Category names are
lowercased and stripped at load time, matching how insights are normalized.

Usage:
    from ambient.agent.categories import CategoryConfig
    categories = CategoryConfig.load()
    categories.names                 # → ("basic", "personal", ...)
    categories.guidance("goals")     # → "Stated or implied ambitions, ..."
    categories.guidance("pets")      # → generic guidance
"""

import logging
from pathlib import Path
from typing import Mapping, Optional

import yaml

logger = logging.getLogger(__name__)

BUILTIN_CATEGORY_FILE = Path(__file__).with_name("categories.yaml")

GENERIC_GUIDANCE = "Anything the observations reveal about the user under this heading."


class CategoryConfig:
    """Known categories with their guidance text, plus a generic fallback."""

    def __init__(self, guidance: Mapping[str, str], generic: str = GENERIC_GUIDANCE):
        self._guidance = {
            str(name).lower().strip(): str(text).strip()
            for name, text in guidance.items()
            if str(name).strip()
        }
        self._generic = generic

    @classmethod
    def load(cls, yaml_path: Optional[str] = None) -> "CategoryConfig":
        """
        Load categories from a YAML file. No path means the built-in set.

        Raises:
            FileNotFoundError: If the file does not exist.
            ValueError: If the file has no usable `categories` mapping, or
                a category name starts with an underscore.
        """
        path = Path(yaml_path) if yaml_path else BUILTIN_CATEGORY_FILE
        if not path.exists():
            raise FileNotFoundError(
                f"Category config not found: {path}. "
                f"Create it from the template in {BUILTIN_CATEGORY_FILE.name}."
            )

        with open(path) as f:
            data = yaml.safe_load(f) or {}

        categories = data.get("categories")
        if not isinstance(categories, dict) or not categories:
            raise ValueError(f"No categories defined in {path}")

        config = cls(categories, str(data.get("generic_guidance") or GENERIC_GUIDANCE))
        reserved = [name for name in config.names if name.startswith("_")]
        if reserved:
            raise ValueError(f"Category names cannot start with an underscore: {reserved}")

        logger.info(
            "category_config.loaded",
            extra={
                "action": "category_config.loaded",
                "path": str(path),
                "category_count": len(config.names),
            },
        )
        return config

    @property
    def names(self) -> tuple[str, ...]:
        return tuple(self._guidance)

    def is_known(self, category: str) -> bool:
        return category.lower().strip() in self._guidance

    def guidance(self, category: str) -> str:
        """Guidance for a category; generic guidance for anything unknown."""
        return self._guidance.get(category.lower().strip(), self._generic)

    def prompt_list(self) -> str:
        """The category names as extractor prompts list them."""
        return ", ".join(self.names)
