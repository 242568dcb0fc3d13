"""Tests for the profile category vocabulary."""

import pytest

from ambient.agent.categories import BUILTIN_CATEGORY_FILE, GENERIC_GUIDANCE, CategoryConfig


class TestCategoryConfig:
    def test_builtin_set(self):
        categories = CategoryConfig.load()
        assert "goals" in categories.names
        assert categories.guidance("Goals").startswith("Stated or implied ambitions")
        assert categories.guidance("pets") == GENERIC_GUIDANCE

    def test_load_from_yaml(self, tmp_path):
        path = tmp_path / "categories.yaml"
        path.write_text(
            "generic_guidance: Anything else.\n"
            "categories:\n"
            "  Travel: Trips and places.\n"
            "  basic: Identity.\n"
        )
        categories = CategoryConfig.load(str(path))

        assert categories.names == ("travel", "basic")
        assert categories.is_known("TRAVEL")
        assert categories.guidance("travel") == "Trips and places."
        assert categories.guidance("unknown") == "Anything else."

    def test_shipped_file_is_the_builtin_set(self):
        categories = CategoryConfig.load(str(BUILTIN_CATEGORY_FILE))
        assert categories.names == CategoryConfig.load().names
        assert len(categories.names) == 8
        assert categories.prompt_list().startswith("basic, personal, professional")

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            CategoryConfig.load(str(tmp_path / "nope.yaml"))

    def test_file_without_categories(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("generic_guidance: x\n")
        with pytest.raises(ValueError, match="No categories"):
            CategoryConfig.load(str(path))

    def test_underscore_names_are_rejected(self, tmp_path):
        path = tmp_path / "categories.yaml"
        path.write_text("categories:\n  _full: Clashes with the compiled profile.\n")
        with pytest.raises(ValueError, match="underscore"):
            CategoryConfig.load(str(path))
