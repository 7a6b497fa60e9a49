"""
Tests for the dish visualizer.
"""

import json
from unittest.mock import Mock

import pytest

from menuscan.models.data_models import Dish, DishCategory, Menu
from menuscan.services.ai_menu_analyzer import AIMenuAnalyzer
from menuscan.services.dish_visualizer import DishVisualizer, get_visualization_prompt
from menuscan.services.errors import NetworkUnavailableError, UnsafeContentError
from menuscan.services.privacy_sanitizer import PrivacySanitizer


def visualization_reply(**overrides):
    body = {
        "description": "Crisp romaine tossed in a garlicky dressing with shaved parmesan.",
        "visualStyle": "Served in a wide white bowl",
        "preparationNotes": "Dressed to order",
        "ingredients": ["romaine", "parmesan", "croutons"],
    }
    body.update(overrides)
    return json.dumps(body)


class TestDishVisualizer:
    """Test cases for DishVisualizer."""

    def setup_method(self):
        """Set up a visualizer over a mocked analyzer."""
        self.analyzer = Mock(spec=AIMenuAnalyzer)
        self.analyzer.generate_text.return_value = visualization_reply()
        self.visualizer = DishVisualizer(self.analyzer, PrivacySanitizer())
        self.dish = Dish(
            name="Caesar Salad",
            description="Romaine, parmesan. Call 555-123-4567 for catering",
            price="$12.99",
            category=DishCategory.APPETIZER,
            confidence=0.9,
        )

    def test_visualize(self):
        """Test a reply becomes a DishVisualization."""
        visualization = self.visualizer.visualize(self.dish)

        assert visualization.description.startswith("Crisp romaine")
        assert visualization.visual_style == "Served in a wide white bowl"
        assert visualization.ingredients == ["romaine", "parmesan", "croutons"]

    def test_prompt_contains_only_minimal_payload(self):
        """Test price, confidence and contact details never leave the device."""
        self.visualizer.visualize(self.dish)
        prompt = self.analyzer.generate_text.call_args.args[0]

        assert "Caesar Salad" in prompt
        assert "appetizer" in prompt
        assert "$12.99" not in prompt
        assert "555-123-4567" not in prompt
        assert self.dish.id not in prompt

    def test_visualization_is_cached(self):
        """Test repeated calls for a dish reuse the result."""
        first = self.visualizer.visualize(self.dish)
        second = self.visualizer.visualize(self.dish)

        assert first is second
        assert self.analyzer.generate_text.call_count == 1

        self.visualizer.clear_cache()
        self.visualizer.visualize(self.dish)
        assert self.analyzer.generate_text.call_count == 2

    def test_prose_reply_becomes_description(self):
        """Test a non-JSON reply is used as the description."""
        self.analyzer.generate_text.return_value = "A bright, crunchy salad."
        visualization = self.visualizer.visualize(self.dish)

        assert visualization.description == "A bright, crunchy salad."
        assert visualization.ingredients == []

    @pytest.mark.parametrize("reply", [
        visualization_reply(description="<script>alert(1)</script>Tasty"),
        visualization_reply(visualStyle="Order at chef@harborbistro.com"),
        visualization_reply(description="x" * 1001),
        visualization_reply(description="   "),
    ])
    def test_unsafe_replies_rejected(self, reply):
        """Test generated text must pass the content-safety check."""
        self.analyzer.generate_text.return_value = reply
        with pytest.raises(UnsafeContentError):
            self.visualizer.visualize(self.dish)

    def test_enrich_failure_keeps_dish(self):
        """Test a failed generation leaves the dish without a visualization."""
        self.analyzer.generate_text.side_effect = NetworkUnavailableError("offline")
        enriched = self.visualizer.enrich(self.dish)

        assert enriched.dish == self.dish
        assert enriched.visualization is None

    def test_enrich_menu_preserves_order(self):
        """Test concurrent enrichment keeps menu order."""
        dishes = [Dish(name=f"Dish {index}") for index in range(5)]
        enriched = self.visualizer.enrich_menu(Menu(dishes=dishes, confidence=0.9))

        assert [item.dish.id for item in enriched] == [dish.id for dish in dishes]
        assert all(item.visualization is not None for item in enriched)
        assert self.visualizer.enrich_menu(Menu()) == []

    def test_visualization_prompt(self):
        """Test the prompt asks for the JSON structure."""
        payload = PrivacySanitizer().sanitize_payload(Dish(name="Soup", category=DishCategory.APPETIZER))
        prompt = get_visualization_prompt(payload)

        assert "Dish: Soup" in prompt
        assert '"visualStyle"' in prompt
        assert "Menu description" not in prompt
