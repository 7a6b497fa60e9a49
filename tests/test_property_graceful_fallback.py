"""
Property-based tests for graceful failure handling.

Failed enrichment keeps the dish, and malformed inference replies surface
as a single parsing error kind.
"""

from unittest.mock import Mock

from hypothesis import given, settings, strategies as st
import pytest

from menuscan.models.data_models import Dish
from menuscan.services.ai_menu_analyzer import AIMenuAnalyzer
from menuscan.services.dish_visualizer import DishVisualizer
from menuscan.services.errors import (
    ErrorKind, NetworkUnavailableError, ResponseParsingError, ServerError, ServiceNotConfiguredError
)
from menuscan.services.privacy_sanitizer import PrivacySanitizer
from menuscan.services.response_parser import ResponseParser


@st.composite
def dish_names(draw):
    """Generate realistic dish names for testing."""
    cuisines = ["Italian", "Thai", "Indian", "Chinese", "Mexican", "French", "Japanese", "Greek"]
    dish_types = ["pasta", "curry", "soup", "salad", "pizza", "stir-fry", "rice", "noodles"]
    proteins = ["chicken", "beef", "pork", "fish", "tofu", "shrimp", "lamb"]

    cuisine = draw(st.sampled_from(cuisines))
    dish_type = draw(st.sampled_from(dish_types))
    protein = draw(st.sampled_from(proteins))

    patterns = [
        f"{cuisine} {dish_type}",
        f"{protein} {dish_type}",
        f"{cuisine} {protein} {dish_type}",
        f"Grilled {protein}",
        f"{cuisine} special",
    ]
    return draw(st.sampled_from(patterns))


class TestGracefulEnrichmentFallback:
    """Property-based tests for enrichment failures."""

    @given(dish_name=dish_names(), error=st.sampled_from([
        NetworkUnavailableError("offline"),
        ServiceNotConfiguredError("no key"),
        ServerError("boom", status_code=503),
    ]))
    @settings(max_examples=50, deadline=1000)
    def test_failed_enrichment_keeps_dish(self, dish_name, error):
        """Any transport failure leaves the dish untouched and unvisualized."""
        analyzer = Mock(spec=AIMenuAnalyzer)
        analyzer.generate_text.side_effect = error
        visualizer = DishVisualizer(analyzer, PrivacySanitizer())
        dish = Dish(name=dish_name, price="$10")

        enriched = visualizer.enrich(dish)

        assert enriched.dish is dish
        assert enriched.visualization is None

    @given(dish_name=dish_names(), reply=st.text(max_size=200))
    @settings(max_examples=50, deadline=1000)
    def test_arbitrary_replies_never_escape_enrichment(self, dish_name, reply):
        """Whatever text comes back, enrichment returns a result for the dish."""
        analyzer = Mock(spec=AIMenuAnalyzer)
        analyzer.generate_text.return_value = reply
        visualizer = DishVisualizer(analyzer, PrivacySanitizer())
        dish = Dish(name=dish_name)

        enriched = visualizer.enrich(dish)

        assert enriched.dish is dish
        if enriched.visualization is not None:
            assert enriched.visualization.description.strip()


class TestMalformedReplyProperty:
    """Property-based tests for reply parsing."""

    @given(reply=st.text(max_size=300))
    @settings(max_examples=100, deadline=1000)
    def test_arbitrary_text_is_parsed_or_rejected(self, reply):
        """Reply text either decodes against the schema or raises a parsing error."""
        parser = ResponseParser(PrivacySanitizer())
        try:
            payload = parser.parse(reply)
        except ResponseParsingError as e:
            assert e.kind == ErrorKind.PARSING
        else:
            assert 0.0 <= payload.confidence <= 1.0

    @given(confidence=st.floats(min_value=1.0001, max_value=100.0) | st.floats(max_value=-0.0001, min_value=-100.0))
    def test_out_of_range_confidence_rejected(self, confidence):
        """Confidence outside [0, 1] is a parsing failure."""
        with pytest.raises(ResponseParsingError):
            ResponseParser().parse(f'{{"dishes": [], "confidence": {confidence}}}')
