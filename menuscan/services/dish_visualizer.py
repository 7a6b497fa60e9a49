"""
Dish Visualizer - AI-generated presentation text for extracted dishes.

Only the sanitized minimal payload of a dish (name, truncated description,
category) is sent. Generated text is checked for unsafe or sensitive content
before it is attached to an EnrichedDish; the Dish itself is never modified.
"""

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from menuscan.models.data_models import Dish, DishVisualization, EnrichedDish, Menu, OutgoingDishPayload
from menuscan.services.ai_menu_analyzer import AIMenuAnalyzer
from menuscan.services.cancellation import CancellationToken
from menuscan.services.errors import AnalysisError, UnsafeContentError
from menuscan.services.privacy_sanitizer import PrivacySanitizer
from menuscan.services.response_parser import strip_code_fences
from menuscan.services.result_cache import BoundedLRU


logger = logging.getLogger(__name__)

MAX_GENERATED_LENGTH = 1000


class VisualizationPayload(BaseModel):
    """Reply schema for a dish visualization."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    description: str
    visual_style: str = Field("", alias="visualStyle")
    preparation_notes: str = Field("", alias="preparationNotes")
    ingredients: List[str] = Field(default_factory=list)


def get_visualization_prompt(payload: OutgoingDishPayload) -> str:
    """Prompt built from the minimal dish payload only."""
    details = f"Dish: {payload.name}\nCategory: {payload.category}"
    if payload.description:
        details += f"\nMenu description: {payload.description}"

    return f"""
Create an appetizing, restaurant-quality description of this dish.

{details}

Return ONLY a valid JSON object with this exact structure:
{{
  "description": "two or three sentences on flavors, textures and presentation",
  "visualStyle": "how the plated dish looks",
  "preparationNotes": "how it is typically prepared",
  "ingredients": ["likely main ingredients"]
}}
""".strip()


class DishVisualizer:
    """
    Generates DishVisualization records through the secured inference endpoint.

    Results are cached per dish id for the session.
    """

    def __init__(self, analyzer: AIMenuAnalyzer, sanitizer: PrivacySanitizer,
                 cache_size: int = 50, max_workers: int = 3):
        self.analyzer = analyzer
        self.sanitizer = sanitizer
        self.max_workers = max_workers
        self._cache: BoundedLRU[DishVisualization] = BoundedLRU(cache_size)

    def visualize(self, dish: Dish,
                  cancel_token: Optional[CancellationToken] = None) -> DishVisualization:
        """
        Generate a visualization for one dish.

        Raises:
            ServiceNotConfiguredError: If the analyzer has no credential
            UnsafeContentError: If the generated text fails the safety check
            AnalysisError: Transport and parsing failures
        """
        cached = self._cache.get(dish.id)
        if cached is not None:
            return cached

        payload = self.sanitizer.sanitize_payload(dish)
        reply = self.analyzer.generate_text(get_visualization_prompt(payload), cancel_token=cancel_token)
        visualization = self._parse_reply(reply)

        self._cache.put(dish.id, visualization)
        logger.info(f"Generated visualization for dish: {payload.name}")
        return visualization

    def enrich(self, dish: Dish) -> EnrichedDish:
        """Attach a visualization, or none if generation fails."""
        try:
            return EnrichedDish(dish=dish, visualization=self.visualize(dish))
        except AnalysisError as e:
            logger.warning(f"Visualization failed ({e.kind.value}): {e}")
            return EnrichedDish(dish=dish)

    def enrich_menu(self, menu: Menu) -> List[EnrichedDish]:
        """Enrich every dish concurrently, preserving menu order."""
        if not menu.dishes:
            return []

        results: List[Optional[EnrichedDish]] = [None] * len(menu.dishes)
        with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            futures = {executor.submit(self.enrich, dish): index for index, dish in enumerate(menu.dishes)}
            for future in as_completed(futures):
                results[futures[future]] = future.result()

        enriched = sum(1 for item in results if item.visualization is not None)
        logger.info(f"Dish enrichment completed. {enriched}/{len(results)} dishes enriched")
        return results

    def clear_cache(self) -> None:
        self._cache.clear()

    def _parse_reply(self, reply: str) -> DishVisualization:
        cleaned = strip_code_fences(reply)
        try:
            payload = VisualizationPayload.model_validate_json(cleaned)
        except ValidationError:
            # Plain prose replies become the description
            payload = VisualizationPayload(description=cleaned)

        texts = [payload.description, payload.visual_style, payload.preparation_notes, *payload.ingredients]
        for text in texts:
            if len(text) > MAX_GENERATED_LENGTH:
                raise UnsafeContentError("Generated text exceeds length limit")
            if self.sanitizer.contains_unsafe_content(text) or self.sanitizer.contains_sensitive_data(text):
                raise UnsafeContentError("Generated text failed content-safety check")

        if not payload.description.strip():
            raise UnsafeContentError("Generated description is empty")

        return DishVisualization(
            description=payload.description.strip(),
            visual_style=payload.visual_style.strip(),
            preparation_notes=payload.preparation_notes.strip(),
            ingredients=[item.strip() for item in payload.ingredients if item.strip()],
        )
