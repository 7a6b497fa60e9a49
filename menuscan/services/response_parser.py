"""
Response Parser for inference replies.

Strips markdown fences from the model's text reply, decodes it against the
fixed menu schema with pydantic, and maps the result onto the closed
domain enums.
"""

import logging
import re
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from menuscan.models.data_models import DietaryTag, Dish, DishCategory, ExtractionSource, Menu
from menuscan.services.errors import ResponseParsingError
from menuscan.services.privacy_sanitizer import PrivacySanitizer


logger = logging.getLogger(__name__)

CODE_FENCE = re.compile(r"^\s*```[A-Za-z]*\s*\n?(.*?)\n?\s*```\s*$", re.DOTALL)

CATEGORY_SYNONYMS = {
    "appetizer": DishCategory.APPETIZER,
    "appetizers": DishCategory.APPETIZER,
    "starter": DishCategory.APPETIZER,
    "starters": DishCategory.APPETIZER,
    "small plates": DishCategory.APPETIZER,
    "maincourse": DishCategory.MAIN_COURSE,
    "main course": DishCategory.MAIN_COURSE,
    "main": DishCategory.MAIN_COURSE,
    "mains": DishCategory.MAIN_COURSE,
    "entree": DishCategory.MAIN_COURSE,
    "entrees": DishCategory.MAIN_COURSE,
    "entrée": DishCategory.MAIN_COURSE,
    "dessert": DishCategory.DESSERT,
    "desserts": DishCategory.DESSERT,
    "sweet": DishCategory.DESSERT,
    "sweets": DishCategory.DESSERT,
    "beverage": DishCategory.BEVERAGE,
    "beverages": DishCategory.BEVERAGE,
    "drink": DishCategory.BEVERAGE,
    "drinks": DishCategory.BEVERAGE,
    "special": DishCategory.SPECIAL,
    "specials": DishCategory.SPECIAL,
    "chef": DishCategory.SPECIAL,
    "chef's special": DishCategory.SPECIAL,
    "unknown": DishCategory.UNKNOWN,
}

DIETARY_TAGS = {tag.value.lower(): tag for tag in DietaryTag}


class DishPayload(BaseModel):
    """One dish as returned by the inference service."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: str
    description: Optional[str] = None
    price: Optional[str] = None
    category: str = "unknown"
    allergens: List[str] = Field(default_factory=list)
    dietary_info: List[str] = Field(default_factory=list, alias="dietaryInfo")

    @field_validator("price", mode="before")
    @classmethod
    def stringify_price(cls, value: Any) -> Any:
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(value)
        return value

    @field_validator("category", mode="before")
    @classmethod
    def default_category(cls, value: Any) -> Any:
        return "unknown" if value is None else value


class MenuPayload(BaseModel):
    """Top-level reply schema."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    restaurant_name: Optional[str] = Field(None, alias="restaurantName")
    dishes: List[DishPayload]
    confidence: float = Field(..., ge=0.0, le=1.0)


def strip_code_fences(text: str) -> str:
    """Remove a surrounding ```json fence, if any."""
    match = CODE_FENCE.match(text)
    if match:
        return match.group(1).strip()
    return text.strip()


def map_category(value: Optional[str]) -> DishCategory:
    """Fold a category string and its synonyms onto DishCategory, else UNKNOWN."""
    if not value:
        return DishCategory.UNKNOWN
    return CATEGORY_SYNONYMS.get(value.strip().lower(), DishCategory.UNKNOWN)


def map_dietary_tags(values: List[str]) -> List[DietaryTag]:
    """Known dietary tags only; unrecognized values are dropped."""
    tags = []
    for value in values:
        key = value.strip().lower().replace("-", "").replace(" ", "").replace("_", "")
        tag = DIETARY_TAGS.get(key)
        if tag is None:
            logger.debug(f"Dropping unrecognized dietary tag: {value!r}")
        elif tag not in tags:
            tags.append(tag)
    return tags


class ResponseParser:
    """
    Converts inference reply text into a Menu.

    Incoming text fields pass through the privacy sanitizer when one is given.
    """

    def __init__(self, sanitizer: Optional[PrivacySanitizer] = None):
        self.sanitizer = sanitizer

    def parse(self, reply_text: str) -> MenuPayload:
        """
        Decode reply text against the menu schema.

        Raises:
            ResponseParsingError: If the text is not valid JSON of the expected shape
        """
        cleaned = strip_code_fences(reply_text or "")
        try:
            return MenuPayload.model_validate_json(cleaned)
        except ValidationError as e:
            raise ResponseParsingError(f"Reply did not match menu schema ({e.error_count()} errors)",
                                       cause=e) from e

    def to_menu(self, payload: MenuPayload, processing_time: float = 0.0,
                source: ExtractionSource = ExtractionSource.AI) -> Menu:
        """Map a decoded payload onto domain records; each dish inherits menu confidence."""
        dishes = []
        for item in payload.dishes:
            dish = self._to_dish(item, payload.confidence)
            if dish is not None:
                dishes.append(dish)

        restaurant_name = self._clean(payload.restaurant_name, "restaurant_name")
        return Menu(
            restaurant_name=restaurant_name,
            dishes=dishes,
            confidence=payload.confidence,
            processing_time=processing_time,
            source=source,
        )

    def _to_dish(self, item: DishPayload, confidence: float) -> Optional[Dish]:
        name = self._clean(item.name, "dish_name")
        if not name:
            logger.debug("Skipping dish with empty name after sanitization")
            return None

        allergens = []
        for allergen in item.allergens:
            cleaned = self._clean(allergen, "allergen")
            if cleaned:
                allergens.append(cleaned.lower())

        return Dish(
            name=name,
            description=self._clean(item.description, "dish_description"),
            price=self._clean(item.price, "price"),
            category=map_category(item.category),
            allergens=frozenset(allergens),
            dietary_info=frozenset(map_dietary_tags(item.dietary_info)),
            confidence=confidence,
        )

    def _clean(self, value: Optional[str], context: str) -> Optional[str]:
        if value is None:
            return None
        cleaned = self.sanitizer.sanitize(value, context=context) if self.sanitizer else value.strip()
        if not cleaned or cleaned.lower() == "null":
            return None
        return cleaned
