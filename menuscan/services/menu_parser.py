"""
Menu Parser Service - rule-based fallback extractor.

This module turns recognized text blocks into dishes using price patterns,
section headers and keyword heuristics. It is only used when AI analysis
is unavailable.
"""

import re
import logging
from typing import List, Optional, Dict, Any, Iterable, Tuple, Union

from menuscan.models.data_models import DietaryTag, Dish, DishCategory, RecognizedTextBlock


logger = logging.getLogger(__name__)

TextInput = Union[RecognizedTextBlock, str]

SECTION_HEADERS = {
    DishCategory.APPETIZER: ("appetizers", "appetizer", "starters", "starter", "small plates",
                             "salads", "soups"),
    DishCategory.MAIN_COURSE: ("mains", "main courses", "main course", "entrees", "entrées",
                               "entree"),
    DishCategory.DESSERT: ("desserts", "dessert", "sweets"),
    DishCategory.BEVERAGE: ("drinks", "beverages", "wine", "wines", "beer", "cocktails"),
    DishCategory.SPECIAL: ("specials", "chef's specials", "today's special", "chef's recommendation"),
}

CATEGORY_KEYWORDS = {
    DishCategory.APPETIZER: ("appetizer", "starter", "bruschetta", "soup", "salad", "wings",
                             "nachos", "dip", "olives"),
    DishCategory.MAIN_COURSE: ("entree", "pasta", "pizza", "burger", "steak", "chicken", "fish",
                               "salmon", "beef", "pork", "lamb", "seafood", "risotto", "noodles"),
    DishCategory.DESSERT: ("dessert", "cake", "pie", "ice cream", "chocolate", "cheesecake",
                           "cookie", "brownie", "sorbet", "pudding", "tiramisu"),
    DishCategory.BEVERAGE: ("coffee", "tea", "juice", "soda", "wine", "beer", "cocktail",
                            "smoothie", "latte", "cappuccino", "lemonade"),
    DishCategory.SPECIAL: ("special", "chef's", "signature", "seasonal", "featured"),
}

DIETARY_KEYWORDS = {
    DietaryTag.VEGETARIAN: ("vegetarian", "veggie", "(v)"),
    DietaryTag.VEGAN: ("vegan", "plant-based", "(vg)"),
    DietaryTag.GLUTEN_FREE: ("gluten free", "gluten-free", "(gf)"),
    DietaryTag.DAIRY_FREE: ("dairy free", "dairy-free", "lactose free"),
    DietaryTag.SPICY: ("spicy", "chili", "chilli", "jalapeño", "jalapeno", "sriracha"),
    DietaryTag.HEALTHY: ("healthy", "low fat", "superfood"),
}


class MenuParser:
    """
    Rule-based dish extraction from recognized text.

    Section headers set the category of the dishes that follow them; a line
    without a price directly under a dish is taken as its description.
    """

    def __init__(self, min_confidence: float = 0.3):
        # Common price patterns across different currencies and formats
        self.price_patterns = [
            r'\$\s?\d+(?:\.\d{2})?',  # $12.99, $12
            r'€\s?\d+(?:[.,]\d{2})?',  # €12.99, €12,99
            r'\d+(?:[.,]\d{2})?\s?€',  # 12,99€
            r'£\d+(?:\.\d{2})?',  # £12.99
            r'¥\d+',  # ¥1200
            r'\d+(?:[.,]\d{2})?\s*(?:USD|EUR|GBP|CAD|AUD)\b',  # 12.99 USD
            r'(?<![\d.])\d{1,4}[.,]\d{2}(?![\d])',  # 12.99 (no currency symbol)
        ]

        # Lines that are never dishes
        self.skip_patterns = [
            r'(?i)^(?:menu|our menu)$',
            r'(?i)^(?:hours?|open|phone|tel|address|website|www\.).*',
            r'^\s*[-=_*~]{3,}\s*$',  # Separator lines
        ]

        self.dish_indicators = [
            r'(?i)\b(?:with|served|topped|grilled|fried|baked|roasted|steamed)\b',
            r'(?i)\b(?:chicken|beef|pork|fish|salmon|tuna|shrimp|vegetarian|vegan)\b',
            r'(?i)\b(?:pasta|pizza|burger|sandwich|salad|soup|rice|noodles)\b',
        ]

        self.min_confidence = min_confidence

    def extract_dishes(self, text_blocks: Iterable[TextInput]) -> List[Dish]:
        """
        Extract dishes from recognized text blocks.

        Args:
            text_blocks: RecognizedTextBlock objects or plain strings, in reading order

        Returns:
            List of Dish objects, in menu order
        """
        lines = self._lines_with_confidence(text_blocks)
        if not lines:
            logger.warning("No recognized text provided for parsing")
            return []

        entries: List[Dict[str, Any]] = []
        section = DishCategory.UNKNOWN

        for line, block_confidence in lines:
            header = self._section_for_header(line)
            if header is not None:
                section = header
                continue

            if any(re.match(pattern, line) for pattern in self.skip_patterns):
                continue

            entry = self._parse_line(line, block_confidence, section)
            if entry is not None:
                entries.append(entry)
            elif entries and entries[-1]["price"] and not entries[-1]["description"] and len(line) > 5:
                # Unpriced text right under a dish reads as its description
                entries[-1]["description"] = line

        dishes = []
        for entry in entries:
            dish = self._build_dish(entry)
            if dish.confidence >= self.min_confidence:
                dishes.append(dish)

        logger.info(f"Legacy parser extracted {len(dishes)} dishes from {len(lines)} text lines")
        return dishes

    def _lines_with_confidence(self, text_blocks: Iterable[TextInput]) -> List[Tuple[str, float]]:
        lines = []
        for block in text_blocks:
            if isinstance(block, RecognizedTextBlock):
                text, confidence = block.text, block.confidence
            else:
                text, confidence = str(block), 1.0

            for raw_line in text.split('\n'):
                # Remove common OCR artifacts
                line = re.sub(r'[|]{2,}', '', raw_line)
                line = re.sub(r'\s{2,}', ' ', line).strip()
                if line:
                    lines.append((line, confidence))
        return lines

    @staticmethod
    def _section_for_header(line: str) -> Optional[DishCategory]:
        normalized = line.strip(' :-=*').lower()
        for category, headers in SECTION_HEADERS.items():
            if normalized in headers:
                return category
        return None

    def _parse_line(self, line: str, block_confidence: float,
                    section: DishCategory) -> Optional[Dict[str, Any]]:
        """Parse a priced or dish-like line, or None if it is neither."""
        price, price_confidence = self._extract_price(line)
        has_indicator = any(re.search(pattern, line) for pattern in self.dish_indicators)
        if not price and not has_indicator:
            return None

        name, description = self._split_name_and_description(line, price)
        if not name or len(name) < 2 or not re.search(r'[^\W\d_]', name):
            return None

        return {
            "name": name,
            "price": price or None,
            "description": description,
            "section": section,
            "block_confidence": block_confidence,
            "price_confidence": price_confidence,
        }

    def _extract_price(self, line: str) -> Tuple[str, float]:
        """
        Extract the price from a text line.

        Returns:
            Tuple of (price_string, confidence); ("", 0.0) when there is none
        """
        for pattern in self.price_patterns:
            matches = re.findall(pattern, line)
            if matches:
                # The last match is usually the price at the end of the line
                price = matches[-1].strip()
                confidence = 0.9 if any(symbol in price for symbol in ['$', '€', '£', '¥']) else 0.6
                return price, confidence

        return "", 0.0

    @staticmethod
    def _split_name_and_description(line: str, price: str) -> Tuple[str, Optional[str]]:
        text = line
        if price:
            text = text.replace(price, ' ', 1)

        # Dotted leaders and dashed separators between name and price
        text = re.sub(r'\.{2,}|-{2,}|_{2,}', ' ', text)
        text = re.sub(r'\s+', ' ', text).strip(' .-_:')

        # "Name - description" or "Name: description"
        parts = re.split(r'\s[-–—:]\s|,\s', text, maxsplit=1)
        name = parts[0].strip(' .-_')
        description = parts[1].strip(' .-_') if len(parts) > 1 else None
        if description is not None and len(description) <= 5:
            name, description = text, None
        return name, description

    def _build_dish(self, entry: Dict[str, Any]) -> Dish:
        full_text = f"{entry['name']} {entry['description'] or ''}".lower()
        category = entry["section"]
        if category == DishCategory.UNKNOWN:
            category = self._category_from_keywords(full_text)

        return Dish(
            name=entry["name"],
            description=entry["description"],
            price=entry["price"],
            category=category,
            dietary_info=frozenset(self._dietary_tags(full_text)),
            confidence=self._calculate_confidence(entry),
        )

    @staticmethod
    def _category_from_keywords(text: str) -> DishCategory:
        best, best_hits = DishCategory.UNKNOWN, 0
        for category, keywords in CATEGORY_KEYWORDS.items():
            hits = sum(1 for keyword in keywords if keyword in text)
            if hits > best_hits:
                best, best_hits = category, hits
        return best

    @staticmethod
    def _dietary_tags(text: str) -> List[DietaryTag]:
        return [tag for tag, keywords in DIETARY_KEYWORDS.items()
                if any(keyword in text for keyword in keywords)]

    def _calculate_confidence(self, entry: Dict[str, Any]) -> float:
        """Recognition confidence blended with how dish-like the entry looks."""
        confidence = entry["block_confidence"] * 0.4

        if entry["price"]:
            confidence += entry["price_confidence"] * 0.3

        if any(re.search(pattern, entry["name"]) for pattern in self.dish_indicators):
            confidence += 0.2

        if 5 <= len(entry["name"]) <= 50:
            confidence += 0.1

        if entry["description"]:
            confidence += 0.05

        return min(max(confidence, 0.0), 1.0)

    def get_parsing_statistics(self, dishes: List[Dish]) -> Dict[str, Any]:
        """Summary counts for a list of extracted dishes."""
        if not dishes:
            return {
                'total_dishes': 0,
                'dishes_with_prices': 0,
                'dishes_with_descriptions': 0,
                'average_confidence': 0.0,
            }

        return {
            'total_dishes': len(dishes),
            'dishes_with_prices': sum(1 for dish in dishes if dish.price),
            'dishes_with_descriptions': sum(1 for dish in dishes if dish.description),
            'average_confidence': round(sum(dish.confidence for dish in dishes) / len(dishes), 3),
        }
