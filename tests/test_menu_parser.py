"""
Tests for the rule-based menu parser.
"""

import pytest

from menuscan.models.data_models import DietaryTag, DishCategory, RecognizedTextBlock
from menuscan.services.menu_parser import MenuParser


class TestMenuParser:
    """Test cases for MenuParser."""

    def setup_method(self):
        """Set up test fixtures."""
        self.parser = MenuParser()

    def test_extract_dishes_with_prices(self):
        """Test priced lines become dishes in menu order."""
        dishes = self.parser.extract_dishes([
            "Margherita Pizza $14.99",
            "Spaghetti Bolognese ........ 16.50",
            "Tiramisu €7,50",
        ])

        assert [dish.name for dish in dishes] == ["Margherita Pizza", "Spaghetti Bolognese", "Tiramisu"]
        assert [dish.price for dish in dishes] == ["$14.99", "16.50", "€7,50"]

    @pytest.mark.parametrize("line,price", [
        ("Burger $12", "$12"),
        ("Fish and chips £9.50", "£9.50"),
        ("Ramen ¥1200", "¥1200"),
        ("Steak 32.00 USD", "32.00 USD"),
        ("Crepes 8,50€", "8,50€"),
    ])
    def test_price_formats(self, line, price):
        """Test common currency formats."""
        dishes = self.parser.extract_dishes([line])
        assert dishes[0].price == price

    def test_section_headers_set_category(self):
        """Test dishes inherit the category of the section they follow."""
        dishes = self.parser.extract_dishes([
            "DESSERTS",
            "House Special Cake $8",
            "Drinks:",
            "Fresh Lemonade $4",
        ])

        assert dishes[0].category == DishCategory.DESSERT
        assert dishes[1].category == DishCategory.BEVERAGE

    def test_keyword_category_without_header(self):
        """Test keywords decide the category when there is no header."""
        dishes = self.parser.extract_dishes(["Chocolate Cheesecake $9", "Grilled Chicken $18"])

        assert dishes[0].category == DishCategory.DESSERT
        assert dishes[1].category == DishCategory.MAIN_COURSE

    def test_description_line_attaches_to_dish(self):
        """Test an unpriced line under a dish becomes its description."""
        dishes = self.parser.extract_dishes([
            "Lobster Roll $28",
            "Maine lobster on a toasted brioche bun",
            "Clam Chowder $9",
        ])

        assert len(dishes) == 2
        assert dishes[0].description == "Maine lobster on a toasted brioche bun"
        assert dishes[1].description is None

    def test_inline_description(self):
        """Test "Name - description" lines are split."""
        dishes = self.parser.extract_dishes(["Caprese - tomato, mozzarella and basil $11"])

        assert dishes[0].name == "Caprese"
        assert dishes[0].description == "tomato, mozzarella and basil"

    def test_dietary_keywords(self):
        """Test dietary markers map onto tags."""
        dishes = self.parser.extract_dishes([
            "Spicy Vegan Curry (GF) $15",
        ])

        assert dishes[0].dietary_info == frozenset({DietaryTag.SPICY, DietaryTag.VEGAN, DietaryTag.GLUTEN_FREE})

    def test_skip_lines(self):
        """Test headings, contact lines and separators are ignored."""
        dishes = self.parser.extract_dishes([
            "MENU",
            "Phone: 555 0100",
            "-----",
            "Open daily 11-10",
        ])
        assert dishes == []

    def test_text_blocks_with_confidence(self):
        """Test recognition confidence feeds dish confidence."""
        strong = self.parser.extract_dishes([RecognizedTextBlock("Grilled Salmon $24.99", 0.95)])
        weak = self.parser.extract_dishes([RecognizedTextBlock("Grilled Salmon $24.99", 0.4)])

        assert strong[0].confidence > weak[0].confidence
        assert 0.0 <= weak[0].confidence <= 1.0

    def test_min_confidence_filter(self):
        """Test low-confidence entries are dropped."""
        parser = MenuParser(min_confidence=0.9)
        dishes = parser.extract_dishes([RecognizedTextBlock("Soup 5.00", 0.2)])
        assert dishes == []

    def test_multiline_block(self):
        """Test blocks are split into lines."""
        dishes = self.parser.extract_dishes([RecognizedTextBlock("Nachos $9\nWings $11", 0.9)])
        assert [dish.name for dish in dishes] == ["Nachos", "Wings"]

    def test_empty_input(self):
        """Test empty input yields no dishes."""
        assert self.parser.extract_dishes([]) == []
        assert self.parser.extract_dishes(["", "   "]) == []

    def test_parsing_statistics(self):
        """Test summary statistics."""
        dishes = self.parser.extract_dishes(["Nachos $9", "Wings $11", "tossed in buffalo sauce"])
        stats = self.parser.get_parsing_statistics(dishes)

        assert stats["total_dishes"] == 2
        assert stats["dishes_with_prices"] == 2
        assert stats["dishes_with_descriptions"] == 1
        assert self.parser.get_parsing_statistics([])["total_dishes"] == 0
