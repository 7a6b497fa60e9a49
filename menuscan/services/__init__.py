# Services package

from .ai_menu_analyzer import AIMenuAnalyzer
from .dish_visualizer import DishVisualizer
from .image_optimizer import ImageOptimizer
from .menu_parser import MenuParser
from .menu_processor import MenuProcessor
from .privacy_sanitizer import PrivacySanitizer
from .response_parser import ResponseParser
from .result_cache import ResultCache
from .secure_api_client import SecureAPIClient

__all__ = [
    'AIMenuAnalyzer',
    'DishVisualizer',
    'ImageOptimizer',
    'MenuParser',
    'MenuProcessor',
    'PrivacySanitizer',
    'ResponseParser',
    'ResultCache',
    'SecureAPIClient',
]
