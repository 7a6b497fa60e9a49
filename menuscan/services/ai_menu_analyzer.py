"""
AI Menu Analyzer Service - vision model inference calls.

This module builds the inference prompt and request body for a menu photo,
sends it through the SecureAPIClient and returns the model's text reply.
Decoding the reply is left to the ResponseParser.
"""

import base64
import logging
from typing import Any, Dict, List, Optional

from menuscan.models.data_models import OptimizedImage
from menuscan.services.cancellation import CancellationToken
from menuscan.services.errors import ResponseParsingError, ServiceNotConfiguredError
from menuscan.services.secure_api_client import SecureAPIClient, mask_secret


logger = logging.getLogger(__name__)

DEFAULT_MODEL = "claude-3-5-sonnet-latest"
MESSAGES_PATH = "messages"

BASE_PROMPT = """
Analyze this menu image and extract all dishes with their information. You are a restaurant menu analysis expert.

Return ONLY a valid JSON response with this exact structure (no additional text before or after):

{
  "restaurantName": "string or null",
  "dishes": [
    {
      "name": "dish name",
      "description": "description or null",
      "price": "price string with currency symbol or null",
      "category": "appetizer|mainCourse|dessert|beverage|special|unknown",
      "allergens": ["array of detected allergens like gluten, dairy, nuts, etc"],
      "dietaryInfo": ["vegetarian", "vegan", "glutenFree", "dairyFree", "spicy", "healthy"]
    }
  ],
  "confidence": 0.95
}

Rules:
- Extract ALL dishes, appetizers, mains, desserts, and beverages you can see
- Include prices exactly as shown, with currency symbols; use null if unclear instead of guessing
- Categories: appetizer (starters), mainCourse (entrees/mains), dessert, beverage, special (chef's specials), unknown
- Allergens: common ones like "gluten", "dairy", "nuts", "eggs", "shellfish", "soy"
- Set confidence based on text clarity and completeness (0.0-1.0)
- Ignore phone numbers, addresses, websites and other non-dish text
"""

DETAILED_PROMPT_SUFFIX = """
Detailed analysis:
- Pay extra attention to small text and footnotes
- Look for dietary symbols (V, VG, GF markers)
- Extract ingredient information into the description when visible
- Identify seasonal or chef's special items
- Preserve original formatting and spelling of dish names
"""


def get_analysis_prompt(detailed: bool) -> str:
    """Concise or detailed menu-analysis prompt."""
    prompt = BASE_PROMPT.strip()
    if detailed:
        prompt = prompt + "\n" + DETAILED_PROMPT_SUFFIX.rstrip()
    return prompt


class AIMenuAnalyzer:
    """
    Sends menu photos to a vision model and returns its text reply.

    All network access goes through the injected SecureAPIClient, so host,
    signing, pinning and rate limits apply to every call.
    """

    def __init__(self, transport: SecureAPIClient, api_key: Optional[str],
                 model_name: str = DEFAULT_MODEL, max_tokens: int = 2048):
        """
        Initialize AI menu analyzer.

        Args:
            transport: Secure client used for every request
            api_key: Inference credential; None leaves the analyzer unconfigured
            model_name: Vision-capable model identifier
            max_tokens: Reply length cap
        """
        self.transport = transport
        self.api_key = api_key
        self.model_name = model_name
        self.max_tokens = max_tokens

        prefix = transport.allowed_path_prefixes[0].rstrip("/")
        self.api_url = f"https://{transport.trusted_host}{prefix}/{MESSAGES_PATH}"

        if self.is_configured:
            logger.info(f"AI Menu Analyzer initialized with model: {self.model_name} "
                        f"(key {mask_secret(self.api_key)})")
        else:
            logger.warning("AI Menu Analyzer has no API key; AI analysis unavailable")

    @property
    def is_configured(self) -> bool:
        return bool(self.api_key)

    def analyze_menu(self, image: OptimizedImage, detailed: bool = True,
                     cancel_token: Optional[CancellationToken] = None,
                     max_retries: Optional[int] = None,
                     deadline: Optional[float] = None) -> str:
        """
        Submit a menu photo and return the model's raw text reply.

        deadline is a time.monotonic() value; no request attempt outlives it.

        Raises:
            ServiceNotConfiguredError: If no API key is configured
            AnalysisError: Any transport failure from SecureAPIClient
            ResponseParsingError: If the reply has no text content
        """
        content = [
            {
                "type": "image",
                "source": {
                    "type": "base64",
                    "media_type": image.media_type,
                    "data": base64.b64encode(image.data).decode("ascii"),
                },
            },
            {"type": "text", "text": get_analysis_prompt(detailed)},
        ]
        logger.info(f"Submitting menu image ({len(image.data)} bytes, "
                    f"{'detailed' if detailed else 'concise'} prompt)")
        return self._send_messages(content, cancel_token, max_retries, deadline)

    def generate_text(self, prompt: str,
                      cancel_token: Optional[CancellationToken] = None,
                      max_retries: Optional[int] = None,
                      deadline: Optional[float] = None) -> str:
        """Text-only completion through the same secured endpoint."""
        return self._send_messages([{"type": "text", "text": prompt}], cancel_token, max_retries, deadline)

    def build_payload(self, content: List[Dict[str, Any]]) -> Dict[str, Any]:
        return {
            "model": self.model_name,
            "max_tokens": self.max_tokens,
            "temperature": 0.0,
            "messages": [{"role": "user", "content": content}],
        }

    def _send_messages(self, content: List[Dict[str, Any]],
                       cancel_token: Optional[CancellationToken],
                       max_retries: Optional[int],
                       deadline: Optional[float] = None) -> str:
        if not self.is_configured:
            raise ServiceNotConfiguredError("No API key configured for AI analysis")

        request = self.transport.build_request(
            self.api_url, "POST", self.build_payload(content), self.api_key
        )
        response = self.transport.send(request, cancel_token=cancel_token,
                                       max_retries=max_retries, deadline=deadline)

        try:
            data = response.json()
        except ValueError as e:
            raise ResponseParsingError("Service response was not JSON", cause=e) from e
        return extract_reply_text(data)


def extract_reply_text(data: Any) -> str:
    """
    Concatenate the text blocks of a messages response.

    Raises:
        ResponseParsingError: If there is no text content
    """
    if not isinstance(data, dict):
        raise ResponseParsingError("Service response has unexpected shape")

    blocks = data.get("content")
    if not isinstance(blocks, list):
        raise ResponseParsingError("Service response has no content")

    texts = [block.get("text", "") for block in blocks
             if isinstance(block, dict) and block.get("type") == "text"]
    reply = "".join(texts).strip()
    if not reply:
        raise ResponseParsingError("Service response contained no text")
    return reply
