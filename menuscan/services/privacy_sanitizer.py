"""
Privacy Sanitizer for outgoing and incoming menu data.

Detects personally identifying content with a family of regular expressions
and neutralizes markup, SQL and shell injection fragments. Detections are
counted and recorded in a redacted audit trail; matched values are never
logged or stored.
"""

import logging
import re
import threading
from collections import deque
from typing import Any, Deque, Dict, List, Optional, Pattern, Tuple

from menuscan.models.data_models import Dish, OutgoingDishPayload, PrivacyAuditEntry


logger = logging.getLogger(__name__)

REDACTION = "[REDACTED]"
MAX_DESCRIPTION_LENGTH = 200
AUDIT_LOG_SIZE = 100
MAX_SANITIZE_PASSES = 20

# House number, capitalized street name, then a suffix. A single-digit number
# needs a spelled-out suffix ("1 Main Street"), quantities ("12 oz") never
# start an address, and "St" before a capitalized word is a saint ("St. Louis").
_STREET_NAME = r"(?!(?i:oz|ounces?|lbs?|pounds?|g|kg|ml|cl|pcs?|pieces?|slices?|pack|x)\b)(?:[A-Z0-9][\w'-]*\s+){1,4}?"
_FULL_SUFFIX = r"(?i:Street|Avenue|Road|Boulevard|Lane|Drive)\b"
_ANY_SUFFIX = (r"(?:(?i:Street|Avenue|Road|Boulevard|Lane|Drive|Ave|Rd|Blvd|Ln|Dr|Court|Ct|Way|Place|Pl)\b"
               r"|(?i:St)\b(?!\.?\s+[A-Z]))")
STREET_ADDRESS = re.compile(
    r"\b(?:\d{2,5}\s+" + _STREET_NAME + _ANY_SUFFIX
    + r"|\d\s+" + _STREET_NAME + _FULL_SUFFIX + r")\.?"
)

# Order matters: longer digit patterns run before the phone pattern
SENSITIVE_PATTERNS: List[Tuple[str, Pattern]] = [
    ("email", re.compile(r"[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}")),
    ("url", re.compile(r"(?:https?://|www\.)\S+", re.IGNORECASE)),
    ("credit_card", re.compile(r"(?<!\d)(?:\d{4}[ -]?){3}\d{4}(?!\d)")),
    ("national_id", re.compile(r"(?<!\d)\d{3}-\d{2}-\d{4}(?!\d)")),
    ("gps_coordinates", re.compile(r"-?\d{1,3}\.\d{4,}\s*,\s*-?\d{1,3}\.\d{4,}")),
    ("phone", re.compile(r"(?<![\d$])(?:\+?\d{1,3}[ .-]?)?\(?\d{3}\)?[ .-]?\d{3}[ .-]?\d{4}(?!\d)")),
    ("street_address", STREET_ADDRESS),
]

SCRIPT_BLOCK = re.compile(r"<script\b[^>]*>.*?</script\s*>", re.IGNORECASE | re.DOTALL)
HTML_TAG = re.compile(r"<[^<>]*>")
ANGLE_BRACKETS = re.compile(r"[<>]")
JAVASCRIPT_URI = re.compile(r"javascript\s*:", re.IGNORECASE)
SQL_INJECTION = re.compile(
    r"\b(?:DROP\s+TABLE|DELETE\s+FROM|INSERT\s+INTO|UNION\s+(?:ALL\s+)?SELECT|SELECT\s+\*\s+FROM"
    r"|ALTER\s+TABLE|TRUNCATE\s+TABLE|EXEC(?:UTE)?\s+\w+|OR\s+1\s*=\s*1)\b",
    re.IGNORECASE,
)
SHELL_METACHARACTERS = re.compile(r"\$\(|\$\{|&&|--|[;`|]")
# Subset that is never legitimate in prose
COMMAND_INJECTION = re.compile(r"\$\(|\$\{|&&|`")
WHITESPACE = re.compile(r"\s+")

INJECTION_PATTERNS: List[Pattern] = [SCRIPT_BLOCK, HTML_TAG, JAVASCRIPT_URI, SQL_INJECTION]


class PrivacySanitizer:
    """
    Strips sensitive and injection-capable content from text.

    sanitize() is idempotent: it repeats its passes until the text stops
    changing, so sanitizing an already sanitized string is a no-op.
    """

    def __init__(self, audit_log_size: int = AUDIT_LOG_SIZE):
        self._lock = threading.Lock()
        self._audit_log: Deque[PrivacyAuditEntry] = deque(maxlen=audit_log_size)
        self._violation_count = 0

    def contains_sensitive_data(self, text: Optional[str]) -> bool:
        """True if any PII pattern matches. Does not record a violation."""
        if not text:
            return False
        return any(pattern.search(text) for _, pattern in SENSITIVE_PATTERNS)

    def contains_unsafe_content(self, text: Optional[str]) -> bool:
        """True if text carries markup, script, SQL or shell injection fragments."""
        if not text:
            return False
        if any(pattern.search(text) for pattern in INJECTION_PATTERNS):
            return True
        return bool(COMMAND_INJECTION.search(text) or ANGLE_BRACKETS.search(text))

    def sanitize(self, text: Optional[str], context: str = "general") -> str:
        """
        Remove injection fragments and redact sensitive values.

        Args:
            text: Input text (None is treated as empty)
            context: Label recorded in the audit trail, e.g. "dish_name"

        Returns:
            Sanitized text with whitespace collapsed
        """
        if not text:
            return ""

        current = text
        for _ in range(MAX_SANITIZE_PASSES):
            cleaned = self._sanitize_pass(current, context)
            if cleaned == current:
                break
            current = cleaned
        return current

    def sanitize_payload(self, dish: Dish) -> OutgoingDishPayload:
        """
        Minimal outgoing representation of a dish.

        Only name, a truncated description and the category leave the device;
        confidence, identifiers and timestamps are never included.
        """
        name = self.sanitize(dish.name, context="dish_name") or "Unnamed dish"

        description = None
        if dish.description:
            description = self.sanitize(dish.description, context="dish_description")
            if len(description) > MAX_DESCRIPTION_LENGTH:
                description = description[:MAX_DESCRIPTION_LENGTH].rstrip()
            description = description or None

        return OutgoingDishPayload(name=name, description=description, category=dish.category.value)

    def log_diagnostic(self, message: str, text: str, context: str = "diagnostic") -> None:
        """Log local diagnostic text at DEBUG after sanitizing it."""
        logger.debug(f"{message}: {self.sanitize(text, context=context)}")

    @property
    def violation_count(self) -> int:
        with self._lock:
            return self._violation_count

    def get_audit_log(self) -> List[PrivacyAuditEntry]:
        with self._lock:
            return list(self._audit_log)

    def get_privacy_report(self) -> Dict[str, Any]:
        """Counts of detections by category; contains no detected values."""
        with self._lock:
            by_category: Dict[str, int] = {}
            for entry in self._audit_log:
                by_category[entry.category] = by_category.get(entry.category, 0) + 1
            return {
                "violation_count": self._violation_count,
                "recent_detections": by_category,
                "audit_entries": len(self._audit_log),
            }

    def reset(self) -> None:
        with self._lock:
            self._audit_log.clear()
            self._violation_count = 0

    def _sanitize_pass(self, text: str, context: str) -> str:
        text = SCRIPT_BLOCK.sub("", text)
        text = HTML_TAG.sub("", text)
        text = ANGLE_BRACKETS.sub("", text)
        text = JAVASCRIPT_URI.sub("", text)
        text = SQL_INJECTION.sub("", text)
        text = SHELL_METACHARACTERS.sub("", text)

        for category, pattern in SENSITIVE_PATTERNS:
            text = pattern.sub(lambda match, c=category: self._redact(match, c, context), text)

        return WHITESPACE.sub(" ", text).strip()

    def _redact(self, match: "re.Match", category: str, context: str) -> str:
        self._record(category, context, len(match.group(0)))
        return REDACTION

    def _record(self, category: str, context: str, match_length: int) -> None:
        with self._lock:
            self._violation_count += 1
            self._audit_log.append(PrivacyAuditEntry(category=category, context=context,
                                                     match_length=match_length))
        logger.warning(f"Sensitive data redacted: category={category}, context={context}")
