"""
Data models for the menu analysis pipeline.

This module contains Pydantic models for type-safe data handling throughout the
pipeline, plus the enums and small dataclasses used for processing state.
"""

import hashlib
import io
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional, Dict, Any, FrozenSet, Tuple

from PIL import Image, UnidentifiedImageError
from pydantic import BaseModel, ConfigDict, Field


class ProcessingStage(Enum):
    """Ordered stages of a single menu analysis."""
    IDLE = "idle"
    PREPARING = "preparing"
    ANALYZING = "analyzing"
    EXTRACTING = "extracting"
    STRUCTURING = "structuring"
    VALIDATING = "validating"
    COMPLETED = "completed"

    @property
    def order(self) -> int:
        return list(ProcessingStage).index(self)

    @property
    def label(self) -> str:
        return _STAGE_LABELS[self]


_STAGE_LABELS = {
    ProcessingStage.IDLE: "Ready",
    ProcessingStage.PREPARING: "Preparing image",
    ProcessingStage.ANALYZING: "Analyzing menu with AI",
    ProcessingStage.EXTRACTING: "Extracting dishes",
    ProcessingStage.STRUCTURING: "Structuring data",
    ProcessingStage.VALIDATING: "Validating results",
    ProcessingStage.COMPLETED: "Completed",
}

# Progress fraction published when a stage is entered
STAGE_PROGRESS = {
    ProcessingStage.IDLE: 0.0,
    ProcessingStage.PREPARING: 0.1,
    ProcessingStage.ANALYZING: 0.2,
    ProcessingStage.EXTRACTING: 0.4,
    ProcessingStage.STRUCTURING: 0.7,
    ProcessingStage.VALIDATING: 0.9,
    ProcessingStage.COMPLETED: 1.0,
}


class DishCategory(Enum):
    """Closed set of dish categories."""
    APPETIZER = "appetizer"
    MAIN_COURSE = "mainCourse"
    DESSERT = "dessert"
    BEVERAGE = "beverage"
    SPECIAL = "special"
    UNKNOWN = "unknown"


class DietaryTag(Enum):
    """Closed set of dietary tags."""
    VEGETARIAN = "vegetarian"
    VEGAN = "vegan"
    GLUTEN_FREE = "glutenFree"
    DAIRY_FREE = "dairyFree"
    SPICY = "spicy"
    HEALTHY = "healthy"


class ExtractionSource(Enum):
    """Which pipeline produced a menu."""
    AI = "ai"
    LEGACY = "legacy"


class OptimizationStep(Enum):
    """Image optimization steps, in the order they are applied."""
    ROTATE = "rotate"
    CROP_TO_CONTENT = "crop_to_content"
    RESIZE = "resize"
    CONTRAST = "contrast"
    SHARPEN = "sharpen"
    DENOISE = "denoise"
    COLOR_NORMALIZE = "color_normalize"


class ImageQualityIssue(Enum):
    """Problems detected by the photo quality assessment."""
    LOW_RESOLUTION = "low_resolution"
    TOO_LARGE = "too_large"
    EXTREME_ASPECT_RATIO = "extreme_aspect_ratio"
    TOO_DARK = "too_dark"
    TOO_BRIGHT = "too_bright"


class OptimizationRecommendation(Enum):
    """Suggestions paired with quality issues."""
    USE_HIGH_QUALITY_MODE = "use_high_quality_mode"
    RESIZE_IMAGE = "resize_image"
    CROP_TO_CONTENT = "crop_to_content"
    ENHANCE_CONTRAST = "enhance_contrast"
    ADJUST_BRIGHTNESS = "adjust_brightness"


class QualityLevel(Enum):
    EXCELLENT = "excellent"
    GOOD = "good"
    FAIR = "fair"
    POOR = "poor"
    VERY_POOR = "very_poor"


def content_hash(data: bytes) -> str:
    """Deterministic SHA-256 digest of image bytes, used as the cache key."""
    return hashlib.sha256(data).hexdigest()


@dataclass(frozen=True)
class RawImage:
    """Encoded photo bytes plus pixel dimensions. Never mutated by the pipeline."""
    data: bytes
    width: int
    height: int

    @classmethod
    def from_bytes(cls, data: bytes) -> "RawImage":
        """
        Build a RawImage from encoded bytes, reading dimensions from the header.

        Raises:
            ValueError: If the bytes are not a decodable image
        """
        if not data:
            raise ValueError("Image data is empty")
        try:
            with Image.open(io.BytesIO(data)) as img:
                width, height = img.size
        except (UnidentifiedImageError, OSError) as e:
            raise ValueError(f"Unreadable image data: {e}") from e
        return cls(data=data, width=width, height=height)

    @classmethod
    def from_path(cls, path: str) -> "RawImage":
        with open(path, "rb") as handle:
            return cls.from_bytes(handle.read())

    @property
    def content_hash(self) -> str:
        return content_hash(self.data)

    @property
    def size(self) -> Tuple[int, int]:
        return (self.width, self.height)


@dataclass(frozen=True)
class OptimizedImage:
    """Result of the image optimizer for one analysis call."""
    data: bytes
    original_size: Tuple[int, int]
    optimized_size: Tuple[int, int]
    optimizations: Tuple[OptimizationStep, ...]
    processing_time: float
    media_type: str = "image/jpeg"

    @property
    def compression_ratio(self) -> float:
        original_pixels = self.original_size[0] * self.original_size[1]
        optimized_pixels = self.optimized_size[0] * self.optimized_size[1]
        if original_pixels == 0:
            return 1.0
        return optimized_pixels / original_pixels

    @property
    def size_savings(self) -> str:
        return f"{(1.0 - self.compression_ratio) * 100:.1f}%"


@dataclass(frozen=True)
class ImageMetadata:
    """Simple image statistics, each in [0, 1]."""
    brightness: float
    contrast: float
    sharpness: float
    text_density: float


@dataclass(frozen=True)
class QualityAssessment:
    """Photo quality verdict with issues and recommendations."""
    score: float
    issues: Tuple[ImageQualityIssue, ...]
    recommendations: Tuple[OptimizationRecommendation, ...]
    metadata: ImageMetadata

    @property
    def quality_level(self) -> QualityLevel:
        if self.score >= 0.8:
            return QualityLevel.EXCELLENT
        if self.score >= 0.6:
            return QualityLevel.GOOD
        if self.score >= 0.4:
            return QualityLevel.FAIR
        if self.score >= 0.2:
            return QualityLevel.POOR
        return QualityLevel.VERY_POOR

    def to_dict(self) -> Dict[str, Any]:
        return {
            "score": round(self.score, 3),
            "quality_level": self.quality_level.value,
            "issues": [issue.value for issue in self.issues],
            "recommendations": [rec.value for rec in self.recommendations],
            "metadata": {
                "brightness": round(self.metadata.brightness, 3),
                "contrast": round(self.metadata.contrast, 3),
                "sharpness": round(self.metadata.sharpness, 3),
                "text_density": round(self.metadata.text_density, 3),
            },
        }


class OptimizationConfig(BaseModel):
    """Which optimization steps to run and how to encode the result."""
    model_config = ConfigDict(frozen=True)

    target_size: Tuple[int, int] = (1024, 1024)
    compression_quality: float = Field(default=0.85, gt=0.0, le=1.0)
    auto_rotate: bool = True
    crop_to_content: bool = True
    enhance_contrast: bool = True
    sharpen_text: bool = True
    remove_noise: bool = True
    normalize_colors: bool = True

    @classmethod
    def ai_optimized(cls) -> "OptimizationConfig":
        return cls()

    @classmethod
    def fast(cls) -> "OptimizationConfig":
        return cls(
            target_size=(768, 768),
            compression_quality=0.7,
            auto_rotate=False,
            crop_to_content=False,
            enhance_contrast=False,
            sharpen_text=False,
            remove_noise=False,
            normalize_colors=False,
        )

    @classmethod
    def high_quality(cls) -> "OptimizationConfig":
        return cls(target_size=(1536, 1536), compression_quality=0.95)


class AnalysisConfiguration(BaseModel):
    """Per-call knobs for one analysis."""
    model_config = ConfigDict(frozen=True)

    target_size: Tuple[int, int] = (1024, 1024)
    compression_quality: float = Field(default=0.8, gt=0.0, le=1.0)
    minimum_confidence: float = Field(default=0.7, ge=0.0, le=1.0)
    max_retries: int = Field(default=2, ge=0)
    timeout: float = Field(default=30.0, gt=0.0)
    detailed_analysis: bool = True

    @classmethod
    def fast(cls) -> "AnalysisConfiguration":
        return cls(
            target_size=(768, 768),
            compression_quality=0.7,
            minimum_confidence=0.6,
            max_retries=1,
            timeout=15.0,
            detailed_analysis=False,
        )

    @classmethod
    def balanced(cls) -> "AnalysisConfiguration":
        return cls()

    @classmethod
    def high_quality(cls) -> "AnalysisConfiguration":
        return cls(
            target_size=(1536, 1536),
            compression_quality=0.9,
            minimum_confidence=0.8,
            max_retries=3,
            timeout=45.0,
            detailed_analysis=True,
        )

    @classmethod
    def from_mode(cls, mode: Optional[str]) -> "AnalysisConfiguration":
        """
        Resolve a preset by name.

        Raises:
            ValueError: If the mode is not one of fast, balanced, high_quality
        """
        presets = {
            "fast": cls.fast,
            "balanced": cls.balanced,
            "default": cls.balanced,
            "high_quality": cls.high_quality,
        }
        key = (mode or "balanced").strip().lower().replace("-", "_")
        if key not in presets:
            raise ValueError(f"Unknown analysis mode: {mode}")
        return presets[key]()

    def optimizer_config(self) -> OptimizationConfig:
        """Optimizer settings derived from this analysis configuration."""
        base = OptimizationConfig.ai_optimized() if self.detailed_analysis else OptimizationConfig.fast()
        return base.model_copy(update={
            "target_size": self.target_size,
            "compression_quality": self.compression_quality,
        })


class Dish(BaseModel):
    """A dish extracted from a menu. Immutable once built."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    name: str = Field(..., min_length=1, description="Name of the dish")
    description: Optional[str] = Field(None, description="Description text near the dish")
    price: Optional[str] = Field(None, description="Price as shown on the menu")
    category: DishCategory = DishCategory.UNKNOWN
    allergens: FrozenSet[str] = Field(default_factory=frozenset, description="Allergen tags")
    dietary_info: FrozenSet[DietaryTag] = Field(default_factory=frozenset, description="DietaryTag values")
    confidence: float = Field(default=0.0, ge=0.0, le=1.0, description="Extraction confidence")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "price": self.price,
            "category": self.category.value,
            "allergens": sorted(self.allergens),
            "dietary_info": sorted(tag.value for tag in self.dietary_info),
            "confidence": round(self.confidence, 3),
        }


class DishVisualization(BaseModel):
    """AI-generated presentation text attached to a dish after extraction."""
    model_config = ConfigDict(frozen=True)

    description: str = Field(..., min_length=1)
    visual_style: str = ""
    preparation_notes: str = ""
    ingredients: List[str] = Field(default_factory=list)
    generated_at: float = Field(default_factory=time.time)


class EnrichedDish(BaseModel):
    """A dish together with its optional visualization."""
    model_config = ConfigDict(frozen=True)

    dish: Dish
    visualization: Optional[DishVisualization] = None


class Menu(BaseModel):
    """Structured result of one analysis."""
    model_config = ConfigDict(frozen=True)

    restaurant_name: Optional[str] = None
    dishes: List[Dish] = Field(default_factory=list)
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    processing_time: float = Field(default=0.0, ge=0.0)
    source: ExtractionSource = ExtractionSource.AI

    def to_dict(self) -> Dict[str, Any]:
        return {
            "restaurant_name": self.restaurant_name,
            "dishes": [dish.to_dict() for dish in self.dishes],
            "confidence": round(self.confidence, 3),
            "processing_time": round(self.processing_time, 3),
            "source": self.source.value,
        }


class OutgoingDishPayload(BaseModel):
    """Minimal, sanitized dish representation sent off-device."""
    model_config = ConfigDict(frozen=True)

    name: str
    description: Optional[str] = None
    category: str


@dataclass(frozen=True)
class CachedResult:
    """A cached menu plus the monotonic time it was stored."""
    hash: str
    menu: Menu
    inserted_at: float


@dataclass
class ProcessingState:
    """Tracks the current state of the orchestrator."""
    stage: ProcessingStage = ProcessingStage.IDLE
    progress: float = 0.0
    started_at: Optional[float] = None
    in_flight: bool = False

    def snapshot(self) -> Dict[str, Any]:
        return {
            "stage": self.stage.value,
            "label": self.stage.label,
            "progress": round(self.progress, 3),
            "in_flight": self.in_flight,
        }


@dataclass
class PrivacyAuditEntry:
    """Redacted record of a sensitive-data detection. Holds no raw values."""
    category: str
    context: str
    match_length: int
    timestamp: str = ""

    def __post_init__(self):
        if not self.timestamp:
            self.timestamp = datetime.now().isoformat()


@dataclass
class RequestAuditEntry:
    """Non-sensitive record of one outbound request."""
    method: str
    host: str
    path: str
    status_code: Optional[int] = None
    success: Optional[bool] = None
    response_size: int = 0
    duration: float = 0.0
    error: Optional[str] = None
    timestamp: float = field(default_factory=time.time)


@dataclass(frozen=True)
class RecognizedTextBlock:
    """A block of text found on the photo by a text recognizer."""
    text: str
    confidence: float = 1.0
