"""
Image Optimizer for menu analysis.

This module normalizes a raw menu photo into a compact, analysis-ready JPEG
using Pillow, and independently assesses photo quality so the caller can
prompt for a retake before spending an inference call.
"""

import dataclasses
import io
import logging
import time
from typing import List, Optional, Tuple

from PIL import Image, ImageEnhance, ImageFilter, ImageOps, ImageStat, UnidentifiedImageError

from menuscan.models.data_models import (
    ImageMetadata, ImageQualityIssue, OptimizationConfig, OptimizationRecommendation,
    OptimizationStep, OptimizedImage, QualityAssessment, RawImage
)
from menuscan.services.errors import ImageProcessingFailedError, InvalidImageDataError
from menuscan.services.result_cache import BoundedLRU


logger = logging.getLogger(__name__)

# Padding added around the detected content box, as a fraction of each side
CONTENT_PADDING = 0.05
# Edge strength (0-255) above which a pixel counts as text-like
EDGE_THRESHOLD = 40
# Analysis of statistics/edges runs on a copy no larger than this
ANALYSIS_MAX_SIDE = 512

LOW_RESOLUTION_PIXELS = 500_000
TOO_LARGE_PIXELS = 4_000_000
QUALITY_PENALTY_PER_ISSUE = 0.15


class ImageOptimizer:
    """
    Prepares menu photos for the inference service.

    Steps run in a fixed order (rotate, crop, resize, contrast, sharpen,
    denoise, color normalize), each toggled by OptimizationConfig. Optional
    enhancement failures fall through to the unmodified intermediate image.
    """

    def __init__(self,
                 image_cache_size: int = 10,
                 image_cache_max_bytes: int = 50 * 1024 * 1024,
                 metadata_cache_size: int = 50):
        self._image_cache: BoundedLRU[OptimizedImage] = BoundedLRU(image_cache_size, image_cache_max_bytes)
        self._metadata_cache: BoundedLRU[ImageMetadata] = BoundedLRU(metadata_cache_size)

    def optimize(self, raw_image: RawImage,
                 config: Optional[OptimizationConfig] = None) -> OptimizedImage:
        """
        Optimize a menu photo for AI analysis.

        Args:
            raw_image: Photo to optimize (not modified)
            config: Which steps to run; defaults to the AI-optimized preset

        Returns:
            OptimizedImage with the re-encoded JPEG bytes

        Raises:
            InvalidImageDataError: If the photo cannot be decoded
            ImageProcessingFailedError: If the final encode fails
        """
        config = config or OptimizationConfig.ai_optimized()
        start_time = time.time()
        cache_key = self._cache_key(raw_image, config)

        cached = self._image_cache.get(cache_key)
        if cached is not None:
            logger.info(f"Using cached optimized image for hash: {raw_image.content_hash[:8]}...")
            return dataclasses.replace(cached, processing_time=0.0)

        image = self._decode(raw_image.data)
        original_size = image.size
        applied: List[OptimizationStep] = []

        if config.auto_rotate:
            image = self._apply(image, applied, OptimizationStep.ROTATE, ImageOps.exif_transpose)

        # exif_transpose keeps the source mode, so normalize after it
        image = self._to_rgb(image)

        if config.crop_to_content:
            cropped = self._crop_to_content(image)
            if cropped is not None:
                image = cropped
                applied.append(OptimizationStep.CROP_TO_CONTENT)

        image = self._resize(image, config.target_size)
        applied.append(OptimizationStep.RESIZE)

        if config.enhance_contrast:
            image = self._apply(image, applied, OptimizationStep.CONTRAST, self._enhance_contrast)
        if config.sharpen_text:
            image = self._apply(image, applied, OptimizationStep.SHARPEN, self._sharpen)
        if config.remove_noise:
            image = self._apply(image, applied, OptimizationStep.DENOISE, self._remove_noise)
        if config.normalize_colors:
            image = self._apply(image, applied, OptimizationStep.COLOR_NORMALIZE, self._normalize_colors)

        data = self._encode(image, config.compression_quality)

        optimized = OptimizedImage(
            data=data,
            original_size=original_size,
            optimized_size=image.size,
            optimizations=tuple(applied),
            processing_time=time.time() - start_time,
        )
        self._image_cache.put(cache_key, optimized, cost=len(data))

        logger.info(f"Image optimization completed in {optimized.processing_time:.2f}s, "
                    f"{optimized.size_savings} pixel reduction")
        logger.debug(f"Applied optimizations: {', '.join(step.value for step in applied)}")
        return optimized

    def assess_quality(self, raw_image: RawImage) -> QualityAssessment:
        """
        Assess whether a photo is likely to give a good analysis.

        Raises:
            InvalidImageDataError: If the photo cannot be decoded
        """
        metadata = self.extract_metadata(raw_image)

        issues: List[ImageQualityIssue] = []
        recommendations: List[OptimizationRecommendation] = []

        width, height = raw_image.size
        pixel_count = width * height
        if pixel_count < LOW_RESOLUTION_PIXELS:
            issues.append(ImageQualityIssue.LOW_RESOLUTION)
            recommendations.append(OptimizationRecommendation.USE_HIGH_QUALITY_MODE)
        elif pixel_count > TOO_LARGE_PIXELS:
            issues.append(ImageQualityIssue.TOO_LARGE)
            recommendations.append(OptimizationRecommendation.RESIZE_IMAGE)

        aspect_ratio = width / height if height else 0.0
        if aspect_ratio < 0.5 or aspect_ratio > 2.0:
            issues.append(ImageQualityIssue.EXTREME_ASPECT_RATIO)
            recommendations.append(OptimizationRecommendation.CROP_TO_CONTENT)

        if metadata.brightness < 0.3:
            issues.append(ImageQualityIssue.TOO_DARK)
            recommendations.append(OptimizationRecommendation.ENHANCE_CONTRAST)
        elif metadata.brightness > 0.9:
            issues.append(ImageQualityIssue.TOO_BRIGHT)
            recommendations.append(OptimizationRecommendation.ADJUST_BRIGHTNESS)

        return QualityAssessment(
            score=quality_score(len(issues)),
            issues=tuple(issues),
            recommendations=tuple(recommendations),
            metadata=metadata,
        )

    def extract_metadata(self, raw_image: RawImage) -> ImageMetadata:
        """Brightness, contrast, sharpness and text density estimates, cached per image."""
        image_hash = raw_image.content_hash
        cached = self._metadata_cache.get(image_hash)
        if cached is not None:
            return cached

        gray = self._analysis_copy(self._decode(raw_image.data)).convert("L")
        stats = ImageStat.Stat(gray)
        edges = gray.filter(ImageFilter.FIND_EDGES)
        edge_stats = ImageStat.Stat(edges)
        edge_pixels = sum(edges.point(lambda v: 255 if v > EDGE_THRESHOLD else 0).histogram()[255:])

        metadata = ImageMetadata(
            brightness=stats.mean[0] / 255.0,
            contrast=min(1.0, stats.stddev[0] / 128.0),
            sharpness=min(1.0, edge_stats.var[0] / 2000.0),
            text_density=edge_pixels / float(gray.size[0] * gray.size[1]),
        )
        self._metadata_cache.put(image_hash, metadata)
        return metadata

    @staticmethod
    def passthrough(raw_image: RawImage) -> OptimizedImage:
        """Wrap the original bytes unchanged, used when optimization fails."""
        media_type = "image/jpeg"
        try:
            with Image.open(io.BytesIO(raw_image.data)) as image:
                media_type = Image.MIME.get(image.format, media_type)
        except (UnidentifiedImageError, OSError) as e:
            logger.debug(f"Could not detect image format, assuming JPEG: {e}")

        return OptimizedImage(
            data=raw_image.data,
            original_size=raw_image.size,
            optimized_size=raw_image.size,
            optimizations=(),
            processing_time=0.0,
            media_type=media_type,
        )

    def clear_cache(self) -> None:
        self._image_cache.clear()
        self._metadata_cache.clear()
        logger.info("Image optimization cache cleared")

    def get_cache_info(self) -> Tuple[int, int]:
        """Number of cached (optimized images, metadata records)."""
        return len(self._image_cache), len(self._metadata_cache)

    # Individual steps

    def _crop_to_content(self, image: Image.Image) -> Optional[Image.Image]:
        """Crop to the padded bounding box of text-like edges, or None if none found."""
        try:
            small = self._analysis_copy(image)
            scale_x = image.size[0] / small.size[0]
            scale_y = image.size[1] / small.size[1]

            edges = small.convert("L").filter(ImageFilter.FIND_EDGES)
            mask = edges.point(lambda v: 255 if v > EDGE_THRESHOLD else 0)
            # Drop the 1px frame FIND_EDGES leaves at the border
            mask = ImageOps.crop(mask, border=1)
            bbox = mask.getbbox()
            if bbox is None:
                return None

            left, top, right, bottom = (bbox[0] + 1, bbox[1] + 1, bbox[2] + 1, bbox[3] + 1)
            width, height = image.size
            pad_x = CONTENT_PADDING * width
            pad_y = CONTENT_PADDING * height
            box = (
                max(0, int(left * scale_x - pad_x)),
                max(0, int(top * scale_y - pad_y)),
                min(width, int(right * scale_x + pad_x)),
                min(height, int(bottom * scale_y + pad_y)),
            )
            if box == (0, 0, width, height) or box[2] <= box[0] or box[3] <= box[1]:
                return None
            return image.crop(box)

        except Exception as e:
            logger.debug(f"Content cropping skipped: {e}")
            return None

    @staticmethod
    def _resize(image: Image.Image, target_size: Tuple[int, int]) -> Image.Image:
        width, height = image.size
        scale = min(target_size[0] / width, target_size[1] / height)
        new_size = (max(1, round(width * scale)), max(1, round(height * scale)))
        if new_size == image.size:
            return image
        return image.resize(new_size, Image.Resampling.LANCZOS)

    @staticmethod
    def _enhance_contrast(image: Image.Image) -> Image.Image:
        image = ImageEnhance.Contrast(image).enhance(1.2)
        return ImageEnhance.Color(image).enhance(1.1)

    @staticmethod
    def _sharpen(image: Image.Image) -> Image.Image:
        return image.filter(ImageFilter.UnsharpMask(radius=2, percent=80, threshold=3))

    @staticmethod
    def _remove_noise(image: Image.Image) -> Image.Image:
        return image.filter(ImageFilter.MedianFilter(size=3))

    @staticmethod
    def _normalize_colors(image: Image.Image) -> Image.Image:
        """Slight gamma lift followed by gray-world white balance."""
        gamma_table = [round(255 * (v / 255.0) ** 0.95) for v in range(256)]
        image = image.point(gamma_table * len(image.getbands()))

        means = ImageStat.Stat(image).mean
        gray = sum(means) / len(means)
        channels = []
        for channel, mean in zip(image.split(), means):
            gain = min(1.25, max(0.8, gray / mean)) if mean else 1.0
            channels.append(channel.point(lambda v, g=gain: min(255, int(v * g))))
        return Image.merge(image.mode, channels)

    # Helpers

    def _apply(self, image: Image.Image, applied: List[OptimizationStep],
               step: OptimizationStep, operation) -> Image.Image:
        try:
            result = operation(image)
        except Exception as e:
            logger.debug(f"Optimization step {step.value} failed, keeping previous image: {e}")
            return image
        applied.append(step)
        return result

    @staticmethod
    def _decode(data: bytes) -> Image.Image:
        try:
            image = Image.open(io.BytesIO(data))
            image.load()
            return image
        except (UnidentifiedImageError, OSError, ValueError) as e:
            raise InvalidImageDataError(f"Invalid image data: {e}", cause=e) from e

    @staticmethod
    def _to_rgb(image: Image.Image) -> Image.Image:
        if image.mode == "RGB":
            return image
        if image.mode in ("RGBA", "LA", "P"):
            image = image.convert("RGBA")
            background = Image.new("RGB", image.size, (255, 255, 255))
            background.paste(image, mask=image.getchannel("A"))
            return background
        return image.convert("RGB")

    @staticmethod
    def _analysis_copy(image: Image.Image) -> Image.Image:
        if max(image.size) <= ANALYSIS_MAX_SIDE:
            return image
        copy = image.copy()
        copy.thumbnail((ANALYSIS_MAX_SIDE, ANALYSIS_MAX_SIDE))
        return copy

    @staticmethod
    def _encode(image: Image.Image, compression_quality: float) -> bytes:
        quality = max(1, min(100, int(round(compression_quality * 100))))
        buffer = io.BytesIO()
        try:
            image.save(buffer, format="JPEG", quality=quality, optimize=True)
        except (OSError, ValueError) as e:
            raise ImageProcessingFailedError(f"JPEG encoding failed: {e}", cause=e) from e
        return buffer.getvalue()

    @staticmethod
    def _cache_key(raw_image: RawImage, config: OptimizationConfig) -> str:
        return f"{raw_image.content_hash}:{config.model_dump_json()}"


def quality_score(issue_count: int) -> float:
    """1.0 minus 0.15 per issue, floored at zero."""
    return max(0.0, 1.0 - QUALITY_PENALTY_PER_ISSUE * issue_count)
