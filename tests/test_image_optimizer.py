"""
Tests for the image optimizer.
"""

import io
from unittest.mock import patch

import pytest
from hypothesis import given, strategies as st
from PIL import Image

from menuscan.models.data_models import (
    ImageQualityIssue, OptimizationConfig, OptimizationRecommendation, OptimizationStep, RawImage
)
from menuscan.services.errors import InvalidImageDataError
from menuscan.services.image_optimizer import ImageOptimizer, quality_score
from tests.conftest import make_image_bytes


def decode(data):
    return Image.open(io.BytesIO(data))


class TestImageOptimizer:
    """Test cases for ImageOptimizer."""

    def setup_method(self):
        """Set up test fixtures."""
        self.optimizer = ImageOptimizer()

    def test_optimize_full_pipeline(self, raw_image):
        """Test all steps run in order and produce a JPEG."""
        result = self.optimizer.optimize(raw_image, OptimizationConfig.ai_optimized())

        assert result.media_type == "image/jpeg"
        assert decode(result.data).format == "JPEG"
        assert result.original_size == (800, 1000)
        assert list(result.optimizations) == [
            OptimizationStep.ROTATE,
            OptimizationStep.CROP_TO_CONTENT,
            OptimizationStep.RESIZE,
            OptimizationStep.CONTRAST,
            OptimizationStep.SHARPEN,
            OptimizationStep.DENOISE,
            OptimizationStep.COLOR_NORMALIZE,
        ]

    def test_resize_fits_target(self):
        """Test output fits the target box and keeps the aspect ratio."""
        raw = RawImage.from_bytes(make_image_bytes(width=2000, height=1000, text_lines=0))
        config = OptimizationConfig(target_size=(1024, 1024), crop_to_content=False)
        result = self.optimizer.optimize(raw, config)

        width, height = result.optimized_size
        assert width <= 1024 and height <= 1024
        assert max(width, height) == 1024
        assert abs(width / height - 2.0) < 0.01
        assert decode(result.data).size == result.optimized_size

    def test_fast_config_only_resizes(self, raw_image):
        """Test disabled steps are skipped."""
        result = self.optimizer.optimize(raw_image, OptimizationConfig.fast())
        assert result.optimizations == (OptimizationStep.RESIZE,)

    def test_blank_image_is_not_cropped(self):
        """Test crop is skipped when no content is detected."""
        raw = RawImage.from_bytes(make_image_bytes(width=600, height=600, text_lines=0))
        result = self.optimizer.optimize(raw)

        assert OptimizationStep.CROP_TO_CONTENT not in result.optimizations

    def test_crop_reduces_to_content(self):
        """Test the crop box hugs the text area with padding."""
        raw = RawImage.from_bytes(make_image_bytes(width=1000, height=1000, text_lines=3))
        config = OptimizationConfig(target_size=(1000, 1000), enhance_contrast=False,
                                    sharpen_text=False, remove_noise=False, normalize_colors=False)
        result = self.optimizer.optimize(raw, config)

        assert OptimizationStep.CROP_TO_CONTENT in result.optimizations
        # Square photo, wide text block
        width, height = result.optimized_size
        assert width / height > 1.2

    def test_png_with_alpha_is_converted(self):
        """Test transparent images are flattened to RGB."""
        image = Image.new("RGBA", (400, 300), (0, 0, 0, 0))
        buffer = io.BytesIO()
        image.save(buffer, format="PNG")
        raw = RawImage.from_bytes(buffer.getvalue())

        result = self.optimizer.optimize(raw, OptimizationConfig.fast())
        assert decode(result.data).mode == "RGB"

    def test_invalid_data_raises(self):
        """Test undecodable bytes raise InvalidImageDataError."""
        raw = RawImage(data=b"garbage bytes", width=10, height=10)
        with pytest.raises(InvalidImageDataError):
            self.optimizer.optimize(raw)

    def test_failed_enhancement_falls_through(self, raw_image):
        """Test an optional step failure keeps the previous image."""
        with patch.object(ImageOptimizer, "_sharpen", side_effect=OSError("filter failed")):
            result = self.optimizer.optimize(raw_image)

        assert OptimizationStep.SHARPEN not in result.optimizations
        assert OptimizationStep.DENOISE in result.optimizations

    def test_optimize_uses_cache(self, raw_image):
        """Test a repeated optimize call is served from cache."""
        first = self.optimizer.optimize(raw_image)
        second = self.optimizer.optimize(raw_image)

        assert second.data == first.data
        assert second.processing_time == 0.0
        assert self.optimizer.get_cache_info()[0] == 1

    def test_cache_key_includes_config(self, raw_image):
        """Test different configs are cached separately."""
        self.optimizer.optimize(raw_image, OptimizationConfig.ai_optimized())
        fast = self.optimizer.optimize(raw_image, OptimizationConfig.fast())

        assert fast.optimizations == (OptimizationStep.RESIZE,)
        assert self.optimizer.get_cache_info()[0] == 2

    def test_clear_cache(self, raw_image):
        """Test clearing both caches."""
        self.optimizer.optimize(raw_image)
        self.optimizer.assess_quality(raw_image)
        self.optimizer.clear_cache()

        assert self.optimizer.get_cache_info() == (0, 0)

    def test_passthrough(self):
        """Test passthrough keeps bytes and detects the media type."""
        raw = RawImage.from_bytes(make_image_bytes(width=200, height=200, fmt="PNG"))
        result = ImageOptimizer.passthrough(raw)

        assert result.data == raw.data
        assert result.media_type == "image/png"
        assert result.optimizations == ()
        assert result.compression_ratio == 1.0


class TestQualityAssessment:
    """Test cases for photo quality assessment."""

    def setup_method(self):
        """Set up test fixtures."""
        self.optimizer = ImageOptimizer()

    def test_good_photo_has_no_issues(self, raw_image):
        """Test a well-sized, well-lit photo scores 1.0."""
        assessment = self.optimizer.assess_quality(raw_image)

        assert assessment.issues == ()
        assert assessment.score == 1.0

    def test_low_resolution(self):
        """Test small photos are flagged."""
        raw = RawImage.from_bytes(make_image_bytes(width=400, height=500))
        assessment = self.optimizer.assess_quality(raw)

        assert ImageQualityIssue.LOW_RESOLUTION in assessment.issues
        assert OptimizationRecommendation.USE_HIGH_QUALITY_MODE in assessment.recommendations

    def test_too_large(self):
        """Test very large photos are flagged."""
        raw = RawImage.from_bytes(make_image_bytes(width=2400, height=2000))
        assessment = self.optimizer.assess_quality(raw)

        assert ImageQualityIssue.TOO_LARGE in assessment.issues
        assert OptimizationRecommendation.RESIZE_IMAGE in assessment.recommendations

    def test_extreme_aspect_ratio(self):
        """Test panoramas are flagged."""
        raw = RawImage.from_bytes(make_image_bytes(width=2100, height=700))
        assessment = self.optimizer.assess_quality(raw)

        assert ImageQualityIssue.EXTREME_ASPECT_RATIO in assessment.issues

    def test_too_dark(self):
        """Test dark photos are flagged."""
        raw = RawImage.from_bytes(make_image_bytes(color=(15, 15, 15), text_lines=0))
        assessment = self.optimizer.assess_quality(raw)

        assert ImageQualityIssue.TOO_DARK in assessment.issues
        assert assessment.metadata.brightness < 0.3

    def test_too_bright(self):
        """Test washed-out photos are flagged."""
        raw = RawImage.from_bytes(make_image_bytes(color=(255, 255, 255), text_lines=0))
        assessment = self.optimizer.assess_quality(raw)

        assert ImageQualityIssue.TOO_BRIGHT in assessment.issues

    def test_score_reflects_issue_count(self):
        """Test score drops 0.15 per issue."""
        raw = RawImage.from_bytes(make_image_bytes(width=900, height=300, color=(10, 10, 10), text_lines=0))
        assessment = self.optimizer.assess_quality(raw)

        assert len(assessment.issues) == 3
        assert assessment.score == pytest.approx(0.55)

    def test_metadata_in_range(self, raw_image):
        """Test every statistic lies in [0, 1]."""
        metadata = self.optimizer.extract_metadata(raw_image)

        for value in (metadata.brightness, metadata.contrast, metadata.sharpness, metadata.text_density):
            assert 0.0 <= value <= 1.0
        assert metadata.text_density > 0.0

    @given(st.integers(min_value=0, max_value=20))
    def test_quality_score_bounds(self, issue_count):
        """Property: score is 1 - 0.15n clamped to [0, 1]."""
        score = quality_score(issue_count)

        assert 0.0 <= score <= 1.0
        assert score == pytest.approx(max(0.0, 1.0 - 0.15 * issue_count))
