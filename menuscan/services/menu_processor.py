"""
Menu Processor - analysis orchestration for menu photos.

This module provides the MenuProcessor class, the state machine that runs one
analysis at a time: cache lookup, image optimization, a timeout-bounded
inference call, reply parsing and validation, and the cache write. Stage and
progress updates are published through callbacks in stage order.
"""

import math
import time
import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Union

from menuscan.models.data_models import (
    STAGE_PROGRESS, AnalysisConfiguration, Dish, ExtractionSource, Menu, OptimizedImage,
    ProcessingStage, ProcessingState, QualityAssessment, RawImage, RecognizedTextBlock
)
from menuscan.services.ai_menu_analyzer import AIMenuAnalyzer
from menuscan.services.cancellation import CancellationToken
from menuscan.services.errors import (
    AnalysisCancelledError, AnalysisError, AnalysisTimeoutError, AnalyzerBusyError,
    LowConfidenceError, NetworkUnavailableError, ResponseParsingError, ServiceNotConfiguredError
)
from menuscan.services.image_optimizer import ImageOptimizer
from menuscan.services.menu_parser import MenuParser
from menuscan.services.privacy_sanitizer import PrivacySanitizer
from menuscan.services.response_parser import ResponseParser
from menuscan.services.result_cache import ResultCache


logger = logging.getLogger(__name__)

AnalysisResult = Union[Menu, AnalysisError]
TextRecognizer = Callable[[RawImage], List[RecognizedTextBlock]]

COMPLETED_BANNER_SECONDS = 1.0

_PIPELINE = [
    ProcessingStage.PREPARING,
    ProcessingStage.ANALYZING,
    ProcessingStage.EXTRACTING,
    ProcessingStage.STRUCTURING,
    ProcessingStage.VALIDATING,
    ProcessingStage.COMPLETED,
]


@dataclass
class _AnalysisRun:
    token: CancellationToken
    generation: int
    started_at: float = field(default_factory=time.time)
    # Set once an AI result passes validation; written to the cache on completion
    cache_key: Optional[str] = None


def estimate_processing_time(width: int, height: int, config: AnalysisConfiguration) -> float:
    """Rough wall-clock estimate in seconds for analyzing a photo of this size."""
    base = 8.0 if config.detailed_analysis else 6.0
    megapixels = (width * height) / 1_000_000
    return base + min(math.sqrt(megapixels), 2.0)


class MenuProcessor:
    """
    Runs menu analyses, one at a time per instance.

    All collaborators are injected. A second analysis started while one is in
    flight fails immediately with AnalyzerBusyError. Errors and cancellation
    return the processor to idle; a completed analysis stays in the completed
    stage for a short banner period and then resets itself to idle.
    """

    def __init__(self,
                 analyzer: AIMenuAnalyzer,
                 optimizer: ImageOptimizer,
                 cache: ResultCache,
                 sanitizer: PrivacySanitizer,
                 parser: Optional[ResponseParser] = None,
                 legacy_parser: Optional[MenuParser] = None,
                 text_recognizer: Optional[TextRecognizer] = None,
                 on_stage_changed: Optional[Callable[[ProcessingStage], None]] = None,
                 on_progress: Optional[Callable[[float], None]] = None,
                 on_result: Optional[Callable[[AnalysisResult], None]] = None,
                 reset_delay: float = COMPLETED_BANNER_SECONDS,
                 max_workers: int = 4):
        """
        Initialize the menu processor.

        Args:
            analyzer: Sends optimized images to the inference service
            optimizer: Image optimizer and quality assessor
            cache: Shared result cache
            sanitizer: Privacy sanitizer for incoming text and diagnostics
            parser: Reply parser; one using the sanitizer is built if omitted
            legacy_parser: Rule-based fallback extractor
            text_recognizer: Produces text blocks for the fallback extractor
            on_stage_changed: Called with each new ProcessingStage
            on_progress: Called with the progress fraction after each stage change
            on_result: Called once per analysis with the Menu or the AnalysisError
            reset_delay: Seconds the completed stage is held before resetting to idle
            max_workers: Threads for background analyses and inference calls
        """
        self.analyzer = analyzer
        self.optimizer = optimizer
        self.cache = cache
        self.sanitizer = sanitizer
        self.parser = parser or ResponseParser(sanitizer)
        self.legacy_parser = legacy_parser
        self.text_recognizer = text_recognizer

        self.on_stage_changed = on_stage_changed
        self.on_progress = on_progress
        self.on_result = on_result
        self.reset_delay = reset_delay

        # Raw text of the most recent unparseable reply, for local diagnostics only
        self.last_parse_failure: Optional[str] = None

        self.state = ProcessingState()
        self._lock = threading.RLock()
        self._current: Optional[_AnalysisRun] = None
        self._generation = 0
        self._reset_timer: Optional[threading.Timer] = None
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="menuscan")

    # Public API

    def analyze(self, raw_image: RawImage,
                config: Optional[AnalysisConfiguration] = None) -> Menu:
        """
        Analyze a menu photo on the calling thread.

        Args:
            raw_image: Photo to analyze (never modified)
            config: Analysis configuration; balanced preset by default

        Returns:
            The extracted Menu

        Raises:
            AnalyzerBusyError: If another analysis is in flight
            AnalysisError: Any other pipeline failure, after returning to idle
        """
        config = config or AnalysisConfiguration.balanced()
        run = self._begin()
        return self._execute(run, raw_image, config)

    def start(self, raw_image: RawImage,
              config: Optional[AnalysisConfiguration] = None) -> "Future[Menu]":
        """
        Start an analysis in the background.

        The busy check happens here, synchronously; the returned future holds
        the Menu or the AnalysisError.
        """
        config = config or AnalysisConfiguration.balanced()
        run = self._begin()
        return self._executor.submit(self._execute, run, raw_image, config)

    def cancel(self) -> bool:
        """
        Cancel the analysis in flight, aborting its network call.

        Returns:
            True if an analysis was cancelled
        """
        with self._lock:
            run = self._current
            if run is None:
                return False

            self._current = None
            self.state.in_flight = False
            run.token.cancel("cancelled")
            self._enter_idle()
            self._notify(self.on_result, AnalysisCancelledError("Analysis cancelled by user"))

        logger.info("Menu analysis cancelled")
        return True

    @property
    def is_busy(self) -> bool:
        with self._lock:
            return self._current is not None

    def get_state(self) -> Dict[str, Any]:
        with self._lock:
            return self.state.snapshot()

    def assess_quality(self, raw_image: RawImage) -> QualityAssessment:
        return self.optimizer.assess_quality(raw_image)

    def estimate_processing_time(self, raw_image: RawImage,
                                 config: Optional[AnalysisConfiguration] = None) -> float:
        return estimate_processing_time(raw_image.width, raw_image.height,
                                        config or AnalysisConfiguration.balanced())

    def clear_cache(self) -> None:
        """Clear the result cache and the optimizer's image caches."""
        self.cache.clear()
        self.optimizer.clear_cache()
        logger.info("Menu processor caches cleared")

    def get_cache_info(self) -> Dict[str, Any]:
        optimized_images, image_metadata = self.optimizer.get_cache_info()
        return {
            'results': self.cache.get_cache_info(),
            'optimized_images': optimized_images,
            'image_metadata': image_metadata,
        }

    def shutdown(self) -> None:
        self.cancel()
        with self._lock:
            if self._reset_timer is not None:
                self._reset_timer.cancel()
                self._reset_timer = None
        self._executor.shutdown(wait=False)

    # Pipeline

    def _execute(self, run: _AnalysisRun, raw_image: RawImage,
                 config: AnalysisConfiguration) -> Menu:
        try:
            menu = self._run_pipeline(run, raw_image, config)
            self._complete(run, menu)
            return menu
        except AnalysisError as e:
            self._fail(run, e)
            raise
        except Exception as e:
            logger.error(f"Unexpected error during menu analysis: {e}", exc_info=True)
            error = AnalysisError("Unexpected analysis failure", cause=e)
            self._fail(run, error)
            raise error from e

    def _run_pipeline(self, run: _AnalysisRun, raw_image: RawImage,
                      config: AnalysisConfiguration) -> Menu:
        image_hash = raw_image.content_hash

        cached = self.cache.get(image_hash)
        if cached is not None:
            logger.info(f"Using cached menu for image hash: {image_hash[:8]}...")
            self._advance_to(run, ProcessingStage.VALIDATING)
            return cached.menu

        if not self.analyzer.is_configured:
            if self._legacy_available:
                logger.warning("AI analysis not configured, using legacy extractor")
                return self._run_legacy(run, raw_image)
            raise ServiceNotConfiguredError("AI analysis is not configured")

        self._transition(run, ProcessingStage.PREPARING)
        image = self._prepare_image(raw_image, config)

        self._transition(run, ProcessingStage.ANALYZING)
        try:
            reply = self._call_with_timeout(run, image, config)
        except NetworkUnavailableError:
            if not self._legacy_available:
                raise
            logger.warning("Inference endpoint unreachable, using legacy extractor")
            return self._run_legacy(run, raw_image)

        self._transition(run, ProcessingStage.EXTRACTING)
        self._transition(run, ProcessingStage.STRUCTURING)
        try:
            payload = self.parser.parse(reply)
        except ResponseParsingError:
            self.last_parse_failure = reply
            self.sanitizer.log_diagnostic("Unparseable inference reply", reply, context="model_reply")
            raise
        menu = self.parser.to_menu(payload, processing_time=time.time() - run.started_at)

        self._transition(run, ProcessingStage.VALIDATING)
        if menu.confidence < config.minimum_confidence:
            logger.warning(f"Menu confidence {menu.confidence:.2f} below "
                           f"minimum {config.minimum_confidence:.2f}")
            raise LowConfidenceError(menu.confidence, config.minimum_confidence)

        run.cache_key = image_hash
        logger.info(f"Menu analysis found {len(menu.dishes)} dishes "
                    f"(confidence {menu.confidence:.2f}) in {menu.processing_time:.2f}s")
        return menu

    def _prepare_image(self, raw_image: RawImage, config: AnalysisConfiguration) -> OptimizedImage:
        try:
            return self.optimizer.optimize(raw_image, config.optimizer_config())
        except Exception as e:
            logger.warning(f"Image optimization failed, submitting original image: {e}")
            return ImageOptimizer.passthrough(raw_image)

    def _call_with_timeout(self, run: _AnalysisRun, image: OptimizedImage,
                           config: AnalysisConfiguration) -> str:
        """
        Race the inference call against the configured timeout.

        The remaining time is passed down as a deadline, so no request attempt
        outlives the timeout. On timeout the shared token is cancelled, which
        shuts down the in-flight connection in the transport.
        """
        finished = threading.Event()
        deadline = time.monotonic() + config.timeout
        future = self._executor.submit(
            self.analyzer.analyze_menu, image, config.detailed_analysis, run.token,
            config.max_retries, deadline
        )
        future.add_done_callback(lambda _: finished.set())
        run.token.add_callback(finished.set)
        try:
            completed = finished.wait(config.timeout)
        finally:
            run.token.remove_callback(finished.set)

        if not completed:
            run.token.cancel("timed out")
            logger.warning(f"Inference call exceeded {config.timeout:.1f}s timeout")
            raise AnalysisTimeoutError(f"Inference call exceeded {config.timeout:.1f}s")

        run.token.raise_if_cancelled()
        return future.result()

    def _run_legacy(self, run: _AnalysisRun, raw_image: RawImage) -> Menu:
        self._advance_to(run, ProcessingStage.ANALYZING)
        blocks = self.text_recognizer(raw_image)

        self._advance_to(run, ProcessingStage.EXTRACTING)
        dishes = self.legacy_parser.extract_dishes(blocks)

        self._advance_to(run, ProcessingStage.STRUCTURING)
        dishes = [self._sanitize_dish(dish) for dish in dishes]
        dishes = [dish for dish in dishes if dish is not None]
        if not dishes:
            raise ResponseParsingError("Legacy extractor found no dishes")

        self._advance_to(run, ProcessingStage.VALIDATING)
        run.token.raise_if_cancelled()
        confidence = sum(dish.confidence for dish in dishes) / len(dishes)
        logger.info(f"Legacy extraction found {len(dishes)} dishes")
        return Menu(
            dishes=dishes,
            confidence=confidence,
            processing_time=time.time() - run.started_at,
            source=ExtractionSource.LEGACY,
        )

    def _sanitize_dish(self, dish: Dish) -> Optional[Dish]:
        name = self.sanitizer.sanitize(dish.name, context="dish_name")
        if not name:
            return None
        description = self.sanitizer.sanitize(dish.description, context="dish_description") or None
        return dish.model_copy(update={"name": name, "description": description})

    @property
    def _legacy_available(self) -> bool:
        return self.legacy_parser is not None and self.text_recognizer is not None

    # State machine

    def _begin(self) -> _AnalysisRun:
        with self._lock:
            if self._current is not None:
                raise AnalyzerBusyError("An analysis is already in progress")

            if self._reset_timer is not None:
                self._reset_timer.cancel()
                self._reset_timer = None
            if self.state.stage != ProcessingStage.IDLE:
                self._enter_idle()

            self._generation += 1
            run = _AnalysisRun(token=CancellationToken(), generation=self._generation)
            self._current = run
            self.state.in_flight = True
            self.state.started_at = run.started_at
            return run

    def _transition(self, run: _AnalysisRun, stage: ProcessingStage) -> None:
        """Enter the next stage, or raise if the run was cancelled."""
        with self._lock:
            run.token.raise_if_cancelled()
            if self._current is not run:
                raise AnalysisCancelledError("Analysis is no longer active")
            self._set_stage(stage)

    def _advance_to(self, run: _AnalysisRun, target: ProcessingStage) -> None:
        """Emit every stage after the current one up to target, in order."""
        for stage in _PIPELINE:
            if self.state.stage.order < stage.order <= target.order:
                self._transition(run, stage)

    def _complete(self, run: _AnalysisRun, menu: Menu) -> None:
        with self._lock:
            run.token.raise_if_cancelled()
            if self._current is not run:
                raise AnalysisCancelledError("Analysis is no longer active")

            if run.cache_key is not None:
                self.cache.put(run.cache_key, menu)
            self._set_stage(ProcessingStage.COMPLETED)
            self._current = None
            self.state.in_flight = False
            self._notify(self.on_result, menu)

            self._reset_timer = threading.Timer(self.reset_delay, self._auto_reset, args=(run.generation,))
            self._reset_timer.daemon = True
            self._reset_timer.start()

    def _fail(self, run: _AnalysisRun, error: AnalysisError) -> None:
        with self._lock:
            if self._current is not run:
                # Already reset by cancel()
                return
            self._current = None
            self.state.in_flight = False
            run.token.cancel("failed")
            self._enter_idle()
            self._notify(self.on_result, error)

        logger.warning(f"Menu analysis failed ({error.kind.value}): {error}")

    def _auto_reset(self, generation: int) -> None:
        with self._lock:
            if (self._generation == generation and self._current is None
                    and self.state.stage == ProcessingStage.COMPLETED):
                self._enter_idle()
            self._reset_timer = None

    def _enter_idle(self) -> None:
        self.state.stage = ProcessingStage.IDLE
        self.state.progress = 0.0
        self.state.started_at = None
        self._notify(self.on_stage_changed, ProcessingStage.IDLE)
        self._notify(self.on_progress, 0.0)

    def _set_stage(self, stage: ProcessingStage) -> None:
        self.state.stage = stage
        self.state.progress = max(self.state.progress, STAGE_PROGRESS[stage])
        logger.debug(f"Stage: {stage.label} ({self.state.progress:.0%})")
        self._notify(self.on_stage_changed, stage)
        self._notify(self.on_progress, self.state.progress)

    @staticmethod
    def _notify(callback: Optional[Callable[[Any], None]], value: Any) -> None:
        if callback is None:
            return
        try:
            callback(value)
        except Exception as e:
            logger.error(f"Progress callback failed: {e}")
