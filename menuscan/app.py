"""
MenuScan Flask Application

This module contains the Flask application factory: configuration, CORS,
rate limiting, security headers, error handlers and the JSON routes that
drive the menu analysis pipeline.
"""

from typing import Optional, Tuple
from flask import Flask, request, jsonify, Response
from flask_cors import CORS
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
import logging
from werkzeug.exceptions import RequestEntityTooLarge, BadRequest
from werkzeug.middleware.proxy_fix import ProxyFix

from menuscan.config import Config, get_config
from menuscan.models.data_models import AnalysisConfiguration, RawImage
from menuscan.services.ai_menu_analyzer import AIMenuAnalyzer
from menuscan.services.dish_visualizer import DishVisualizer
from menuscan.services.errors import AnalysisError, AnalysisTimeoutError, ErrorKind
from menuscan.services.image_optimizer import ImageOptimizer
from menuscan.services.menu_processor import MenuProcessor
from menuscan.services.privacy_sanitizer import PrivacySanitizer
from menuscan.services.result_cache import ResultCache
from menuscan.services.secure_api_client import SecureAPIClient


ERROR_STATUS = {
    ErrorKind.BUSY: 409,
    ErrorKind.RATE_LIMIT: 429,
    ErrorKind.NETWORK: 503,
    ErrorKind.PARSING: 422,
    ErrorKind.CONFIDENCE_TOO_LOW: 422,
    ErrorKind.CONFIGURATION: 503,
    ErrorKind.TRANSPORT: 502,
    ErrorKind.CANCELLED: 499,
    ErrorKind.IMAGE: 400,
}


def create_app(config_name: Optional[str] = None,
               processor: Optional[MenuProcessor] = None,
               visualizer: Optional[DishVisualizer] = None) -> Flask:
    """
    Create and configure the Flask application.

    Args:
        config_name: Configuration name ('development', 'production', 'testing')
        processor: Pre-built MenuProcessor; built from configuration if omitted
        visualizer: Pre-built DishVisualizer; built with the processor if omitted

    Returns:
        Configured Flask application instance
    """
    app = Flask(__name__)

    config = get_config(config_name)
    app.config.from_object(config)

    configure_logging(app)

    if not app.config.get('DEBUG', False):
        app.wsgi_app = ProxyFix(app.wsgi_app, x_for=1, x_proto=1, x_host=1, x_prefix=1)

    configure_cors(app, config)
    limiter = configure_rate_limiting(app)

    if processor is None:
        processor, visualizer = build_services(config)

    app.extensions['menuscan'] = {
        'config': config,
        'processor': processor,
        'visualizer': visualizer,
    }

    log_startup_status(app, config)
    register_error_handlers(app)
    register_routes(app, limiter)
    register_security_headers(app)

    app.logger.info("Flask application created successfully")
    return app


def build_services(config: Config) -> Tuple[MenuProcessor, DishVisualizer]:
    """
    Wire the pipeline components from configuration.

    The legacy extractor is left off: it only runs with both a parser and a
    text recognizer, and no text recognizer is available here.
    """
    transport = SecureAPIClient.from_config(config)
    analyzer = AIMenuAnalyzer(transport, config.MENU_API_KEY or None, model_name=config.MENU_AI_MODEL)
    sanitizer = PrivacySanitizer()

    processor = MenuProcessor(
        analyzer=analyzer,
        optimizer=ImageOptimizer(),
        cache=ResultCache(),
        sanitizer=sanitizer,
    )
    visualizer = DishVisualizer(analyzer, sanitizer)
    return processor, visualizer


def configure_logging(app: Flask) -> None:
    """Configure application logging."""
    log_level = logging.DEBUG if app.config.get('DEBUG') else logging.INFO
    logging.basicConfig(
        level=log_level,
        format='%(asctime)s %(levelname)s %(name)s: %(message)s'
    )
    app.logger.setLevel(log_level)


def configure_cors(app: Flask, config: Config) -> None:
    """
    Configure Cross-Origin Resource Sharing (CORS).

    Args:
        app: Flask application
        config: Application configuration
    """
    cors_origins = getattr(config, 'CORS_ORIGINS', [])

    if cors_origins:
        CORS(app,
             origins=cors_origins,
             methods=['GET', 'POST', 'OPTIONS'],
             allow_headers=['Content-Type', 'X-Requested-With'],
             max_age=3600)

        app.logger.info(f"CORS configured with origins: {cors_origins}")
    else:
        app.logger.warning("CORS not configured - no origins specified")


def configure_rate_limiting(app: Flask) -> Limiter:
    """
    Configure rate limiting for API endpoints.

    Args:
        app: Flask application
    """
    limiter = Limiter(
        key_func=get_remote_address,
        app=app,
        default_limits=[app.config.get('RATELIMIT_DEFAULT', '100 per hour')],
        storage_uri=app.config.get('RATELIMIT_STORAGE_URI', 'memory://')
    )
    app.logger.info("Rate limiting configured")
    return limiter


def log_startup_status(app: Flask, config: Config) -> None:
    """Log configuration status with secrets masked."""
    if config.ai_configured:
        app.logger.info(f"AI analysis configured: {config.mask_sensitive_config()['MENU_API_KEY']}")
    else:
        app.logger.warning("MENU_API_KEY not configured - AI analysis unavailable")
    app.logger.debug(f"Configuration: {config.mask_sensitive_config()}")


def register_security_headers(app: Flask) -> None:
    """
    Register security headers for all responses.

    Args:
        app: Flask application
    """
    @app.after_request
    def add_security_headers(response: Response) -> Response:
        """Add security headers to all responses."""
        response.headers['X-Frame-Options'] = 'DENY'
        response.headers['X-Content-Type-Options'] = 'nosniff'
        response.headers['Referrer-Policy'] = 'strict-origin-when-cross-origin'
        response.headers['Cache-Control'] = 'no-store'

        if not app.config.get('DEBUG'):
            response.headers['Content-Security-Policy'] = "default-src 'none'; frame-ancestors 'none'"
            response.headers['Strict-Transport-Security'] = 'max-age=31536000; includeSubDomains'

        return response


def error_response(error: AnalysisError):
    """JSON body and HTTP status for a pipeline error; only the kind's message is exposed."""
    status = ERROR_STATUS.get(error.kind, 500)
    if isinstance(error, AnalysisTimeoutError):
        status = 504
    return jsonify({
        'error': error.kind.value.replace('_', ' ').capitalize(),
        'message': error.user_message,
        'error_code': error.error_code,
    }), status


def register_error_handlers(app: Flask) -> None:
    """Register error handlers for the Flask application."""

    @app.errorhandler(AnalysisError)
    def handle_analysis_error(error: AnalysisError):
        app.logger.warning(f"Analysis failed ({error.kind.value}): {error.__class__.__name__}")
        return error_response(error)

    @app.errorhandler(RequestEntityTooLarge)
    def handle_file_too_large(error):
        """Handle file size too large errors."""
        app.logger.warning(f"File too large error from {request.remote_addr}")
        return jsonify({
            'error': 'File too large',
            'message': 'Please upload an image smaller than 16MB',
            'error_code': 'FILE_TOO_LARGE'
        }), 413

    @app.errorhandler(BadRequest)
    def handle_bad_request(error):
        """Handle bad request errors."""
        app.logger.warning(f"Bad request from {request.remote_addr}: {error}")
        return jsonify({
            'error': 'Bad request',
            'message': 'Invalid request format or missing required data',
            'error_code': 'BAD_REQUEST'
        }), 400

    @app.errorhandler(429)
    def handle_rate_limit(error):
        """Handle rate limit errors."""
        app.logger.warning(f"Rate limit exceeded from {request.remote_addr}")
        return jsonify({
            'error': 'Rate limit exceeded',
            'message': 'Too many requests. Please try again later.',
            'error_code': 'RATE_LIMIT_EXCEEDED'
        }), 429

    @app.errorhandler(404)
    def handle_not_found(error):
        """Handle not found errors."""
        return jsonify({
            'error': 'Not found',
            'message': 'The requested resource was not found',
            'error_code': 'NOT_FOUND'
        }), 404

    @app.errorhandler(500)
    def handle_internal_error(error):
        """Handle internal server errors."""
        app.logger.error(f'Internal server error: {error}', exc_info=True)
        return jsonify({
            'error': 'Internal server error',
            'message': 'An unexpected error occurred. Please try again.',
            'error_code': 'INTERNAL_ERROR'
        }), 500


def register_routes(app: Flask, limiter: Limiter) -> None:
    """
    Register application routes.

    Args:
        app: Flask application
        limiter: Rate limiter for the analysis endpoints
    """
    services = app.extensions['menuscan']
    config: Config = services['config']
    processor: MenuProcessor = services['processor']
    visualizer: Optional[DishVisualizer] = services['visualizer']

    @app.route('/health')
    def health_check():
        """Health check endpoint without sensitive information."""
        api_config = config.get_api_config()
        return jsonify({
            'status': 'healthy',
            'service': 'menuscan',
            'version': '1.0',
            'services': {
                'ai_analysis_configured': api_config['ai_analysis_configured'],
                'analysis_mode': api_config['analysis_mode'],
            },
            'security': {
                'cors_enabled': bool(api_config['cors_origins']),
                'certificate_pinning': api_config['certificate_pinning'],
                'ssl_required': not app.config.get('DEBUG', False),
            }
        })

    @app.route('/api/config')
    def get_api_config():
        """Get API configuration status (without sensitive data)."""
        return jsonify(config.get_api_config())

    @app.route('/api/analyze', methods=['POST'])
    @limiter.limit("10 per minute")
    def analyze_menu():
        """Analyze an uploaded menu photo and return its dishes."""
        raw_image = read_uploaded_image(config)
        if isinstance(raw_image, tuple):
            return raw_image

        mode = request.form.get('mode') or config.MENU_ANALYSIS_MODE
        try:
            analysis_config = AnalysisConfiguration.from_mode(mode)
        except ValueError:
            return jsonify({
                'error': 'Invalid mode',
                'message': 'Mode must be one of fast, balanced, high_quality',
                'error_code': 'INVALID_MODE'
            }), 400

        menu = processor.analyze(raw_image, analysis_config)
        body = {'menu': menu.to_dict()}

        if request.form.get('visualize', '').lower() == 'true' and visualizer is not None:
            body['enriched_dishes'] = [
                {
                    'dish_id': item.dish.id,
                    'visualization': item.visualization.model_dump() if item.visualization else None,
                }
                for item in visualizer.enrich_menu(menu)
            ]

        return jsonify(body)

    @app.route('/api/quality', methods=['POST'])
    @limiter.limit("30 per minute")
    def assess_quality():
        """Assess photo quality before analysis."""
        raw_image = read_uploaded_image(config)
        if isinstance(raw_image, tuple):
            return raw_image

        assessment = processor.assess_quality(raw_image)
        body = assessment.to_dict()
        body['estimated_processing_time'] = round(processor.estimate_processing_time(
            raw_image, config.analysis_configuration()), 1)
        return jsonify(body)

    @app.route('/api/cancel', methods=['POST'])
    def cancel_analysis():
        """Cancel the analysis in flight."""
        cancelled = processor.cancel()
        if not cancelled:
            return jsonify({
                'error': 'Nothing to cancel',
                'message': 'No analysis is in progress',
                'error_code': 'NOT_RUNNING'
            }), 404
        return jsonify({'message': 'Analysis cancelled', 'cancelled': True})

    @app.route('/api/status')
    def get_status():
        """Current pipeline stage, cache sizes and transport security posture."""
        body = {
            'state': processor.get_state(),
            'cache': processor.get_cache_info(),
            'privacy': processor.sanitizer.get_privacy_report(),
        }
        transport = getattr(processor.analyzer, 'transport', None)
        if transport is not None:
            body['security'] = transport.get_security_status()
        return jsonify(body)

    @app.route('/api/cache/clear', methods=['POST'])
    def clear_cache():
        """Clear cached results and images."""
        processor.clear_cache()
        if visualizer is not None:
            visualizer.clear_cache()
        return jsonify({'message': 'Cache cleared'})


def read_uploaded_image(config: Config):
    """
    RawImage from the multipart "file" field, or an error response tuple.
    """
    if 'file' not in request.files:
        return jsonify({
            'error': 'No file provided',
            'message': 'Please select an image file to upload',
            'error_code': 'NO_FILE'
        }), 400

    upload = request.files['file']
    if not upload.filename:
        return jsonify({
            'error': 'No file selected',
            'message': 'Please select an image file to upload',
            'error_code': 'NO_FILE_SELECTED'
        }), 400

    if not allowed_file(upload.filename, config.ALLOWED_EXTENSIONS):
        return jsonify({
            'error': 'Invalid file type',
            'message': 'Please upload a JPG, PNG or WEBP image',
            'error_code': 'INVALID_FILE_TYPE'
        }), 400

    try:
        return RawImage.from_bytes(upload.read())
    except ValueError:
        return jsonify({
            'error': 'Invalid image',
            'message': 'The uploaded file is not a readable image',
            'error_code': 'INVALID_IMAGE'
        }), 400


def allowed_file(filename: str, allowed_extensions: set) -> bool:
    """
    Check if the uploaded file has an allowed extension.

    Args:
        filename: Name of the uploaded file
        allowed_extensions: Set of allowed file extensions

    Returns:
        True if file extension is allowed, False otherwise
    """
    if not filename or '.' not in filename:
        return False

    extension = filename.rsplit('.', 1)[1].lower()
    return extension in allowed_extensions
