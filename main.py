"""
Main entry point for the MenuScan application.
"""

import logging
import os

from menuscan.app import create_app


logger = logging.getLogger(__name__)


def main():
    """Run the Flask application."""
    config_name = os.environ.get('MENU_ENV', 'development')
    app = create_app(config_name)

    port = int(os.environ.get('PORT', 5000))
    host = os.environ.get('HOST', '127.0.0.1')
    debug = app.config.get('DEBUG', False)

    logger.info(f"Starting MenuScan on {host}:{port} (environment: {config_name}, debug: {debug})")
    app.run(host=host, port=port, debug=debug)


if __name__ == "__main__":
    main()
