#!/usr/bin/env python3
"""
Start uvicorn for the bookstore backend, honouring the PORT environment variable
"""
import os

from bookstore.utils.logger import get_application_logger

logger = get_application_logger("entrypoint")

# Get PORT from environment, default to 8000
port = os.environ.get('PORT', '8000')

# Ensure port is a valid integer
try:
    port_int = int(port)
    if port_int < 1 or port_int > 65535:
        logger.warning(f"Invalid port {port}, using default 8000")
        port = '8000'
except (ValueError, TypeError):
    logger.warning(f"Invalid PORT value '{port}', using default 8000")
    port = '8000'

logger.info(f"Starting uvicorn on port {port}...")

os.execvp('uvicorn', [
    'uvicorn',
    'bookstore.main:app',
    '--host', '0.0.0.0',
    '--port', port
])
