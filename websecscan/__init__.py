"""
WebSecScan - Dynamic Web Application Security Testing Engine

A conservative crawler paired with safe, non-destructive vulnerability
testers:
- Robots-aware breadth-first crawling
- Reflected XSS, SQL error, path traversal, CSRF and session checks
- Global rate governor with an emergency brake
- Deduplicated, deterministic findings
"""

import logging

__version__ = '1.0.0'

# Configure logging - SECURITY: never log session credentials
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)
