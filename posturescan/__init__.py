"""
Security Posture Scan Engine - TLS, HTTP header and DNS/email analysis
"""

__version__ = "1.0.0"
__author__ = "Security Team"
