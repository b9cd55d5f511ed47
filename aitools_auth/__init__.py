"""
AI Productivity Tools - two-factor authentication core.
"""

__version__ = "1.0.0"
