"""
Multi-user course-registration seat monitor with automatic enrollment.
"""

__version__ = "1.0.0"
