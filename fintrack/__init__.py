"""
fintrack - Source Package

Transaction storage and authorization engine for a personal-finance tracker.

DESIGN PRINCIPLES:
1. One storage contract, two interchangeable backends
2. Validate before every write, fail with a named rule
3. Never import the same bank record twice
4. Owners decide who sees their data
5. Absent is not an error
"""

__version__ = "1.0.0"
__author__ = "fintrack Team"
