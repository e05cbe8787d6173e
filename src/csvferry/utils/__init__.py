"""
Shared utilities for csvferry.
"""
