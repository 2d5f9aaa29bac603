"""
Utils Package

Provides utility modules for:
- validation_errors: Structured HTTP error bodies for the API layer
"""
