"""
Command-line interface for the PRP change tracker.
"""
