"""
Progress channel API.
"""
