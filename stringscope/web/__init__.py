"""
HTTP API for Stringscope.
"""
