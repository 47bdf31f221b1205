"""
HTTP API for the activity engine
"""
