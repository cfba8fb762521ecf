"""
Shared infrastructure: structured logging and security helpers.
"""
