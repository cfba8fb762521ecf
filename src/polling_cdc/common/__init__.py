"""
Common infrastructure for polling_cdc.

Provides:
- exceptions: Error hierarchy and classification
- logging: Context-aware logging helpers and the LoggedClass mixin
"""
