"""
Content cache service.
"""
