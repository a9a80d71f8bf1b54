"""
tapforge CLI command groups.
"""

__all__ = ['broadcast', 'config', 'envelope', 'vault']
