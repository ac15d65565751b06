"""
Klip - clipboard history store and monitor
"""

__version__ = "0.3.0"
