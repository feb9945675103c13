"""
Cloudonix call-control markup (CXML) rendering.
"""

from callrouting.cxml.builder import CxmlDocument, ResponseBuilder

__all__ = ["CxmlDocument", "ResponseBuilder"]
