"""
Call-routing decision engine.
"""
