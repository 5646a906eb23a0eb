"""
Structured events shared by the voice control service.
"""
