"""
Imagery Module - image job aggregate, persistence and query surface.
"""
