"""
Product Image Pipeline

Ingests product images and turns each upload into a set of web-ready
versions (master, grid, product page, thumbnail) through a queued,
retrying worker pipeline.
"""
