"""Vision package

Image fetching, document conversion and batched vision calls used by the
evaluation pipeline to turn uploaded papers into text.
"""
