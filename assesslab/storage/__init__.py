"""Storage package: document store lookups (cached OCR text)."""
