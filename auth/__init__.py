"""auth/ -- Authentication and session integrity for Coco Instruments.

Layer rule: auth/ imports from core/ (settings) and storage/ (schema and
transactions) only. It does NOT import from api/. api/ imports from auth/,
not the other way around.
"""
