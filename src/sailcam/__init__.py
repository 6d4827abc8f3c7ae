"""
SailCam - Sail Number Detection

Reads racing sail numbers from photos: preprocesses the image into several
variants, sends each to a cloud OCR service, and turns the recognised text
into validated, confidence-ranked sail numbers.
"""

__version__ = "0.1.0"
