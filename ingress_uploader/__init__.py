"""
Ingress Uploader
Periodically uploads locally staged diagnostic archives to an ingestion endpoint
"""

__version__ = "1.0.0"
