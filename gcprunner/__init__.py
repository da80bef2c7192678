"""
gcprunner: run containerized commands on Google Cloud Batch or Cloud Run Jobs,
staging input and output files through Cloud Storage.
"""

__version__ = "0.3.0"
