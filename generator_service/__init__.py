"""
Generator Service - queue-backed PDF generation for CRM documents.

Two processes share this package:
- the API (app.py) validates requests, enforces admission control and
  enqueues jobs
- the worker (worker.py) claims jobs one at a time, renders them and
  uploads the PDF to object storage
"""

from version import __version__
