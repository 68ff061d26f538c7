"""Clinic CRM backend: subjects, dated financial records and their REST API."""

__version__ = "0.1.0"
