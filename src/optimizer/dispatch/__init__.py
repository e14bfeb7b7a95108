"""Submission of items to the processing backend and delivery to destinations."""
