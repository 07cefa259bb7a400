"""Request and response schemas for the scheduling API."""
