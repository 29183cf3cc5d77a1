"""FastAPI application for the portal."""
