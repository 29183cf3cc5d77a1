"""EduPortal request guard service."""
