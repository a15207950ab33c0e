"""Smart-lock access control service."""
