"""Client portal authentication and session lifecycle service."""
