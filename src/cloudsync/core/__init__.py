"""Core shared modules for cloudsync (errors, configuration, hashing)."""
