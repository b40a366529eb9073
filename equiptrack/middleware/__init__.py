"""Request middleware, logging and startup checks."""
