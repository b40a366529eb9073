"""Small helpers shared by blueprints and services."""
