"""Service package: billing services live under ``app.services.billing``."""
