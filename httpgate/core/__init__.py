"""Ambient concerns shared by the client: settings, logging and metrics."""
