"""Polling dispatcher use-sites."""
