"""Navi scheduled jobs."""
