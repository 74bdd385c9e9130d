"""Periodic housekeeping jobs."""
