"""Shared helpers for studysync."""
